"""
How a task relates to a given viewer.

A task carries three user references: ``user_id`` (creator/owner),
``assigned_to`` and ``assigned_by``. Callers classify a (task, viewer) pair
once into one of:

- ``Owned``            - the viewer created it and nobody is assigned
- ``DelegatedToSelf``  - someone (``by``) assigned it to the viewer
- ``DelegatedBySelf``  - the viewer assigned it to someone else (``to``)
- ``Unrelated``        - none of the above

Assignment fields are only ever written through ``assignment_patch`` so that
``assigned_by`` never survives a cleared ``assigned_to``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union


class RelationCategory(str, Enum):
    OWN = "own"
    ASSIGNED = "assigned"
    UNRELATED = "unrelated"


@dataclass(frozen=True)
class Owned:
    category = RelationCategory.OWN


@dataclass(frozen=True)
class DelegatedToSelf:
    by: Optional[int]
    category = RelationCategory.ASSIGNED


@dataclass(frozen=True)
class DelegatedBySelf:
    to: Optional[int]
    category = RelationCategory.ASSIGNED


@dataclass(frozen=True)
class Unrelated:
    category = RelationCategory.UNRELATED


TaskRelation = Union[Owned, DelegatedToSelf, DelegatedBySelf, Unrelated]


def classify(task: Any, viewer_id: int) -> TaskRelation:
    if task.assigned_to is not None and task.assigned_to == viewer_id:
        return DelegatedToSelf(by=task.assigned_by)
    if task.assigned_by is not None and task.assigned_by == viewer_id:
        return DelegatedBySelf(to=task.assigned_to)
    if task.user_id == viewer_id and task.assigned_to is None and task.assigned_by is None:
        return Owned()
    return Unrelated()


def select(tasks: Iterable[Any], viewer_id: int, category: Optional[RelationCategory] = None) -> List[Any]:
    """Keep the tasks whose relation to ``viewer_id`` falls in ``category`` (all when None)."""
    if category is None:
        return list(tasks)
    return [t for t in tasks if classify(t, viewer_id).category == category]


def assignment_patch(assignee_id: Optional[int], assigner_id: Optional[int]) -> Dict[str, Optional[int]]:
    if assignee_id is None:
        return {"assigned_to": None, "assigned_by": None}
    return {"assigned_to": assignee_id, "assigned_by": assigner_id}
