import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from .assignment import DelegatedBySelf, assignment_patch, classify
from .errors import ConflictError, NotFoundError, ValidationError
from .models import utcnow
from .passwords import DEFAULT_ROUNDS, hash_password, verify_password
from .schemas import (
    ProjectCreate,
    ProjectOut,
    TaskCreate,
    TaskFilter,
    TaskOut,
    TaskSummary,
    TaskUpdate,
    TeamMemberOut,
    TeamMemberView,
    UserCreate,
    UserOut,
    UserRecord,
)

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10

FilterArg = Optional[Union[str, TaskFilter]]


def check_filter(task_filter: FilterArg) -> TaskFilter:
    if task_filter is None or task_filter == "":
        return TaskFilter.ALL
    try:
        return TaskFilter(task_filter)
    except ValueError:
        allowed = ", ".join(f.value for f in TaskFilter)
        raise ValidationError(
            "Invalid task filter",
            errors=[{"field": "filter", "message": f"must be one of: {allowed}"}],
        )


def matches_filter(task: TaskOut, task_filter: TaskFilter) -> bool:
    if task_filter is TaskFilter.ACTIVE:
        return not task.completed
    if task_filter is TaskFilter.COMPLETED:
        return task.completed
    if task_filter is TaskFilter.STARRED:
        return bool(task.starred)
    return True


def merge_assignment(current: TaskOut, changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Route assignment fields of a patch through ``assignment_patch``.

    The assigner is only rewritten when the assignee actually changes; a patch
    that repeats the current assignee keeps the recorded assigner.
    """
    changes = dict(changes)
    if "assigned_to" in changes and changes["assigned_to"] != current.assigned_to:
        assigner = changes.get("assigned_by")
        if assigner is None:
            assigner = current.user_id
        changes.update(assignment_patch(changes["assigned_to"], assigner))
    else:
        changes.pop("assigned_to", None)
        changes.pop("assigned_by", None)
    return changes


class Storage(ABC):
    """
    Persistence contract shared by every backend.

    Single-record reads return None when the record does not exist,
    ``delete_task`` returns False. Compound operations (``add_team_member``)
    raise typed errors instead.
    """

    # users
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[UserRecord]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[UserRecord]: ...

    @abstractmethod
    def create_user(self, user: UserCreate) -> UserRecord: ...

    @abstractmethod
    def search_users(self, query: str) -> List[UserOut]: ...

    @abstractmethod
    def verify_user(self, username: str, password: str) -> Optional[UserRecord]: ...

    # tasks
    @abstractmethod
    def get_tasks(self, task_filter: FilterArg = None) -> List[TaskOut]: ...

    @abstractmethod
    def get_task_by_id(self, task_id: int) -> Optional[TaskOut]: ...

    @abstractmethod
    def create_task(self, task: TaskCreate) -> TaskOut: ...

    @abstractmethod
    def _apply_task_changes(self, task_id: int, changes: Dict[str, Any]) -> Optional[TaskOut]: ...

    @abstractmethod
    def delete_task(self, task_id: int) -> bool: ...

    @abstractmethod
    def get_user_tasks(self, user_id: int, task_filter: FilterArg = None) -> List[TaskOut]: ...

    @abstractmethod
    def get_task_summary(self, user_id: Optional[int] = None) -> TaskSummary: ...

    # projects
    @abstractmethod
    def get_projects(self) -> List[ProjectOut]: ...

    @abstractmethod
    def get_projects_by_user(self, user_id: int) -> List[ProjectOut]: ...

    @abstractmethod
    def get_accessible_projects(self, user_id: int) -> List[ProjectOut]:
        """The user's own projects plus public projects owned by their team members."""

    @abstractmethod
    def get_project_by_id(self, project_id: int) -> Optional[ProjectOut]: ...

    @abstractmethod
    def create_project(self, project: ProjectCreate) -> ProjectOut: ...

    # team members
    @abstractmethod
    def add_team_member(self, user_id1: int, user_id2: int) -> TeamMemberView: ...

    @abstractmethod
    def get_team_members(self, user_id: int) -> List[TeamMemberView]: ...

    def update_task(self, task_id: int, patch: TaskUpdate) -> Optional[TaskOut]:
        current = self.get_task_by_id(task_id)
        if current is None:
            return None
        return self._apply_task_changes(task_id, merge_assignment(current, patch.changes()))

    def assign_task(self, task_id: int, assignee_id: Optional[int], assigner_id: Optional[int]) -> Optional[TaskOut]:
        return self._apply_task_changes(task_id, assignment_patch(assignee_id, assigner_id))

    def get_tasks_assigned_by(self, user_id: int) -> List[TaskOut]:
        return [t for t in self.get_user_tasks(user_id) if isinstance(classify(t, user_id), DelegatedBySelf)]

    def close(self) -> None:
        return None

    @staticmethod
    def _check_distinct(user_id1: int, user_id2: int) -> None:
        if user_id1 == user_id2:
            raise ValidationError(
                "Cannot add yourself as a team member",
                errors=[{"field": "userId2", "message": "must differ from userId1"}],
            )


class MemStorage(Storage):
    """Dict-backed storage for development and tests. Not shared across processes."""

    def __init__(self, bcrypt_rounds: int = DEFAULT_ROUNDS) -> None:
        self._bcrypt_rounds = bcrypt_rounds
        self._lock = threading.RLock()
        self._users: Dict[int, UserRecord] = {}
        self._tasks: Dict[int, TaskOut] = {}
        self._projects: Dict[int, ProjectOut] = {}
        self._team_members: Dict[int, TeamMemberOut] = {}
        self._user_ids = itertools.count(1)
        self._task_ids = itertools.count(1)
        self._project_ids = itertools.count(1)
        self._team_member_ids = itertools.count(1)

    @staticmethod
    def _newest_first(tasks: List[TaskOut]) -> List[TaskOut]:
        return sorted(tasks, key=lambda t: (t.created_at, t.id), reverse=True)

    # ---- users ----

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self._users.values():
                if user.username == username:
                    return user.model_copy(deep=True)
        return None

    def create_user(self, user: UserCreate) -> UserRecord:
        hashed = hash_password(user.password, self._bcrypt_rounds)
        with self._lock:
            if any(u.username == user.username for u in self._users.values()):
                raise ConflictError("Username already exists")
            if user.email and any(u.email == user.email for u in self._users.values()):
                raise ConflictError("Email already registered")
            now = utcnow()
            record = UserRecord(
                id=next(self._user_ids),
                password=hashed,
                created_at=now,
                updated_at=now,
                **user.model_dump(exclude={"password"}),
            )
            self._users[record.id] = record
        logger.info("User created id=%s username=%s", record.id, record.username)
        return record.model_copy(deep=True)

    def search_users(self, query: str) -> List[UserOut]:
        needle = query.lower()
        found = []
        with self._lock:
            for user in sorted(self._users.values(), key=lambda u: u.id):
                haystack = (user.username, user.email, user.first_name, user.last_name)
                if any(field and needle in field.lower() for field in haystack):
                    found.append(user.public())
                    if len(found) >= SEARCH_LIMIT:
                        break
        return found

    def verify_user(self, username: str, password: str) -> Optional[UserRecord]:
        with self._lock:
            user = next((u for u in self._users.values() if u.username == username), None)
            if user is None or not user.is_active:
                return None
            if not verify_password(password, user.password):
                return None
            user.last_login = utcnow()
            return user.model_copy(deep=True)

    # ---- tasks ----

    def get_tasks(self, task_filter: FilterArg = None) -> List[TaskOut]:
        task_filter = check_filter(task_filter)
        with self._lock:
            tasks = [t.model_copy(deep=True) for t in self._tasks.values() if matches_filter(t, task_filter)]
        return self._newest_first(tasks)

    def get_task_by_id(self, task_id: int) -> Optional[TaskOut]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def create_task(self, task: TaskCreate) -> TaskOut:
        with self._lock:
            now = utcnow()
            record = TaskOut(id=next(self._task_ids), created_at=now, updated_at=now, **task.model_dump())
            self._tasks[record.id] = record
        logger.debug("Task created id=%s user_id=%s", record.id, record.user_id)
        return record.model_copy(deep=True)

    def _apply_task_changes(self, task_id: int, changes: Dict[str, Any]) -> Optional[TaskOut]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            updated = task.model_copy(update={**changes, "updated_at": utcnow()}, deep=True)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def delete_task(self, task_id: int) -> bool:
        with self._lock:
            removed = self._tasks.pop(task_id, None) is not None
        if removed:
            logger.debug("Task deleted id=%s", task_id)
        return removed

    def get_user_tasks(self, user_id: int, task_filter: FilterArg = None) -> List[TaskOut]:
        task_filter = check_filter(task_filter)
        with self._lock:
            tasks = [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if user_id in (t.user_id, t.assigned_to, t.assigned_by) and matches_filter(t, task_filter)
            ]
        return self._newest_first(tasks)

    def get_task_summary(self, user_id: Optional[int] = None) -> TaskSummary:
        tasks = self.get_tasks() if user_id is None else self.get_user_tasks(user_id)
        return TaskSummary.from_counts(len(tasks), sum(1 for t in tasks if t.completed))

    # ---- projects ----

    def get_projects(self) -> List[ProjectOut]:
        with self._lock:
            return [p.model_copy(deep=True) for _, p in sorted(self._projects.items())]

    def get_projects_by_user(self, user_id: int) -> List[ProjectOut]:
        return [p for p in self.get_projects() if p.user_id == user_id]

    def get_accessible_projects(self, user_id: int) -> List[ProjectOut]:
        with self._lock:
            contacts = {e.user_id2 for e in self._team_members.values() if e.user_id1 == user_id}
            return [
                p.model_copy(deep=True)
                for _, p in sorted(self._projects.items())
                if p.user_id == user_id or (p.is_public and p.user_id in contacts)
            ]

    def get_project_by_id(self, project_id: int) -> Optional[ProjectOut]:
        with self._lock:
            project = self._projects.get(project_id)
            return project.model_copy(deep=True) if project else None

    def create_project(self, project: ProjectCreate) -> ProjectOut:
        with self._lock:
            now = utcnow()
            record = ProjectOut(id=next(self._project_ids), created_at=now, updated_at=now, **project.model_dump())
            self._projects[record.id] = record
        logger.debug("Project created id=%s user_id=%s", record.id, record.user_id)
        return record.model_copy(deep=True)

    # ---- team members ----

    def add_team_member(self, user_id1: int, user_id2: int) -> TeamMemberView:
        self._check_distinct(user_id1, user_id2)
        with self._lock:
            if user_id1 not in self._users:
                raise NotFoundError(f"User {user_id1} not found")
            if user_id2 not in self._users:
                raise NotFoundError(f"User {user_id2} not found")
            for edge in self._team_members.values():
                if {edge.user_id1, edge.user_id2} == {user_id1, user_id2}:
                    raise ConflictError("Users are already team members")
            now = utcnow()
            forward = TeamMemberOut(id=next(self._team_member_ids), user_id1=user_id1, user_id2=user_id2, created_at=now)
            backward = TeamMemberOut(id=next(self._team_member_ids), user_id1=user_id2, user_id2=user_id1, created_at=now)
            self._team_members[forward.id] = forward
            self._team_members[backward.id] = backward
            contact = self._users[user_id2].public()
        logger.info("Team members connected %s <-> %s", user_id1, user_id2)
        return TeamMemberView(connection=forward.model_copy(), user=contact)

    def get_team_members(self, user_id: int) -> List[TeamMemberView]:
        views = []
        with self._lock:
            for _, edge in sorted(self._team_members.items()):
                if edge.user_id1 != user_id:
                    continue
                contact = self._users.get(edge.user_id2)
                if contact is not None:
                    views.append(TeamMemberView(connection=edge.model_copy(), user=contact.public()))
        return views


def build_storage(settings) -> Storage:
    """Pick the backend once at startup from ``settings.storage_backend``."""
    if settings.storage_backend == "sql":
        from .crud import DatabaseStorage

        storage = DatabaseStorage(settings.database_url, bcrypt_rounds=settings.bcrypt_rounds)
    else:
        storage = MemStorage(bcrypt_rounds=settings.bcrypt_rounds)
    logger.info("Storage backend: %s", type(storage).__name__)
    if settings.seed_demo_data:
        seed_demo_data(storage)
    return storage


DEMO_PASSWORD = "password123"


def seed_demo_data(storage: Storage) -> None:
    """Populate the store with a small demo team. No-op when the ``admin`` user exists."""
    if storage.get_user_by_username("admin") is not None:
        return

    admin = storage.create_user(
        UserCreate(username="admin", password=DEMO_PASSWORD, email="admin@taskassist.com", first_name="Admin", last_name="User")
    )
    john = storage.create_user(
        UserCreate(username="john", password=DEMO_PASSWORD, email="john@example.com", first_name="John", last_name="Doe")
    )
    sarah = storage.create_user(
        UserCreate(username="sarah", password=DEMO_PASSWORD, email="sarah@example.com", first_name="Sarah", last_name="Smith")
    )

    team_id = 1
    personal = storage.create_project(ProjectCreate(name="Personal", color="#3B82F6", user_id=admin.id))
    work = storage.create_project(ProjectCreate(name="Work", color="#10B981", user_id=admin.id, team_id=team_id, is_public=True))
    shopping = storage.create_project(ProjectCreate(name="Shopping", color="#F59E0B", user_id=admin.id))
    marketing = storage.create_project(
        ProjectCreate(name="Marketing", color="#8B5CF6", user_id=john.id, team_id=team_id, is_public=True)
    )
    research = storage.create_project(
        ProjectCreate(name="Research", color="#EC4899", user_id=sarah.id, team_id=team_id, is_public=True)
    )

    now = utcnow()
    tasks = [
        TaskCreate(title="Update portfolio website with new projects", project_id=personal.id,
                   due_date=now + timedelta(days=1), user_id=admin.id),
        TaskCreate(title="Prepare presentation for client meeting", completed=True, project_id=work.id,
                   due_date=now, priority="high", starred=True, assigned_to=john.id, user_id=admin.id, team_id=team_id),
        TaskCreate(title="Buy groceries for the week", project_id=shopping.id,
                   due_date=now + timedelta(days=2), user_id=admin.id),
        TaskCreate(title="Review code pull requests", completed=True, project_id=work.id,
                   due_date=now - timedelta(days=1), priority="high", assigned_to=sarah.id, user_id=admin.id, team_id=team_id),
        TaskCreate(title="Design new marketing materials", project_id=marketing.id, due_date=now + timedelta(days=5),
                   priority="high", starred=True, assigned_to=john.id, user_id=john.id, team_id=team_id),
        TaskCreate(title="Research competitor pricing", project_id=research.id, due_date=now + timedelta(days=3),
                   assigned_to=sarah.id, user_id=sarah.id, team_id=team_id),
    ]
    for task in tasks:
        storage.create_task(task)

    storage.add_team_member(admin.id, john.id)
    storage.add_team_member(admin.id, sarah.id)
    logger.info("Seeded demo data (%d users, %d tasks)", 3, len(tasks))
