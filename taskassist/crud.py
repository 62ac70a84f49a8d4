import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .database import Base, make_engine, make_session_factory
from .errors import ConflictError, NotFoundError
from .passwords import DEFAULT_ROUNDS, hash_password, verify_password
from .schemas import (
    ProjectCreate,
    ProjectOut,
    TaskCreate,
    TaskFilter,
    TaskOut,
    TaskSummary,
    TeamMemberOut,
    TeamMemberView,
    UserCreate,
    UserOut,
    UserRecord,
)
from .storage import SEARCH_LIMIT, FilterArg, Storage, check_filter

logger = logging.getLogger(__name__)


def _apply_filter(q, task_filter: TaskFilter):
    if task_filter is TaskFilter.ACTIVE:
        q = q.filter(models.Task.completed.is_(False))
    elif task_filter is TaskFilter.COMPLETED:
        q = q.filter(models.Task.completed.is_(True))
    elif task_filter is TaskFilter.STARRED:
        q = q.filter(models.Task.starred.is_(True))
    return q


def _newest_first(q):
    return q.order_by(models.Task.created_at.desc(), models.Task.id.desc())


def _user_clause(user_id: int):
    return or_(
        models.Task.user_id == user_id,
        models.Task.assigned_to == user_id,
        models.Task.assigned_by == user_id,
    )


class DatabaseStorage(Storage):
    """SQLAlchemy-backed storage. One session per operation."""

    def __init__(self, database_url: str, bcrypt_rounds: int = DEFAULT_ROUNDS) -> None:
        self._bcrypt_rounds = bcrypt_rounds
        self.engine = make_engine(database_url)
        self.SessionLocal = make_session_factory(self.engine)
        Base.metadata.create_all(bind=self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self):
        db: Session = self.SessionLocal()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---- users ----

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._session() as db:
            user = db.get(models.User, user_id)
            return UserRecord.model_validate(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.username == username).first()
            return UserRecord.model_validate(user) if user else None

    def create_user(self, user: UserCreate) -> UserRecord:
        hashed = hash_password(user.password, self._bcrypt_rounds)
        with self._session() as db:
            if db.query(models.User).filter(models.User.username == user.username).first():
                raise ConflictError("Username already exists")
            if user.email and db.query(models.User).filter(models.User.email == user.email).first():
                raise ConflictError("Email already registered")
            now = models.utcnow()
            db_user = models.User(
                password=hashed,
                created_at=now,
                updated_at=now,
                **user.model_dump(exclude={"password"}),
            )
            db.add(db_user)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ConflictError(self._taken_message(db, user)) from exc
            db.refresh(db_user)
            logger.info("User created id=%s username=%s", db_user.id, db_user.username)
            return UserRecord.model_validate(db_user)

    @staticmethod
    def _taken_message(db: Session, user: UserCreate) -> str:
        if db.query(models.User).filter(models.User.username == user.username).first():
            return "Username already exists"
        return "Email already registered"

    def search_users(self, query: str) -> List[UserOut]:
        pattern = f"%{query.lower()}%"
        with self._session() as db:
            users = (
                db.query(models.User)
                .filter(
                    or_(
                        func.lower(models.User.username).like(pattern),
                        func.lower(models.User.email).like(pattern),
                        func.lower(models.User.first_name).like(pattern),
                        func.lower(models.User.last_name).like(pattern),
                    )
                )
                .order_by(models.User.id)
                .limit(SEARCH_LIMIT)
                .all()
            )
            return [UserOut.model_validate(u) for u in users]

    def verify_user(self, username: str, password: str) -> Optional[UserRecord]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.username == username).first()
            if not user or not user.is_active:
                return None
            if not verify_password(password, user.password):
                return None
            user.last_login = models.utcnow()
            db.commit()
            db.refresh(user)
            return UserRecord.model_validate(user)

    # ---- tasks ----

    def get_tasks(self, task_filter: FilterArg = None) -> List[TaskOut]:
        task_filter = check_filter(task_filter)
        with self._session() as db:
            q = _apply_filter(db.query(models.Task), task_filter)
            return [TaskOut.model_validate(t) for t in _newest_first(q).all()]

    def get_task_by_id(self, task_id: int) -> Optional[TaskOut]:
        with self._session() as db:
            task = db.get(models.Task, task_id)
            return TaskOut.model_validate(task) if task else None

    def create_task(self, task: TaskCreate) -> TaskOut:
        with self._session() as db:
            now = models.utcnow()
            db_task = models.Task(created_at=now, updated_at=now, **task.model_dump())
            db.add(db_task)
            db.commit()
            db.refresh(db_task)
            logger.debug("Task created id=%s user_id=%s", db_task.id, db_task.user_id)
            return TaskOut.model_validate(db_task)

    def _apply_task_changes(self, task_id: int, changes: Dict[str, Any]) -> Optional[TaskOut]:
        with self._session() as db:
            task = db.get(models.Task, task_id)
            if not task:
                return None
            for field, value in changes.items():
                setattr(task, field, value)
            task.updated_at = models.utcnow()
            db.commit()
            db.refresh(task)
            return TaskOut.model_validate(task)

    def delete_task(self, task_id: int) -> bool:
        with self._session() as db:
            task = db.get(models.Task, task_id)
            if not task:
                return False
            db.delete(task)
            db.commit()
            logger.debug("Task deleted id=%s", task_id)
            return True

    def get_user_tasks(self, user_id: int, task_filter: FilterArg = None) -> List[TaskOut]:
        task_filter = check_filter(task_filter)
        with self._session() as db:
            q = db.query(models.Task).filter(_user_clause(user_id))
            q = _apply_filter(q, task_filter)
            return [TaskOut.model_validate(t) for t in _newest_first(q).all()]

    def get_task_summary(self, user_id: Optional[int] = None) -> TaskSummary:
        with self._session() as db:
            q = db.query(
                func.count(models.Task.id),
                func.coalesce(func.sum(case((models.Task.completed.is_(True), 1), else_=0)), 0),
            )
            if user_id is not None:
                q = q.filter(_user_clause(user_id))
            total, completed = q.one()
            return TaskSummary.from_counts(int(total), int(completed))

    # ---- projects ----

    def get_projects(self) -> List[ProjectOut]:
        with self._session() as db:
            projects = db.query(models.Project).order_by(models.Project.id).all()
            return [ProjectOut.model_validate(p) for p in projects]

    def get_projects_by_user(self, user_id: int) -> List[ProjectOut]:
        with self._session() as db:
            projects = (
                db.query(models.Project)
                .filter(models.Project.user_id == user_id)
                .order_by(models.Project.id)
                .all()
            )
            return [ProjectOut.model_validate(p) for p in projects]

    def get_accessible_projects(self, user_id: int) -> List[ProjectOut]:
        contacts = select(models.TeamMember.user_id2).where(models.TeamMember.user_id1 == user_id)
        with self._session() as db:
            projects = (
                db.query(models.Project)
                .filter(
                    or_(
                        models.Project.user_id == user_id,
                        and_(models.Project.is_public.is_(True), models.Project.user_id.in_(contacts)),
                    )
                )
                .order_by(models.Project.id)
                .all()
            )
            return [ProjectOut.model_validate(p) for p in projects]

    def get_project_by_id(self, project_id: int) -> Optional[ProjectOut]:
        with self._session() as db:
            project = db.get(models.Project, project_id)
            return ProjectOut.model_validate(project) if project else None

    def create_project(self, project: ProjectCreate) -> ProjectOut:
        with self._session() as db:
            now = models.utcnow()
            db_project = models.Project(created_at=now, updated_at=now, **project.model_dump())
            db.add(db_project)
            db.commit()
            db.refresh(db_project)
            logger.debug("Project created id=%s user_id=%s", db_project.id, db_project.user_id)
            return ProjectOut.model_validate(db_project)

    # ---- team members ----

    def add_team_member(self, user_id1: int, user_id2: int) -> TeamMemberView:
        self._check_distinct(user_id1, user_id2)
        with self._session() as db:
            if not db.get(models.User, user_id1):
                raise NotFoundError(f"User {user_id1} not found")
            contact = db.get(models.User, user_id2)
            if not contact:
                raise NotFoundError(f"User {user_id2} not found")

            existing = (
                db.query(models.TeamMember)
                .filter(
                    or_(
                        and_(models.TeamMember.user_id1 == user_id1, models.TeamMember.user_id2 == user_id2),
                        and_(models.TeamMember.user_id1 == user_id2, models.TeamMember.user_id2 == user_id1),
                    )
                )
                .first()
            )
            if existing:
                raise ConflictError("Users are already team members")

            now = models.utcnow()
            forward = models.TeamMember(user_id1=user_id1, user_id2=user_id2, created_at=now)
            backward = models.TeamMember(user_id1=user_id2, user_id2=user_id1, created_at=now)
            db.add_all([forward, backward])
            try:
                db.commit()
            except IntegrityError as exc:
                raise ConflictError("Users are already team members") from exc
            db.refresh(forward)
            logger.info("Team members connected %s <-> %s", user_id1, user_id2)
            return TeamMemberView(
                connection=TeamMemberOut.model_validate(forward),
                user=UserOut.model_validate(contact),
            )

    def get_team_members(self, user_id: int) -> List[TeamMemberView]:
        with self._session() as db:
            rows = (
                db.query(models.TeamMember, models.User)
                .join(models.User, models.TeamMember.user_id2 == models.User.id)
                .filter(models.TeamMember.user_id1 == user_id)
                .order_by(models.TeamMember.id)
                .all()
            )
            return [
                TeamMemberView(connection=TeamMemberOut.model_validate(edge), user=UserOut.model_validate(user))
                for edge, user in rows
            ]
