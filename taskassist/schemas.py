from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError

PRIORITIES = ("low", "medium", "high")

# leading loc entries FastAPI adds for request validation errors
_LOC_SOURCES = ("body", "query", "path", "header")


class TaskFilter(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"
    STARRED = "starred"


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Accept a date, a datetime or an ISO-8601 string; return naive UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time())
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError("must be a date or an ISO-8601 date string")
    else:
        raise ValueError("must be a date or an ISO-8601 date string")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_priority(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or value.strip().lower() not in PRIORITIES:
        raise ValueError("must be one of: " + ", ".join(PRIORITIES))
    return value.strip().lower()


def parse(model, data: Any):
    """Validate ``data`` against ``model``, raising our ValidationError on failure."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Validation error", errors=field_errors(exc.errors())) from exc


def field_errors(errors) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in _LOC_SOURCES:
            loc = loc[1:]
        out.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid value")})
    return out


# USERS
class UserCreate(CamelModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=6)
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None

    @field_validator("username", mode="before")
    @classmethod
    def _strip_username(cls, v):
        return v.strip() if isinstance(v, str) else v


class UserOut(CamelModel):
    id: int
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"
    profile_image_url: Optional[str] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    last_login: Optional[datetime] = None


class UserRecord(UserOut):
    """Stored user, including the password hash. Never returned by the API."""

    password: str

    def public(self) -> UserOut:
        return UserOut.model_validate(self.model_dump(exclude={"password"}))


class LoginRequest(CamelModel):
    username: str
    password: str


class AuthResponse(CamelModel):
    user: UserOut
    token: str


# PROJECTS
class ProjectCreate(CamelModel):
    name: str = Field(min_length=1)
    color: str = Field(min_length=1)
    user_id: int
    team_id: Optional[int] = None
    is_public: bool = False


class ProjectOut(ProjectCreate):
    id: int
    created_at: datetime
    updated_at: datetime


# TASKS
class _TaskFields(CamelModel):
    @field_validator("due_date", mode="before", check_fields=False)
    @classmethod
    def _coerce_due_date(cls, v):
        return coerce_datetime(v)

    @field_validator("priority", mode="before", check_fields=False)
    @classmethod
    def _normalize_priority(cls, v):
        return normalize_priority(v)


class TaskCreate(_TaskFields):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    completed: bool = False
    project_id: Optional[int] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = "medium"
    starred: bool = False
    assigned_to: Optional[int] = None
    assigned_by: Optional[int] = None
    user_id: int
    team_id: Optional[int] = None

    @model_validator(mode="after")
    def _pair_assignment(self):
        if self.assigned_to is None:
            self.assigned_by = None
        elif self.assigned_by is None:
            self.assigned_by = self.user_id
        return self


class TaskUpdate(_TaskFields):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    completed: Optional[bool] = None
    project_id: Optional[int] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    starred: Optional[bool] = None
    assigned_to: Optional[int] = None
    assigned_by: Optional[int] = None
    user_id: Optional[int] = None
    team_id: Optional[int] = None

    @field_validator("title", "completed", "user_id")
    @classmethod
    def _not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class TaskOut(CamelModel):
    id: int
    title: str
    description: Optional[str] = None
    completed: bool = False
    project_id: Optional[int] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    starred: Optional[bool] = False
    assigned_to: Optional[int] = None
    assigned_by: Optional[int] = None
    user_id: int
    team_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class AssignRequest(CamelModel):
    assigned_to: Optional[int]


class TaskSummary(CamelModel):
    total: int
    completed: int
    pending: int

    @classmethod
    def from_counts(cls, total: int, completed: int) -> "TaskSummary":
        return cls(total=total, completed=completed, pending=total - completed)


# TEAM MEMBERS
class TeamMemberCreate(CamelModel):
    user_id1: int
    user_id2: int


class TeamMemberOut(CamelModel):
    id: int
    user_id1: int
    user_id2: int
    created_at: datetime


class TeamMemberView(CamelModel):
    connection: TeamMemberOut
    user: UserOut
