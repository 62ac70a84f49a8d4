import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import schemas
from .assignment import RelationCategory, select
from .auth import create_access_token, get_request_settings, get_storage, optional_auth, require_auth
from .config import Settings, get_settings
from .email_utils import notify_task_assigned
from .errors import AuthenticationError, NotFoundError, TaskAssistError, ValidationError
from .logging_setup import setup_logging
from .schemas import UserRecord
from .storage import Storage, build_storage

logger = logging.getLogger(__name__)

router = APIRouter()


def _with_owner(payload: Dict[str, Any], current_user: Optional[UserRecord]) -> Dict[str, Any]:
    if current_user is None or payload.get("userId") is not None or payload.get("user_id") is not None:
        return payload
    return {**payload, "userId": current_user.id}


def _check_references(
    storage: Storage,
    user_id: Optional[int] = None,
    project_id: Optional[int] = None,
    assigned_to: Optional[int] = None,
) -> None:
    errors = []
    if user_id is not None and storage.get_user(user_id) is None:
        errors.append({"field": "userId", "message": f"user {user_id} does not exist"})
    if project_id is not None and storage.get_project_by_id(project_id) is None:
        errors.append({"field": "projectId", "message": f"project {project_id} does not exist"})
    if assigned_to is not None and storage.get_user(assigned_to) is None:
        errors.append({"field": "assignedTo", "message": f"user {assigned_to} does not exist"})
    if errors:
        raise ValidationError("Validation error", errors=errors)


def _parse_category(category: Optional[str]) -> Optional[RelationCategory]:
    if category is None or category == "all":
        return None
    try:
        return RelationCategory(category)
    except ValueError:
        allowed = ", ".join(["all"] + [c.value for c in RelationCategory])
        raise ValidationError("Invalid category", errors=[{"field": "category", "message": f"must be one of: {allowed}"}])


# AUTH
@router.post("/auth/register", status_code=status.HTTP_201_CREATED, response_model=schemas.AuthResponse)
def register(
    user: schemas.UserCreate,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    created = storage.create_user(user)
    return schemas.AuthResponse(user=created.public(), token=create_access_token(created.id, settings))


@router.post("/auth/login", response_model=schemas.AuthResponse)
def login(
    payload: schemas.LoginRequest,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    user = storage.verify_user(payload.username, payload.password)
    if not user:
        raise AuthenticationError("Invalid credentials")
    logger.info("User logged in id=%s", user.id)
    return schemas.AuthResponse(user=user.public(), token=create_access_token(user.id, settings))


@router.get("/auth/me", response_model=schemas.UserOut)
def me(current_user: UserRecord = Depends(require_auth)):
    return current_user.public()


# TASKS
@router.get("/tasks/summary", response_model=schemas.TaskSummary)
def task_summary(
    user_id: Optional[int] = Query(None, alias="userId"),
    current_user: Optional[UserRecord] = Depends(optional_auth),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    if user_id is None and settings.summary_scope == "user" and current_user is not None:
        user_id = current_user.id
    return storage.get_task_summary(user_id)


@router.get("/tasks", response_model=List[schemas.TaskOut])
def get_tasks(
    filter: Optional[str] = None,
    user_id: Optional[int] = Query(None, alias="userId"),
    storage: Storage = Depends(get_storage),
):
    if user_id is not None:
        return storage.get_user_tasks(user_id, filter)
    return storage.get_tasks(filter)


@router.get("/tasks/user/{user_id}", response_model=List[schemas.TaskOut])
def get_user_tasks(
    user_id: int,
    filter: Optional[str] = None,
    category: Optional[str] = None,
    storage: Storage = Depends(get_storage),
):
    wanted = _parse_category(category)
    return select(storage.get_user_tasks(user_id, filter), user_id, wanted)


@router.get("/tasks/assigned-by/{user_id}", response_model=List[schemas.TaskOut])
def get_tasks_assigned_by(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_tasks_assigned_by(user_id)


@router.get("/tasks/{task_id}", response_model=schemas.TaskOut)
def get_task_details(task_id: int, storage: Storage = Depends(get_storage)):
    task = storage.get_task_by_id(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("/tasks", status_code=status.HTTP_201_CREATED, response_model=schemas.TaskOut)
def create_task(
    payload: Dict[str, Any] = Body(...),
    current_user: Optional[UserRecord] = Depends(optional_auth),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    task = schemas.parse(schemas.TaskCreate, _with_owner(payload, current_user))
    _check_references(storage, user_id=task.user_id, project_id=task.project_id, assigned_to=task.assigned_to)
    created = storage.create_task(task)
    notify_task_assigned(settings, storage, created)
    return created


@router.patch("/tasks/{task_id}", response_model=schemas.TaskOut)
def update_task(
    task_id: int,
    payload: Dict[str, Any] = Body(...),
    current_user: Optional[UserRecord] = Depends(optional_auth),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    patch = schemas.parse(schemas.TaskUpdate, payload)
    existing = storage.get_task_by_id(task_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Task not found")

    changes = patch.changes()
    _check_references(
        storage,
        user_id=changes.get("user_id"),
        project_id=changes.get("project_id"),
        assigned_to=changes.get("assigned_to"),
    )
    reassigned = "assigned_to" in changes and changes["assigned_to"] != existing.assigned_to
    if reassigned and current_user is not None:
        patch = patch.model_copy(update={"assigned_by": current_user.id})

    updated = storage.update_task(task_id, patch)
    if not updated:
        raise HTTPException(status_code=404, detail="Task not found")
    if updated.assigned_to != existing.assigned_to:
        notify_task_assigned(settings, storage, updated)
    return updated


@router.post("/tasks/{task_id}/assign", response_model=schemas.TaskOut)
def assign_task(
    task_id: int,
    payload: schemas.AssignRequest,
    current_user: Optional[UserRecord] = Depends(optional_auth),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
):
    existing = storage.get_task_by_id(task_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Task not found")
    _check_references(storage, assigned_to=payload.assigned_to)

    assigner = current_user.id if current_user is not None else existing.user_id
    updated = storage.assign_task(task_id, payload.assigned_to, assigner)
    if not updated:
        raise HTTPException(status_code=404, detail="Task not found")
    if updated.assigned_to != existing.assigned_to:
        notify_task_assigned(settings, storage, updated)
    return updated


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, storage: Storage = Depends(get_storage)):
    if not storage.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return None


# USERS
@router.get("/users/search", response_model=List[schemas.UserOut])
def search_users(q: Optional[str] = None, storage: Storage = Depends(get_storage)):
    if q is None or not q.strip():
        raise ValidationError("Search query is required", errors=[{"field": "q", "message": "field required"}])
    return storage.search_users(q.strip())


# PROJECTS
@router.get("/projects", response_model=List[schemas.ProjectOut])
def get_projects(
    user_id: Optional[int] = Query(None, alias="userId"),
    storage: Storage = Depends(get_storage),
):
    if user_id is not None:
        return storage.get_projects_by_user(user_id)
    return storage.get_projects()


@router.get("/projects/accessible/{user_id}", response_model=List[schemas.ProjectOut])
def get_accessible_projects(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_accessible_projects(user_id)


@router.get("/projects/{project_id}", response_model=schemas.ProjectOut)
def get_project_details(project_id: int, storage: Storage = Depends(get_storage)):
    project = storage.get_project_by_id(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.post("/projects", status_code=status.HTTP_201_CREATED, response_model=schemas.ProjectOut)
def create_project(
    payload: Dict[str, Any] = Body(...),
    current_user: Optional[UserRecord] = Depends(optional_auth),
    storage: Storage = Depends(get_storage),
):
    project = schemas.parse(schemas.ProjectCreate, _with_owner(payload, current_user))
    _check_references(storage, user_id=project.user_id)
    return storage.create_project(project)


# TEAM MEMBERS
@router.get("/team-members/{user_id}", response_model=List[schemas.TeamMemberView])
def get_team_members(user_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_team_members(user_id)


@router.post("/team-members", status_code=status.HTTP_201_CREATED, response_model=schemas.TeamMemberView)
def add_team_member(payload: Dict[str, Any] = Body(...), storage: Storage = Depends(get_storage)):
    request = schemas.parse(schemas.TeamMemberCreate, payload)
    try:
        return storage.add_team_member(request.user_id1, request.user_id2)
    except NotFoundError as exc:
        # compound operation: an unknown user is a bad request here, not a missing resource
        raise ValidationError(exc.message) from exc


def _error_body(exc: TaskAssistError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TaskAssistError)
    async def handle_app_error(request: Request, exc: TaskAssistError):
        if exc.status_code >= 500:
            logger.error("Request failed %s %s: %s", request.method, request.url.path, exc)
            return JSONResponse(status_code=500, content={"detail": "Internal server error"})
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = schemas.field_errors(exc.errors())
        return JSONResponse(status_code=400, content={"detail": "Validation error", "errors": errors})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(settings: Optional[Settings] = None, storage: Optional[Storage] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.storage.close()

    app = FastAPI(title="TaskAssist API", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage or build_storage(settings)
    app.include_router(router, prefix=settings.api_prefix)
    register_error_handlers(app)
    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
