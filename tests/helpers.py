# tests/helpers.py

from typing import Any, Dict, Optional

from taskassist.schemas import ProjectCreate, TaskCreate, UserCreate

API = "/api"


def make_user(storage, username: str, password: str = "secret1", **extra):
    return storage.create_user(UserCreate(username=username, password=password, **extra))


def make_task(storage, user_id: int, title: str = "Task", **extra):
    return storage.create_task(TaskCreate(title=title, user_id=user_id, **extra))


def make_project(storage, user_id: int, name: str = "Work", color: str = "#10B981", **extra):
    return storage.create_project(ProjectCreate(name=name, color=color, user_id=user_id, **extra))


def register(client, username: str, password: str = "secret1", **extra) -> Dict[str, Any]:
    resp = client.post(f"{API}/auth/register", json={"username": username, "password": password, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def has_password(obj: Optional[Any]) -> bool:
    """True if a JSON payload carries a password field anywhere."""
    if isinstance(obj, dict):
        return "password" in obj or any(has_password(v) for v in obj.values())
    if isinstance(obj, list):
        return any(has_password(v) for v in obj)
    return False
