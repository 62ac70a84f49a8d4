import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .config import Settings
from .errors import AuthenticationError
from .schemas import UserRecord
from .storage import Storage

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def create_access_token(user_id: int, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(hours=settings.token_expire_hours)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"sub": str(user_id), "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str, settings: Settings) -> int:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid token") from exc
    sub = payload.get("sub")
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token")


def resolve_user(token: Optional[str], storage: Storage, settings: Settings) -> UserRecord:
    if not token:
        raise AuthenticationError("Authentication required")
    user_id = decode_access_token(token, settings)
    user = storage.get_user(user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("Invalid token, user not found")
    return user


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_request_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_auth(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
) -> UserRecord:
    user = resolve_user(token, storage, settings)
    request.state.user = user
    return user


def optional_auth(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_request_settings),
) -> Optional[UserRecord]:
    request.state.user = None
    if not token:
        return None
    try:
        user = resolve_user(token, storage, settings)
    except AuthenticationError as exc:
        logger.debug("Ignoring bearer token: %s", exc)
        return None
    request.state.user = user
    return user
