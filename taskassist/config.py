import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

STORAGE_BACKENDS = ("memory", "sql")
SUMMARY_SCOPES = ("global", "user")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_choice(name: str, default: str, choices) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in choices else default


@dataclass(frozen=True)
class Settings:
    storage_backend: str = "memory"
    database_url: str = "sqlite:///./taskassist.db"

    secret_key: str = "taskassist-secret-key"
    algorithm: str = "HS256"
    token_expire_hours: int = 24
    bcrypt_rounds: int = 12

    api_prefix: str = "/api"
    summary_scope: str = "global"
    seed_demo_data: bool = False

    notifications_enabled: bool = False
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_backend_url: str = "redis://localhost:6379/0"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    mail_from: str = "noreply@taskassist.local"

    log_level: str = "INFO"
    log_dir: Optional[str] = None


def load_settings() -> Settings:
    return Settings(
        storage_backend=_env_choice("STORAGE_BACKEND", "memory", STORAGE_BACKENDS),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./taskassist.db"),
        secret_key=os.getenv("SECRET_KEY", "taskassist-secret-key"),
        token_expire_hours=_env_int("TOKEN_EXPIRE_HOURS", 24),
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
        api_prefix=os.getenv("API_PREFIX", "/api").rstrip("/"),
        summary_scope=_env_choice("SUMMARY_SCOPE", "global", SUMMARY_SCOPES),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", False),
        notifications_enabled=_env_bool("NOTIFICATIONS_ENABLED", False),
        celery_broker_url=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        celery_backend_url=os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/0"),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        mail_from=os.getenv("MAIL_FROM", "noreply@taskassist.local"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=os.getenv("LOG_DIR") or None,
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
