from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    public_base_url: str
    cors_allow_origins: list[str]
    webhook_dispatch_enabled: bool
    webhook_max_attempts: int
    webhook_retry_backoff_seconds: int
    webhook_timeout_seconds: int


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = "sqlite:///data/linkcard.sqlite3"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/"),
        cors_allow_origins=_list_env("CORS_ALLOW_ORIGINS", ["*"]),
        webhook_dispatch_enabled=_bool_env("WEBHOOK_DISPATCH_ENABLED", True),
        webhook_max_attempts=max(1, _int_env("WEBHOOK_MAX_ATTEMPTS", 5)),
        webhook_retry_backoff_seconds=max(1, _int_env("WEBHOOK_RETRY_BACKOFF_SECONDS", 30)),
        webhook_timeout_seconds=max(1, min(60, _int_env("WEBHOOK_TIMEOUT_SECONDS", 10))),
    )
