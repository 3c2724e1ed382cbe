from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    service_name: str = env_field(
        "auth-service",
        "SERVICE_NAME",
        description="Issuer and audience stamped into every token",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/tenantauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_secret_file: str | None = env_field(
        None,
        "JWT_SECRET_FILE",
        description="Path to a mounted secret; its contents override JWT_SECRET",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")
    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Root tenant provisioned by the bootstrap flow
    bootstrap_on_startup: bool = env_field(True, "BOOTSTRAP_ON_STARTUP")
    bootstrap_org_name: str = env_field("Root Organization", "BOOTSTRAP_ORG_NAME")
    bootstrap_org_description: str = env_field(
        "System root organization", "BOOTSTRAP_ORG_DESCRIPTION"
    )
    bootstrap_org_domain: str = env_field("root.local", "BOOTSTRAP_ORG_DOMAIN")
    bootstrap_admin_email: str = env_field("admin@root.local", "BOOTSTRAP_ADMIN_EMAIL")
    bootstrap_admin_username: str = env_field("root-admin", "BOOTSTRAP_ADMIN_USERNAME")
    bootstrap_admin_password: str = env_field("ChangeMe123!", "BOOTSTRAP_ADMIN_PASSWORD")
    bootstrap_admin_first_name: str = env_field("System", "BOOTSTRAP_ADMIN_FIRST_NAME")
    bootstrap_admin_last_name: str = env_field(
        "Administrator", "BOOTSTRAP_ADMIN_LAST_NAME"
    )
    bootstrap_force_password: bool = env_field(False, "BOOTSTRAP_FORCE_PASSWORD")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            raw = None
            if env_name in os.environ:
                raw = os.environ[env_name]
            elif env_name in env_file_values:
                raw = env_file_values[env_name]
            if raw is None:
                continue
            # Blank values fall back to defaults, matching unset variables
            if isinstance(raw, str) and not raw.strip():
                continue
            merged[name] = raw.strip() if isinstance(raw, str) else raw
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_min_length",
        "max_login_attempts",
        "lockout_duration_minutes",
        "password_hash_time_cost",
        "password_hash_memory_cost",
        "default_page_size",
        "max_page_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_page_bounds(self) -> "Settings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")
        return self

    @model_validator(mode="after")
    def _resolve_jwt_secret(self) -> "Settings":
        if self.jwt_secret_file:
            override = _read_secret_file(Path(self.jwt_secret_file))
            if override:
                self.jwt_secret = override
                return self
        if not self.jwt_secret:
            self.jwt_secret = _load_or_generate_secret(Path(self.shared_fs_root))
        return self


def _read_secret_file(path: Path) -> str | None:
    try:
        value = path.read_text().strip()
    except OSError as exc:
        logger.warning("jwt_secret_file_unreadable", path=str(path), error=str(exc))
        return None
    if not value:
        logger.warning("jwt_secret_file_empty", path=str(path))
        return None
    return value


def _load_or_generate_secret(fs_root: Path) -> str:
    """Persist a generated JWT secret so tokens remain valid across restarts."""
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
