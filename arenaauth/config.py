from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from arenaauth.logging import get_logger

logger = get_logger(__name__)

# Policy defaults. Each one is overridable through the matching env var.
DEFAULT_LOCKOUT_THRESHOLD = 5
DEFAULT_SESSION_TTL_MINUTES = 7 * 24 * 60
DEFAULT_VERIFICATION_TTL_MINUTES = 60
DEFAULT_RISK_FAILURE_WEIGHT = 10
DEFAULT_RISK_FAILURE_CAP = 50
DEFAULT_RISK_NEW_IP_WEIGHT = 25
DEFAULT_RISK_WINDOW_HOURS = 24


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/arenaauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str = env_field("/srv/arenaauth", "ARENAAUTH_STATE_DIR")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to STATE_DIR as JSON after each mutation",
    )
    secret_encryption_key: str = env_field(
        None, "SECRET_ENCRYPTION_KEY", validate_default=True
    )

    session_ttl_minutes: int = env_field(
        DEFAULT_SESSION_TTL_MINUTES,
        "SESSION_TTL_MINUTES",
        description="Absolute lifetime of a login session",
    )
    verification_ttl_minutes: int = env_field(
        DEFAULT_VERIFICATION_TTL_MINUTES, "VERIFICATION_TTL_MINUTES"
    )
    lockout_threshold: int = env_field(
        DEFAULT_LOCKOUT_THRESHOLD,
        "LOCKOUT_THRESHOLD",
        description="Consecutive failed logins that lock an account",
    )
    risk_failure_weight: int = env_field(
        DEFAULT_RISK_FAILURE_WEIGHT, "RISK_FAILURE_WEIGHT"
    )
    risk_failure_cap: int = env_field(DEFAULT_RISK_FAILURE_CAP, "RISK_FAILURE_CAP")
    risk_new_ip_weight: int = env_field(
        DEFAULT_RISK_NEW_IP_WEIGHT, "RISK_NEW_IP_WEIGHT"
    )
    risk_window_hours: int = env_field(DEFAULT_RISK_WINDOW_HOURS, "RISK_WINDOW_HOURS")
    security_log_default_limit: int = env_field(100, "SECURITY_LOG_DEFAULT_LIMIT")
    security_log_max_limit: int = env_field(1000, "SECURITY_LOG_MAX_LIMIT")
    audit_authenticated_access: bool = env_field(
        True,
        "AUDIT_AUTHENTICATED_ACCESS",
        description="Record an authenticated_access entry for every authenticated request",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_minutes",
        "verification_ttl_minutes",
        "lockout_threshold",
        "risk_window_hours",
        "security_log_default_limit",
        "security_log_max_limit",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("risk_failure_weight", "risk_failure_cap", "risk_new_ip_weight")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("risk weights cannot be negative")
        return value

    @field_validator("secret_encryption_key", mode="before")
    @classmethod
    def _ensure_encryption_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted 2FA secrets survive restarts
        state_dir = Path(os.getenv("ARENAAUTH_STATE_DIR", "/srv/arenaauth"))
        key_path = state_dir / ".secret_key"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning(
                "secret_key_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("secret_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(64)
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".secret_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            try:
                if "tmp_path" in locals():
                    os.unlink(tmp_path)
            except OSError:
                pass
            logger.error("secret_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist encryption key; set SECRET_ENCRYPTION_KEY or make ARENAAUTH_STATE_DIR writable"
            ) from exc
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
