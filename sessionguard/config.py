from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger
from sessionguard.service.expiration import is_strict_duration

logger = get_logger(__name__)


class AuditSinkKind(str, Enum):
    """Where audit events for refresh-token transitions are written."""

    LOG = "log"
    JSONL = "jsonl"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, storage and auditing."""

    access_token_ttl: str | int = env_field(
        "15m",
        "ACCESS_TOKEN_TTL",
        description="Access token lifetime: days as a number, or '<n>s|m|h|d'",
    )
    refresh_token_ttl: str | int = env_field(
        "7d",
        "REFRESH_TOKEN_TTL",
        description="Refresh token lifetime: days as a number, or '<n>s|m|h|d'",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking access token expiry",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(None, "REDIS_URL")
    audit_sink: AuditSinkKind = env_field(AuditSinkKind.LOG, "AUDIT_SINK")
    audit_log_dir: str | None = env_field(
        None,
        "AUDIT_LOG_DIR",
        description="Directory for the jsonl audit sink; defaults to <SHARED_FS_ROOT>/audit",
    )
    audit_timeout_seconds: float = env_field(
        1.0,
        "AUDIT_TIMEOUT_SECONDS",
        gt=0,
        description="Longest a lifecycle call waits on one audit write before giving up on it",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _warn_lenient_ttl(cls, value: str | int, info) -> str | int:
        # Lenient values still parse (bare integers as days, junk as 7 days)
        if not is_strict_duration(value):
            logger.warning(
                "ttl_config_lenient_value",
                field=info.field_name,
                value=value,
                message="value does not match <n><s|m|h|d>; falling back to day-based parsing",
            )
        return value

    @field_validator("audit_sink")
    @classmethod
    def _validate_audit_sink(cls, value: AuditSinkKind) -> AuditSinkKind:
        return AuditSinkKind(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so access tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
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
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    def resolved_audit_dir(self) -> Path:
        if self.audit_log_dir:
            return Path(self.audit_log_dir)
        return Path(self.shared_fs_root) / "audit"


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
