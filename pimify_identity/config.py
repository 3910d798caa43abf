from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pimify_identity.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access services."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/pimify", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory record store to SHARED_FS_ROOT/state",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets.",
    )
    default_tenant_id: str = env_field("default", "DEFAULT_TENANT_ID")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("pimify", "JWT_ISSUER")
    jwt_audience: str = env_field("pimify-admin", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Account lockout
    lockout_threshold: int = env_field(
        5, "LOCKOUT_THRESHOLD", description="Failed logins that lock an account"
    )
    lockout_window_minutes: int = env_field(
        15,
        "LOCKOUT_WINDOW_MINUTES",
        description="Failures older than this no longer count toward the threshold",
    )
    lockout_auto_unlock_minutes: int = env_field(
        0,
        "LOCKOUT_AUTO_UNLOCK_MINUTES",
        description="Automatically unlock after this many minutes; 0 requires an explicit unlock",
    )

    # Single-use tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS")

    # Two-factor
    totp_issuer: str = env_field("Pimify", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_enforced_roles: list[str] = env_field(
        ["ADMIN"], "TWO_FACTOR_ENFORCED_ROLES"
    )

    # Rate limits (sliding window)
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_window_ms: int = env_field(60_000, "RATE_LIMIT_WINDOW_MS")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    login_rate_limit: int = env_field(5, "API_RATE_LIMIT_LOGIN")
    password_reset_rate_limit: int = env_field(3, "API_RATE_LIMIT_PASSWORD_RESET")
    invitation_rate_limit: int = env_field(10, "API_RATE_LIMIT_INVITATIONS")
    rate_limit_idle_eviction_seconds: int = env_field(300, "RATE_LIMIT_IDLE_EVICTION_SECONDS")

    # Directory federation
    directory_sync_max_retries: int = env_field(3, "DIRECTORY_SYNC_MAX_RETRIES")
    directory_sync_retry_delay_seconds: float = env_field(
        2.0, "DIRECTORY_SYNC_RETRY_DELAY_SECONDS"
    )
    directory_sync_worker_enabled: bool = env_field(False, "DIRECTORY_SYNC_WORKER_ENABLED")
    ops_webhook_url: str | None = env_field(
        None, "OPS_WEBHOOK_URL", description="Slack/Teams webhook for operational alerts"
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Pimify", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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

    @field_validator("two_factor_enforced_roles", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("two_factor_enforced_roles")
    @classmethod
    def _normalize_roles(cls, value: list[str]) -> list[str]:
        return [role.upper() for role in value]

    @field_validator(
        "lockout_threshold",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "password_reset_ttl_minutes",
        "invitation_ttl_days",
        "backup_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/pimify"))
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
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
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
            if tmp_path:
                _unlink_quietly(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


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
