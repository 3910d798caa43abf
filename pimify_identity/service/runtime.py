from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from pimify_identity.config import get_settings, reset_settings_cache
from pimify_identity.logging import get_logger
from pimify_identity.service.activity import ActivityLogger
from pimify_identity.service.auth import AuthenticationService
from pimify_identity.service.bulk import BulkUserOperations
from pimify_identity.service.credentials import CredentialStore
from pimify_identity.service.directory import DirectoryFederationService, DirectorySyncWorker
from pimify_identity.service.email import EmailService
from pimify_identity.service.invitations import InvitationService
from pimify_identity.service.password_reset import PasswordResetService
from pimify_identity.service.permissions import CustomPermissionService
from pimify_identity.service.rate_limit import RateLimiter
from pimify_identity.service.sso import SSOService
from pimify_identity.service.tokens import TokenIssuer
from pimify_identity.service.two_factor import TwoFactorService
from pimify_identity.service.webhooks import WebhookDispatcher
from pimify_identity.storage.memory import MemoryStore
from pimify_identity.storage.redis_cache import RedisRateLimiter, RedisTokenStore
from pimify_identity.storage.token_store import MemoryTokenStore, TokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=settings.shared_fs_root,
                encryption_key=settings.mfa_encryption_key or settings.jwt_secret,
                persist=settings.persist_memory_store and not settings.test_mode,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis: Optional[RedisTokenStore] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                candidate = RedisTokenStore(settings.redis_url)
                candidate.verify_connection()
                self.redis = candidate
            except Exception as exc:
                redis_error = exc

        if self.redis is not None:
            self.token_store: TokenStore = self.redis
            rate_backend = RedisRateLimiter(client=self.redis.client)
        else:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, single-use tokens and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, reset and invite "
                    "tokens and rate limits are process-local."
                ),
                mode=fallback_mode,
            )
            self.token_store = MemoryTokenStore()
            rate_backend = None

        self.activity = ActivityLogger()
        self.email = EmailService.from_settings(settings)
        self.webhooks = WebhookDispatcher()
        self.rate_limiter = RateLimiter.from_settings(settings, backend=rate_backend)
        if isinstance(self.token_store, MemoryTokenStore):
            self.rate_limiter.add_sweeper(self.token_store.purge_expired)
        self.credentials = CredentialStore(self.store)
        self.tokens = TokenIssuer(settings, self.token_store, sessions=self.store)
        self.two_factor = TwoFactorService(
            self.credentials,
            issuer=settings.totp_issuer,
            backup_code_count=settings.backup_code_count,
            enforced_roles=settings.two_factor_enforced_roles,
            activity=self.activity,
        )
        auto_unlock = settings.lockout_auto_unlock_minutes
        self.auth = AuthenticationService(
            self.credentials,
            self.tokens,
            self.two_factor,
            self.rate_limiter,
            activity=self.activity,
            lockout_threshold=settings.lockout_threshold,
            lockout_window=timedelta(minutes=settings.lockout_window_minutes),
            auto_unlock_after=timedelta(minutes=auto_unlock) if auto_unlock > 0 else None,
        )
        self.password_reset = PasswordResetService(
            self.credentials,
            self.token_store,
            email_service=self.email,
            issuer=self.tokens,
            activity=self.activity,
            ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
        )
        self.invitations = InvitationService(
            self.credentials,
            self.store,
            self.token_store,
            email_service=self.email,
            activity=self.activity,
            ttl=timedelta(days=settings.invitation_ttl_days),
            default_tenant_id=settings.default_tenant_id,
        )
        self.permissions = CustomPermissionService(self.store, activity=self.activity)
        self.bulk = BulkUserOperations(self.credentials, self.tokens, activity=self.activity)
        self.directory = DirectoryFederationService(
            self.credentials,
            self.store,
            webhooks=self.webhooks,
            ops_webhook_url=settings.ops_webhook_url,
            activity=self.activity,
            max_retries=settings.directory_sync_max_retries,
            retry_delay=settings.directory_sync_retry_delay_seconds,
        )
        self.sso = SSOService(self.store)
        self.directory_sync_worker = DirectorySyncWorker(self.directory)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis is not None,
            email_configured=self.email.is_configured,
            rate_limit_enabled=self.rate_limiter.enabled,
            directory_sync_worker=settings.directory_sync_worker_enabled,
        )

    async def close(self) -> None:
        await self.directory_sync_worker.stop()
        await self.password_reset.drain()
        if self.redis is not None:
            await self.redis.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.redis.close())
            except RuntimeError:
                asyncio.run(runtime.redis.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
