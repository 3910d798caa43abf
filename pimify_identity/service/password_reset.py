from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Optional, Set

from pimify_identity.logging import get_logger, redact_email
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore, validate_password
from pimify_identity.service.email import EmailService
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.service.tokens import TokenIssuer
from pimify_identity.storage.models import User, UserStatus
from pimify_identity.storage.token_store import TokenStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    return hashlib.sha256((token or "").encode()).hexdigest()


class PasswordResetService:
    """Single-use password reset tokens, one live token per email.

    Records are kept past their expiry for ``retention`` so an expired token
    reports TOKEN_EXPIRED instead of looking unknown; consumed tokens leave a
    tombstone for the same reason.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        token_store: TokenStore,
        *,
        email_service: Optional[EmailService] = None,
        issuer: Optional[TokenIssuer] = None,
        activity: Optional[ActivitySink] = None,
        ttl: timedelta = timedelta(hours=1),
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.tokens = token_store
        self.email_service = email_service
        self.issuer = issuer
        self.activity = activity
        self.ttl = ttl
        self.retention = retention
        self._clock = clock
        self._dispatches: Set[asyncio.Task] = set()

    @staticmethod
    def _record_key(token_hash: str) -> str:
        return f"reset:{token_hash}"

    @staticmethod
    def _email_key(email: str) -> str:
        return f"reset-email:{email.strip().lower()}"

    @staticmethod
    def _used_key(token_hash: str) -> str:
        return f"reset-used:{token_hash}"

    def _store_ttl(self) -> int:
        return int((self.ttl + self.retention).total_seconds())

    async def request_reset(self, email: str) -> Result:
        """Always succeeds; only a real, usable account gets a token and mail.

        Token writes and mail for a known account happen in a background task,
        so the answer for a known and an unknown address costs the same.
        """
        user = self.credentials.get_by_email(email or "").data
        if not user or user.status == UserStatus.DEACTIVATED:
            logger.info("password_reset_requested_unknown", email=redact_email(email))
            return Result.ok()
        self._spawn(self._issue_token(user))
        return Result.ok()

    def _spawn(self, work: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(work)
        self._dispatches.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("password_reset_dispatch_failed", error=str(exc))

    async def _issue_token(self, user: User) -> None:
        token = secrets.token_urlsafe(32)
        token_hash = hash_token(token)
        email_key = self._email_key(user.email)
        previous = await self.tokens.get(email_key)
        if previous:
            await self.tokens.delete(self._record_key(previous))
            logger.info("password_reset_token_superseded", user_id=user.id, token_hash=previous[:8])
        expires_at = self._clock() + self.ttl
        record = {"user_id": user.id, "email": user.email, "expires_at": expires_at.isoformat()}
        await self.tokens.put(self._record_key(token_hash), json.dumps(record), self._store_ttl())
        await self.tokens.put(email_key, token_hash, self._store_ttl())

        record_activity(self.activity, ActivityAction.PASSWORD_RESET_REQUESTED, user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id, token_hash=token_hash[:8])
        if self.email_service:
            await self._send_email(user.email, token)

    async def _send_email(self, email: str, token: str) -> None:
        ttl_minutes = int(self.ttl.total_seconds() // 60)
        result = await asyncio.to_thread(
            self.email_service.send_password_reset, email, token, ttl_minutes=ttl_minutes
        )
        if not result.success:
            logger.error("password_reset_email_failed", email=redact_email(email))

    async def drain(self) -> None:
        """Wait for background e-mail dispatches (shutdown and tests)."""
        if self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def _load(self, token_hash: str) -> tuple[Optional[dict], Optional[str]]:
        raw = await self.tokens.get(self._record_key(token_hash))
        return (json.loads(raw) if raw else None), raw

    async def verify(self, token: str) -> Result:
        token_hash = hash_token(token)
        if await self.tokens.get(self._used_key(token_hash)):
            return Result.fail(ErrorKind.TOKEN_CONSUMED, "reset token has already been used")
        record, _ = await self._load(token_hash)
        if not record:
            return Result.fail(ErrorKind.AUTH_INVALID_TOKEN, "reset token is invalid")
        if datetime.fromisoformat(record["expires_at"]) <= self._clock():
            return Result.fail(ErrorKind.TOKEN_EXPIRED, "reset token has expired")
        if await self.tokens.get(self._email_key(record["email"])) != token_hash:
            return Result.fail(ErrorKind.AUTH_INVALID_TOKEN, "reset token is invalid")
        return Result.ok({"user_id": record["user_id"], "email": record["email"]})

    async def consume(self, token: str) -> Result:
        """Remove the token for good; exactly one concurrent caller succeeds."""
        token_hash = hash_token(token)
        record, raw = await self._load(token_hash)
        if not record:
            if await self.tokens.get(self._used_key(token_hash)):
                return Result.fail(ErrorKind.TOKEN_CONSUMED, "reset token has already been used")
            return Result.fail(ErrorKind.AUTH_INVALID_TOKEN, "reset token is invalid")
        if not await self.tokens.compare_and_delete(self._record_key(token_hash), raw):
            return Result.fail(ErrorKind.TOKEN_CONSUMED, "reset token has already been used")
        await self._retire(token_hash, record["email"])
        return Result.ok({"user_id": record["user_id"]})

    async def _retire(self, token_hash: str, email: str) -> None:
        await self.tokens.put(
            self._used_key(token_hash), "1", int(self.retention.total_seconds())
        )
        await self.tokens.compare_and_delete(self._email_key(email), token_hash)

    async def complete_reset(self, token: str, new_password: str) -> Result:
        """Set a new password with a reset token and end the user's sessions.

        The token is claimed before the password write and put back if the
        write fails, so it is used at most once and stays valid for a retry.
        """
        verified = await self.verify(token)
        if not verified.success:
            return verified
        problem = validate_password(new_password)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem, field="password")

        token_hash = hash_token(token)
        record, raw = await self._load(token_hash)
        if not record or not await self.tokens.compare_and_delete(self._record_key(token_hash), raw):
            return Result.fail(ErrorKind.TOKEN_CONSUMED, "reset token has already been used")

        user_id = record["user_id"]
        written = self.credentials.admin_reset_password(user_id, new_password)
        if not written.success:
            remaining = datetime.fromisoformat(record["expires_at"]) - self._clock() + self.retention
            await self.tokens.put(
                self._record_key(token_hash), raw, max(1, int(remaining.total_seconds()))
            )
            logger.warning("password_reset_write_failed", user_id=user_id, error=written.error)
            return written

        await self._retire(token_hash, record["email"])
        if self.issuer:
            await self.issuer.revoke_all(user_id)
        record_activity(self.activity, ActivityAction.PASSWORD_RESET_COMPLETED, user_id=user_id)
        logger.info("password_reset_completed", user_id=user_id)
        return Result.ok({"user_id": user_id})

    async def admin_reset(self, actor_id: str, user_id: str, new_password: str) -> Result:
        """Set ``user_id``'s password directly and end all of their sessions."""
        written = self.credentials.admin_reset_password(user_id, new_password)
        if not written.success:
            return written
        if self.issuer:
            await self.issuer.revoke_all(user_id)
        record_activity(
            self.activity,
            ActivityAction.PASSWORD_RESET_COMPLETED,
            user_id=user_id,
            actor_id=actor_id,
            method="admin",
        )
        logger.info("password_reset_by_admin", user_id=user_id, actor_id=actor_id)
        return Result.ok({"user_id": user_id})


__all__ = ["PasswordResetService", "hash_token"]
