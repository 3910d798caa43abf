from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pimify_identity.logging import get_logger, redact_email
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.rate_limit import LOGIN_ROUTE, RateLimiter
from pimify_identity.service.result import Result
from pimify_identity.service.tokens import TokenIssuer
from pimify_identity.service.two_factor import TwoFactorService
from pimify_identity.storage.models import User, UserStatus

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuthContext:
    user: User
    session_id: str
    claims: dict[str, Any] = field(default_factory=dict)


class AuthenticationService:
    """Login, token refresh, logout and "who am I".

    Accounts lock after ``lockout_threshold`` failures inside
    ``lockout_window`` and stay locked until an explicit unlock, or until
    ``auto_unlock_after`` has passed when that is set.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        issuer: TokenIssuer,
        two_factor: TwoFactorService,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        activity: Optional[ActivitySink] = None,
        lockout_threshold: int = 5,
        lockout_window: timedelta = timedelta(minutes=15),
        auto_unlock_after: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.two_factor = two_factor
        self.rate_limiter = rate_limiter
        self.activity = activity
        self.lockout_threshold = lockout_threshold
        self.lockout_window = lockout_window
        self.auto_unlock_after = auto_unlock_after
        self._clock = clock

    # -- login ------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        code: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Result:
        normalized = (email or "").strip().lower()
        if self.rate_limiter:
            gate = await self.rate_limiter.check(ip_address or normalized, LOGIN_ROUTE)
            if not gate.success:
                return gate

        user = self.credentials.get_by_email(normalized).data
        if user is None:
            self.credentials.dummy_verify(password)
            record_activity(
                self.activity, ActivityAction.LOGIN_FAILED, reason="unknown_user", ip_address=ip_address
            )
            logger.info("login_failed", email=redact_email(normalized), reason="unknown_user")
            return Result.fail(ErrorKind.AUTH_INVALID_CREDENTIALS, "invalid email or password")

        if user.status == UserStatus.LOCKED:
            user = self._maybe_auto_unlock(user)
        blocked = self._status_failure(user)
        if blocked:
            self.credentials.dummy_verify(password)
            record_activity(
                self.activity,
                ActivityAction.LOGIN_FAILED,
                user_id=user.id,
                reason=blocked.error.value,
                ip_address=ip_address,
            )
            return blocked

        if not self.credentials.has_password(user.id):
            self.credentials.dummy_verify(password)
            return self._register_failure(user, "no_local_password", ip_address)
        if not self.credentials.verify_password(user, password):
            return self._register_failure(user, "bad_password", ip_address)

        if user.two_factor_enabled:
            if not code:
                logger.info("login_requires_2fa", user_id=user.id)
                return Result.fail(ErrorKind.AUTH_REQUIRES_2FA, "two-factor code required")
            second = self.two_factor.verify_login_code(user.id, code)
            if not second.success:
                failed = self._register_failure(user, "bad_2fa_code", ip_address)
                if failed.error == ErrorKind.AUTH_ACCOUNT_LOCKED:
                    return failed
                return Result.fail(
                    ErrorKind.TWO_FACTOR_INVALID_CODE, "invalid verification code", **failed.detail
                )

        now = self._clock()
        user = self.credentials.clear_failed_logins(user.id, login_at=now)
        tokens = await self.issuer.issue(user, ip_address=ip_address)
        record_activity(
            self.activity,
            ActivityAction.LOGIN,
            user_id=user.id,
            session_id=tokens["session_id"],
            ip_address=ip_address,
        )
        logger.info("login_succeeded", user_id=user.id, session_id=tokens["session_id"])
        payload = {**tokens, "user": user}
        if not user.two_factor_enabled and self.two_factor.should_enforce(user.role):
            payload["two_factor_setup_required"] = True
        return Result.ok(payload)

    def _status_failure(self, user: User) -> Optional[Result]:
        if user.status == UserStatus.LOCKED:
            return Result.fail(ErrorKind.AUTH_ACCOUNT_LOCKED, "account is locked")
        if user.status == UserStatus.DEACTIVATED:
            return Result.fail(ErrorKind.AUTH_ACCOUNT_INACTIVE, "account is deactivated")
        if user.status == UserStatus.SUSPENDED:
            return Result.fail(ErrorKind.AUTH_ACCOUNT_SUSPENDED, "account is suspended")
        return None

    def _maybe_auto_unlock(self, user: User) -> User:
        if not self.auto_unlock_after or not user.locked_at:
            return user
        if user.locked_at + self.auto_unlock_after > self._clock():
            return user
        unlocked = self.credentials.update(
            user.id,
            status=UserStatus.ACTIVE.value,
            locked_at=None,
            failed_login_attempts=0,
            first_failed_login_at=None,
        ).unwrap()
        record_activity(self.activity, ActivityAction.ACCOUNT_UNLOCKED, user_id=user.id, automatic=True)
        logger.info("account_auto_unlocked", user_id=user.id)
        return unlocked

    def _register_failure(self, user: User, reason: str, ip_address: Optional[str]) -> Result:
        updated, locked = self.credentials.record_failed_login(
            user.id,
            now=self._clock(),
            window=self.lockout_window,
            threshold=self.lockout_threshold,
        )
        record_activity(
            self.activity,
            ActivityAction.LOGIN_FAILED,
            user_id=user.id,
            reason=reason,
            attempts=updated.failed_login_attempts,
            ip_address=ip_address,
        )
        if locked:
            record_activity(
                self.activity,
                ActivityAction.ACCOUNT_LOCKED,
                user_id=user.id,
                attempts=updated.failed_login_attempts,
            )
            logger.warning("account_locked", user_id=user.id, attempts=updated.failed_login_attempts)
            return Result.fail(ErrorKind.AUTH_ACCOUNT_LOCKED, "account is locked")
        remaining = max(0, self.lockout_threshold - updated.failed_login_attempts)
        logger.info("login_failed", user_id=user.id, reason=reason, remaining_attempts=remaining)
        return Result.fail(
            ErrorKind.AUTH_INVALID_CREDENTIALS,
            "invalid email or password",
            remaining_attempts=remaining,
        )

    def get_remaining_login_attempts(self, email: str) -> int:
        user = self.credentials.get_by_email(email or "").data
        if user is None:
            return self.lockout_threshold
        if user.status == UserStatus.LOCKED:
            return 0
        first = user.first_failed_login_at
        if first is None or self._clock() - first > self.lockout_window:
            return self.lockout_threshold
        return max(0, self.lockout_threshold - user.failed_login_attempts)

    def unlock(self, user_id: str, actor_id: str) -> Result:
        user = self.credentials.get_by_id(user_id).data
        if user is None:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        if user.status != UserStatus.LOCKED:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "account is not locked")
        updated = self.credentials.update(
            user_id,
            status=UserStatus.ACTIVE.value,
            locked_at=None,
            failed_login_attempts=0,
            first_failed_login_at=None,
        )
        if updated.success:
            record_activity(
                self.activity, ActivityAction.ACCOUNT_UNLOCKED, user_id=user_id, actor_id=actor_id
            )
            logger.info("account_unlocked", user_id=user_id, actor_id=actor_id)
        return updated

    # -- sessions ---------------------------------------------------------

    async def refresh_tokens(self, refresh_token: str) -> Result:
        claims = await self.issuer.decode_refresh(refresh_token)
        if not claims:
            return Result.fail(ErrorKind.AUTH_INVALID_REFRESH, "refresh token is invalid")
        user = self.credentials.get_by_id(claims["sub"]).data
        if user is None or not user.is_active:
            await self.issuer.revoke_session(claims["sid"])
            return Result.fail(ErrorKind.AUTH_INVALID_REFRESH, "refresh token is invalid")
        return await self.issuer.rotate(claims, user)

    async def authenticate(self, access_token: str) -> Result:
        claims = await self.issuer.validate_access(access_token)
        if not claims:
            return Result.fail(ErrorKind.AUTH_INVALID_TOKEN, "access token is invalid")
        user = self.credentials.get_by_id(claims["sub"]).data
        if user is None or not user.is_active:
            return Result.fail(ErrorKind.AUTH_INVALID_TOKEN, "access token is invalid")
        return Result.ok(AuthContext(user=user, session_id=claims["sid"], claims=claims))

    async def get_current_user(self, access_token: str) -> Result:
        resolved = await self.authenticate(access_token)
        if not resolved.success:
            return resolved
        return Result.ok(resolved.data.user)

    async def logout(self, actor_id: str, session_id: Optional[str] = None) -> Result:
        """End one session, or every session of ``actor_id`` when none is given."""
        if session_id:
            await self.issuer.revoke_session(session_id)
        else:
            await self.issuer.revoke_all(actor_id)
        record_activity(
            self.activity,
            ActivityAction.LOGOUT,
            user_id=actor_id,
            actor_id=actor_id,
            scope="session" if session_id else "all",
        )
        logger.info("logout", user_id=actor_id, all_sessions=session_id is None)
        return Result.ok()

    def list_sessions(self, user_id: str) -> Result:
        return Result.ok(self.issuer.list_sessions(user_id))

    async def revoke_user_session(self, actor_id: str, user_id: str, session_id: str) -> Result:
        """End one of ``user_id``'s sessions on an administrator's behalf."""
        session = self.issuer.get_session(session_id)
        if session is None or session.user_id != user_id:
            return Result.fail(ErrorKind.NOT_FOUND, "session not found")
        await self.issuer.revoke_session(session_id)
        record_activity(
            self.activity,
            ActivityAction.SESSION_REVOKED,
            user_id=user_id,
            actor_id=actor_id,
            session_id=session_id,
        )
        logger.info("session_revoked_by_admin", user_id=user_id, actor_id=actor_id)
        return Result.ok({"revoked": 1})

    async def revoke_user_sessions(self, actor_id: str, user_id: str) -> Result:
        count = len(self.issuer.list_sessions(user_id))
        await self.issuer.revoke_all(user_id)
        record_activity(
            self.activity,
            ActivityAction.SESSION_REVOKED,
            user_id=user_id,
            actor_id=actor_id,
            scope="all",
        )
        logger.info("sessions_revoked_by_admin", user_id=user_id, actor_id=actor_id, count=count)
        return Result.ok({"revoked": count})


__all__ = ["AuthContext", "AuthenticationService"]
