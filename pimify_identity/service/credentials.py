from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from pimify_identity.logging import get_logger, redact_email
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.errors import ConstraintViolation, RecordNotFound
from pimify_identity.storage.models import Role, TwoFactorRecord, User, UserStatus

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class UserRecordStore(Protocol):
    def create_user(self, email: str, **fields) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self, tenant_id: Optional[str] = None, *, status: Optional[str] = None, role: Optional[str] = None
    ) -> List[User]: ...

    def update_user(self, user_id: str, *, keep_admin: bool = False, **changes) -> User: ...

    def transition_user_status(
        self,
        user_id: str,
        *,
        allowed_from: set[str],
        to_status: str,
        keep_admin: bool = False,
        **changes,
    ) -> User: ...

    def record_failed_login(
        self, user_id: str, *, now: datetime, window: timedelta, threshold: int
    ) -> Tuple[User, bool]: ...

    def clear_failed_logins(self, user_id: str, *, login_at: Optional[datetime] = None) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]: ...

    def save_two_factor(
        self, user_id: str, *, state: str, secret: Optional[str], backup_code_hashes: List[str]
    ) -> TwoFactorRecord: ...

    def clear_two_factor(self, user_id: str) -> None: ...

    def claim_totp_step(self, user_id: str, step: int) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]: ...


def validate_password(password: Optional[str]) -> Optional[str]:
    """Return a validation message, or None when the password is acceptable."""
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if password.strip() != password:
        return "password must not start or end with whitespace"
    return None


def _last_admin_failure(exc: ConstraintViolation) -> Result:
    if exc.detail.get("reason") != "last_admin":
        raise exc
    return Result.fail(
        ErrorKind.LAST_ADMIN, "tenant must keep an active admin", tenant_id=exc.detail.get("tenant_id")
    )


class CredentialStore:
    """Envelope-returning access to user records, password hashes and
    two-factor material."""

    PASSWORD_ALGO = "argon2id"

    def __init__(self, store: UserRecordStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Unknown accounts are verified against this hash so timing matches
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    # -- lookups ----------------------------------------------------------

    def get_by_email(self, email: str) -> Result:
        user = self.store.get_user_by_email(email or "")
        if not user:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        return Result.ok(user)

    def get_by_id(self, user_id: str) -> Result:
        user = self.store.get_user(user_id)
        if not user:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        return Result.ok(user)

    def list_users(
        self, tenant_id: Optional[str] = None, *, status: Optional[str] = None, role: Optional[str] = None
    ) -> List[User]:
        return self.store.list_users(tenant_id, status=status, role=role)

    def count_active_admins(self, tenant_id: str) -> int:
        return len(
            self.store.list_users(tenant_id, status=UserStatus.ACTIVE.value, role=Role.ADMIN.value)
        )

    # -- mutations --------------------------------------------------------

    def create(
        self,
        email: str,
        password: Optional[str] = None,
        *,
        role: str = Role.VIEWER.value,
        status: str = UserStatus.ACTIVE.value,
        name: Optional[str] = None,
        department: Optional[str] = None,
        source: str = "local",
        tenant_id: str = "default",
    ) -> Result:
        if not email or "@" not in email:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "a valid email is required", field="email")
        if role not in Role.__members__:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "unknown role", field="role")
        if password is not None:
            problem = validate_password(password)
            if problem:
                return Result.fail(ErrorKind.VALIDATION_ERROR, problem, field="password")
        try:
            user = self.store.create_user(
                email,
                tenant_id=tenant_id,
                role=role,
                status=status,
                name=name,
                department=department,
                source=source,
            )
        except ConstraintViolation as exc:
            return Result.fail(ErrorKind.VALIDATION_ERROR, exc.message, **exc.detail)
        if password is not None:
            self._save_password(user.id, password)
        logger.info(
            "user_created",
            user_id=user.id,
            email=redact_email(user.email),
            role=role,
            source=source,
        )
        return Result.ok(user)

    def update(self, user_id: str, *, keep_admin: bool = False, **changes) -> Result:
        role = changes.get("role")
        if role is not None and role not in Role.__members__:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "unknown role", field="role")
        status = changes.get("status")
        if status is not None and status not in UserStatus.__members__:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "unknown status", field="status")
        try:
            return Result.ok(self.store.update_user(user_id, keep_admin=keep_admin, **changes))
        except RecordNotFound:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        except ConstraintViolation as exc:
            return _last_admin_failure(exc)
        except ValueError as exc:
            return Result.fail(ErrorKind.VALIDATION_ERROR, str(exc))

    def transition_status(
        self,
        user_id: str,
        allowed_from: set[str],
        to_status: str,
        *,
        keep_admin: bool = False,
        **changes,
    ) -> Result:
        """Atomically move a user between statuses, refusing other origins."""
        try:
            user = self.store.transition_user_status(
                user_id,
                allowed_from=allowed_from,
                to_status=to_status,
                keep_admin=keep_admin,
                **changes,
            )
        except RecordNotFound:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        except ConstraintViolation as exc:
            if exc.detail.get("reason") == "last_admin":
                return _last_admin_failure(exc)
            return Result.fail(
                ErrorKind.VALIDATION_ERROR,
                f"cannot change status from {exc.detail.get('from')} to {to_status}",
            )
        return Result.ok(user)

    def admin_reset_password(self, user_id: str, new_password: str) -> Result:
        problem = validate_password(new_password)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem, field="password")
        if not self.store.get_user(user_id):
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        self._save_password(user_id, new_password)
        logger.info("password_reset_applied", user_id=user_id)
        return Result.ok({"user_id": user_id})

    # -- passwords --------------------------------------------------------

    def _save_password(self, user_id: str, password: str) -> None:
        self.store.save_password(user_id, self._pwd_hasher.hash(password), self.PASSWORD_ALGO)

    def has_password(self, user_id: str) -> bool:
        return self.store.get_password_record(user_id) is not None

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Check ``password`` for ``user``; pass None for an unknown account
        to spend the same hashing time and get False."""
        if user is None:
            self.dummy_verify(password)
            return False
        record = self.store.get_password_record(user.id)
        if not record:
            self.dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != self.PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            return False

    def dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            pass

    # -- lockout and two-factor pass-throughs -----------------------------

    def record_failed_login(
        self, user_id: str, *, now: datetime, window: timedelta, threshold: int
    ) -> Tuple[User, bool]:
        return self.store.record_failed_login(
            user_id, now=now, window=window, threshold=threshold
        )

    def clear_failed_logins(self, user_id: str, *, login_at: Optional[datetime] = None) -> User:
        return self.store.clear_failed_logins(user_id, login_at=login_at)

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]:
        return self.store.get_two_factor(user_id)

    def save_two_factor(
        self, user_id: str, *, state: str, secret: Optional[str], backup_code_hashes: List[str]
    ) -> TwoFactorRecord:
        return self.store.save_two_factor(
            user_id, state=state, secret=secret, backup_code_hashes=backup_code_hashes
        )

    def clear_two_factor(self, user_id: str) -> None:
        self.store.clear_two_factor(user_id)

    def claim_totp_step(self, user_id: str, step: int) -> bool:
        return self.store.claim_totp_step(user_id, step)

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        return self.store.consume_backup_code(user_id, code_hash)


__all__ = ["CredentialStore", "MIN_PASSWORD_LENGTH", "UserRecordStore", "validate_password"]
