from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

import pyotp

from pimify_identity.logging import get_logger
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.models import TwoFactorState

logger = get_logger(__name__)

# No 0/O, 1/I/L so codes survive being read aloud or copied by hand
BACKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
BACKUP_CODE_HALF = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_backup_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_HALF * 2))
        codes.append(f"{raw[:BACKUP_CODE_HALF]}-{raw[BACKUP_CODE_HALF:]}")
    return codes


def hash_backup_code(code: str) -> str:
    normalized = code.upper().strip().replace("-", "").replace(" ", "")
    return hashlib.sha256(normalized.encode()).hexdigest()


def _normalize_totp(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    cleaned = code.strip().replace(" ", "")
    if len(cleaned) != 6 or not cleaned.isdigit():
        return None
    return cleaned


class TwoFactorService:
    """TOTP enrollment and verification.

    Per user: DISABLED -> enable_2fa -> PENDING_VERIFICATION -> verify_code
    -> ENABLED -> disable_2fa -> DISABLED. Codes are accepted one step either
    side of the current 30s step, and a step is never accepted twice.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        issuer: str = "Pimify",
        backup_code_count: int = 10,
        enforced_roles: Iterable[str] = ("ADMIN",),
        activity: Optional[ActivitySink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self.enforced_roles = {role.upper() for role in enforced_roles}
        self.activity = activity
        self._clock = clock

    def provisioning_uri(self, secret: str, label: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=self.issuer)

    def should_enforce(self, role: str) -> bool:
        return (role or "").upper() in self.enforced_roles

    def enable_2fa(self, user_id: str, email: str, label: Optional[str] = None) -> Result:
        if not self.credentials.get_by_id(user_id).success:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        record = self.credentials.get_two_factor(user_id)
        if record and record.state == TwoFactorState.ENABLED:
            return Result.fail(ErrorKind.TWO_FACTOR_ALREADY_ENABLED, "two-factor is already enabled")
        secret = pyotp.random_base32()
        backup_codes = generate_backup_codes(self.backup_code_count)
        self.credentials.save_two_factor(
            user_id,
            state=TwoFactorState.PENDING_VERIFICATION.value,
            secret=secret,
            backup_code_hashes=[hash_backup_code(c) for c in backup_codes],
        )
        record_activity(self.activity, ActivityAction.TWO_FACTOR_ENROLLMENT_STARTED, user_id=user_id)
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return Result.ok(
            {
                "secret": secret,
                "qr_payload": self.provisioning_uri(secret, label or email),
                "backup_codes": backup_codes,
            }
        )

    def _matching_step(self, secret: str, code: str) -> Optional[int]:
        totp = pyotp.TOTP(secret)
        now = self._clock()
        current = totp.timecode(now)
        for offset in (-1, 0, 1):
            if hmac.compare_digest(totp.at(now, offset), code):
                return current + offset
        return None

    def _accept_totp(self, user_id: str, secret: str, code: Optional[str]) -> bool:
        normalized = _normalize_totp(code)
        if not normalized:
            return False
        step = self._matching_step(secret, normalized)
        if step is None:
            return False
        if not self.credentials.claim_totp_step(user_id, step):
            logger.warning("totp_replay_rejected", user_id=user_id)
            return False
        return True

    def verify_code(self, user_id: str, code: str, secret: Optional[str] = None) -> Result:
        """Check a TOTP code; completes enrollment when pending.

        ``newly_enabled`` in the result is true only for the call that moved
        the enrollment from pending to enabled.
        """
        record = self.credentials.get_two_factor(user_id)
        if not record or not record.secret or record.state == TwoFactorState.DISABLED:
            return Result.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor enrollment not started")
        if secret is not None and not hmac.compare_digest(secret.encode(), record.secret.encode()):
            return Result.fail(ErrorKind.TWO_FACTOR_INVALID_CODE, "invalid verification code")
        if not self._accept_totp(user_id, record.secret, code):
            return Result.fail(ErrorKind.TWO_FACTOR_INVALID_CODE, "invalid verification code")
        newly_enabled = record.state == TwoFactorState.PENDING_VERIFICATION
        if newly_enabled:
            self.credentials.save_two_factor(
                user_id,
                state=TwoFactorState.ENABLED.value,
                secret=record.secret,
                backup_code_hashes=record.backup_code_hashes,
            )
            record_activity(self.activity, ActivityAction.TWO_FACTOR_ENABLED, user_id=user_id)
            logger.info("two_factor_enabled", user_id=user_id)
        return Result.ok({"state": TwoFactorState.ENABLED.value, "newly_enabled": newly_enabled})

    def verify_login_code(self, user_id: str, code: str) -> Result:
        """Second factor at login: a TOTP code or an unused backup code."""
        record = self.credentials.get_two_factor(user_id)
        if not record or record.state != TwoFactorState.ENABLED:
            return Result.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor is not enabled")
        if _normalize_totp(code):
            if self._accept_totp(user_id, record.secret, code):
                return Result.ok({"method": "totp"})
            return Result.fail(ErrorKind.TWO_FACTOR_INVALID_CODE, "invalid verification code")
        remaining = self.credentials.consume_backup_code(user_id, hash_backup_code(code or ""))
        if remaining is None:
            return Result.fail(ErrorKind.TWO_FACTOR_INVALID_CODE, "invalid verification code")
        record_activity(
            self.activity,
            ActivityAction.TWO_FACTOR_BACKUP_CODE_USED,
            user_id=user_id,
            remaining=remaining,
        )
        logger.info("backup_code_consumed", user_id=user_id, remaining=remaining)
        return Result.ok({"method": "backup", "backup_codes_remaining": remaining})

    def disable_2fa(self, user_id: str, *, actor_id: Optional[str] = None) -> Result:
        record = self.credentials.get_two_factor(user_id)
        if not record or record.state == TwoFactorState.DISABLED:
            return Result.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor is not enabled")
        self.credentials.clear_two_factor(user_id)
        record_activity(
            self.activity, ActivityAction.TWO_FACTOR_DISABLED, user_id=user_id, actor_id=actor_id
        )
        logger.info("two_factor_disabled", user_id=user_id, actor_id=actor_id)
        return Result.ok({"state": TwoFactorState.DISABLED.value})

    def regenerate_backup_codes(self, user_id: str) -> Result:
        record = self.credentials.get_two_factor(user_id)
        if not record or record.state != TwoFactorState.ENABLED:
            return Result.fail(ErrorKind.TWO_FACTOR_NOT_ENABLED, "two-factor is not enabled")
        codes = generate_backup_codes(self.backup_code_count)
        self.credentials.save_two_factor(
            user_id,
            state=record.state,
            secret=record.secret,
            backup_code_hashes=[hash_backup_code(c) for c in codes],
        )
        record_activity(self.activity, ActivityAction.TWO_FACTOR_BACKUP_CODES_REGENERATED, user_id=user_id)
        return Result.ok({"backup_codes": codes})

    def get_status(self, user_id: str) -> dict:
        record = self.credentials.get_two_factor(user_id)
        state = record.state if record else TwoFactorState.DISABLED.value
        return {
            "state": state,
            "enabled": state == TwoFactorState.ENABLED,
            "backup_codes_remaining": len(record.backup_code_hashes) if record else 0,
        }


__all__ = [
    "BACKUP_CODE_ALPHABET",
    "TwoFactorService",
    "generate_backup_codes",
    "hash_backup_code",
]
