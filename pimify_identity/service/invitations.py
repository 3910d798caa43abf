from __future__ import annotations

import asyncio
import hashlib
import secrets
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from pimify_identity.logging import get_logger, redact_email
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore, validate_password
from pimify_identity.service.email import EmailService
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.errors import ConstraintViolation
from pimify_identity.storage.models import Invitation, InvitationStatus, Role, UserStatus
from pimify_identity.storage.token_store import TokenStore

logger = get_logger(__name__)


class InvitationStore(Protocol):
    def create_invitation(self, invitation: Invitation, *, now: datetime) -> Invitation: ...

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]: ...

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]: ...

    def list_invitations(self, tenant_id: Optional[str] = None) -> List[Invitation]: ...

    def transition_invitation(
        self, invitation_id: str, *, expected_status: str, **changes
    ) -> Optional[Invitation]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hash(token: str) -> str:
    return hashlib.sha256((token or "").encode()).hexdigest()


class InvitationService:
    """Invite lifecycle: PENDING -> ACCEPTED | CANCELLED | EXPIRED.

    EXPIRED is never written; it is derived when an invitation is read after
    ``expires_at``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        store: InvitationStore,
        token_store: TokenStore,
        *,
        email_service: Optional[EmailService] = None,
        activity: Optional[ActivitySink] = None,
        ttl: timedelta = timedelta(days=7),
        default_tenant_id: str = "default",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.store = store
        self.tokens = token_store
        self.email_service = email_service
        self.activity = activity
        self.ttl = ttl
        self.default_tenant_id = default_tenant_id
        self._clock = clock

    @staticmethod
    def _token_key(token_hash: str) -> str:
        return f"invite:{token_hash}"

    def _present(self, invitation: Invitation) -> Invitation:
        return replace(invitation, status=invitation.effective_status(self._clock()))

    async def _issue_token(self, invitation_id: str, expires_at: datetime) -> tuple[str, str]:
        token = secrets.token_hex(32)
        token_hash = _hash(token)
        ttl = max(1, int((expires_at - self._clock()).total_seconds()))
        await self.tokens.put(self._token_key(token_hash), invitation_id, ttl)
        return token, token_hash

    async def _send_email(self, invitation: Invitation, token: str) -> None:
        if not self.email_service:
            return
        result = await asyncio.to_thread(
            self.email_service.send_invitation,
            invitation.email,
            token,
            role=invitation.role,
            ttl_days=max(1, self.ttl.days),
        )
        if not result.success:
            logger.error(
                "invitation_email_failed",
                invitation_id=invitation.id,
                email=redact_email(invitation.email),
            )

    async def send_invitation(
        self,
        email: str,
        role: str,
        invited_by: str,
        *,
        tenant_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Result:
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "a valid email is required", field="email")
        role = (role or "").upper()
        if role not in Role.__members__:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "unknown role", field="role")
        existing = self.credentials.get_by_email(normalized).data
        if existing and existing.status != UserStatus.DEACTIVATED:
            return Result.fail(ErrorKind.INVITE_USER_EXISTS, "a user with this email already exists")

        now = self._clock()
        token = secrets.token_hex(32)
        invitation = Invitation(
            id=str(uuid.uuid4()),
            email=normalized,
            role=role,
            invited_by=invited_by,
            token_hash=_hash(token),
            expires_at=now + self.ttl,
            tenant_id=tenant_id or self.default_tenant_id,
            created_at=now,
            last_sent_at=now,
            metadata=dict(metadata) if metadata else None,
        )
        try:
            invitation = self.store.create_invitation(invitation, now=now)
        except ConstraintViolation:
            return Result.fail(
                ErrorKind.INVITE_ALREADY_PENDING, "a pending invitation already exists for this email"
            )
        await self.tokens.put(
            self._token_key(invitation.token_hash),
            invitation.id,
            int(self.ttl.total_seconds()),
        )
        await self._send_email(invitation, token)
        record_activity(
            self.activity,
            ActivityAction.USER_INVITED,
            actor_id=invited_by,
            invitation_id=invitation.id,
            role=role,
        )
        logger.info(
            "invitation_sent",
            invitation_id=invitation.id,
            email=redact_email(normalized),
            role=role,
            token_hash=invitation.token_hash[:8],
        )
        return Result.ok({"invitation": invitation, "token": token})

    async def resend_invitation(self, invitation_id: str, *, actor_id: Optional[str] = None) -> Result:
        """New token and expiry for a PENDING invitation; identity and role stay."""
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            return Result.fail(ErrorKind.INVITE_NOT_FOUND, "invitation not found")
        if invitation.status == InvitationStatus.ACCEPTED:
            return Result.fail(ErrorKind.INVITE_ALREADY_USED, "invitation has already been accepted")
        if invitation.status != InvitationStatus.PENDING:
            return Result.fail(ErrorKind.INVITE_INVALID, "only pending invitations can be resent")
        now = self._clock()
        if invitation.effective_status(now) == InvitationStatus.EXPIRED:
            live = [
                other
                for other in self.store.list_invitations(invitation.tenant_id)
                if other.id != invitation.id
                and other.email == invitation.email
                and other.effective_status(now) == InvitationStatus.PENDING
            ]
            if live:
                return Result.fail(
                    ErrorKind.INVITE_ALREADY_PENDING,
                    "a pending invitation already exists for this email",
                )

        expires_at = now + self.ttl
        token, token_hash = await self._issue_token(invitation.id, expires_at)
        updated = self.store.transition_invitation(
            invitation.id,
            expected_status=InvitationStatus.PENDING.value,
            token_hash=token_hash,
            expires_at=expires_at,
            last_sent_at=now,
            resend_count=invitation.resend_count + 1,
        )
        if updated is None:
            await self.tokens.delete(self._token_key(token_hash))
            return Result.fail(ErrorKind.INVITE_INVALID, "only pending invitations can be resent")
        await self.tokens.delete(self._token_key(invitation.token_hash))
        await self._send_email(updated, token)
        record_activity(
            self.activity,
            ActivityAction.INVITATION_RESENT,
            actor_id=actor_id,
            invitation_id=invitation.id,
            resend_count=updated.resend_count,
        )
        logger.info("invitation_resent", invitation_id=invitation.id, resend_count=updated.resend_count)
        return Result.ok({"invitation": updated, "token": token})

    async def cancel_invitation(
        self, invitation_id: str, cancelled_by: str, reason: Optional[str] = None
    ) -> Result:
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            return Result.fail(ErrorKind.INVITE_NOT_FOUND, "invitation not found")
        if invitation.status == InvitationStatus.CANCELLED:
            return Result.ok({"invitation": invitation})
        updated = self.store.transition_invitation(
            invitation_id,
            expected_status=InvitationStatus.PENDING.value,
            status=InvitationStatus.CANCELLED.value,
            cancelled_at=self._clock(),
            cancelled_by=cancelled_by,
            cancel_reason=reason,
        )
        if updated is None:
            current = self.store.get_invitation(invitation_id)
            if current and current.status == InvitationStatus.CANCELLED:
                return Result.ok({"invitation": current})
            return Result.fail(ErrorKind.INVITE_ALREADY_USED, "invitation has already been accepted")
        await self.tokens.delete(self._token_key(invitation.token_hash))
        record_activity(
            self.activity,
            ActivityAction.INVITATION_CANCELLED,
            actor_id=cancelled_by,
            invitation_id=invitation_id,
        )
        logger.info("invitation_cancelled", invitation_id=invitation_id, actor_id=cancelled_by)
        return Result.ok({"invitation": updated})

    def _check_usable(self, invitation: Optional[Invitation]) -> Optional[Result]:
        if not invitation:
            return Result.fail(ErrorKind.INVITE_INVALID, "invitation token is invalid")
        status = invitation.effective_status(self._clock())
        if status == InvitationStatus.ACCEPTED:
            return Result.fail(ErrorKind.INVITE_ALREADY_USED, "invitation has already been used")
        if status == InvitationStatus.EXPIRED:
            return Result.fail(ErrorKind.INVITE_EXPIRED, "invitation has expired")
        if status != InvitationStatus.PENDING:
            return Result.fail(ErrorKind.INVITE_INVALID, "invitation is no longer valid")
        return None

    async def accept_invitation(
        self, token: str, password: str, *, name: Optional[str] = None
    ) -> Result:
        """Create or re-activate the invited user with the invitation's role."""
        token_hash = _hash(token)
        invitation = self.store.get_invitation_by_token_hash(token_hash)
        problem = self._check_usable(invitation)
        if problem:
            return problem
        invalid_password = validate_password(password)
        if invalid_password:
            return Result.fail(ErrorKind.VALIDATION_ERROR, invalid_password, field="password")

        token_key = self._token_key(token_hash)
        if not await self.tokens.compare_and_delete(token_key, invitation.id):
            return Result.fail(ErrorKind.INVITE_ALREADY_USED, "invitation has already been used")

        # Claim the invitation before any user is written
        claimed = self.store.transition_invitation(
            invitation.id,
            expected_status=InvitationStatus.PENDING.value,
            status=InvitationStatus.ACCEPTED.value,
            accepted_at=self._clock(),
        )
        if claimed is None:
            logger.warning("invitation_changed_during_accept", invitation_id=invitation.id)
            current = self.store.get_invitation(invitation.id)
            if current and current.status == InvitationStatus.ACCEPTED:
                return Result.fail(ErrorKind.INVITE_ALREADY_USED, "invitation has already been used")
            return Result.fail(ErrorKind.INVITE_INVALID, "invitation is no longer valid")

        outcome = self._materialize_user(invitation, password, name)
        if not outcome.success:
            self.store.transition_invitation(
                invitation.id,
                expected_status=InvitationStatus.ACCEPTED.value,
                status=InvitationStatus.PENDING.value,
                accepted_at=None,
            )
            remaining = max(1, int((invitation.expires_at - self._clock()).total_seconds()))
            await self.tokens.put(token_key, invitation.id, remaining)
            return outcome
        user = outcome.data

        self.store.transition_invitation(
            invitation.id,
            expected_status=InvitationStatus.ACCEPTED.value,
            accepted_user_id=user.id,
        )
        record_activity(
            self.activity,
            ActivityAction.INVITATION_ACCEPTED,
            user_id=user.id,
            invitation_id=invitation.id,
            role=invitation.role,
        )
        logger.info("invitation_accepted", invitation_id=invitation.id, user_id=user.id)
        return Result.ok(user)

    def _materialize_user(self, invitation: Invitation, password: str, name: Optional[str]) -> Result:
        existing = self.credentials.get_by_email(invitation.email).data
        if existing is None:
            return self.credentials.create(
                invitation.email,
                password,
                role=invitation.role,
                name=name,
                tenant_id=invitation.tenant_id,
            )
        if existing.status != UserStatus.DEACTIVATED:
            return Result.fail(ErrorKind.INVITE_USER_EXISTS, "a user with this email already exists")
        written = self.credentials.admin_reset_password(existing.id, password)
        if not written.success:
            return written
        changes = {
            "role": invitation.role,
            "status": UserStatus.ACTIVE.value,
            "tenant_id": invitation.tenant_id,
            "failed_login_attempts": 0,
            "first_failed_login_at": None,
            "locked_at": None,
        }
        if name:
            changes["name"] = name
        return self.credentials.update(existing.id, **changes)

    def get_invitation(self, invitation_id: str) -> Result:
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            return Result.fail(ErrorKind.INVITE_NOT_FOUND, "invitation not found")
        return Result.ok(self._present(invitation))

    def get_by_token(self, token: str) -> Result:
        invitation = self.store.get_invitation_by_token_hash(_hash(token))
        if not invitation:
            return Result.fail(ErrorKind.INVITE_INVALID, "invitation token is invalid")
        return Result.ok(self._present(invitation))

    def list_invitations(
        self, status: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> List[Invitation]:
        """Invitations with their status as of now, optionally filtered by it."""
        presented = [self._present(inv) for inv in self.store.list_invitations(tenant_id)]
        if status:
            wanted = status.upper()
            presented = [inv for inv in presented if inv.status == wanted]
        return presented


__all__ = ["InvitationService", "InvitationStore"]
