from __future__ import annotations

import asyncio
from collections import Counter
from typing import Dict, Iterable, List, Optional

from pimify_identity.logging import get_logger
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.service.tokens import TokenIssuer
from pimify_identity.storage.models import Role, User, UserStatus

logger = get_logger(__name__)

# action -> (allowed origin statuses, target status, activity action)
STATUS_ACTIONS = {
    "activate": (
        {UserStatus.SUSPENDED.value, UserStatus.DEACTIVATED.value},
        UserStatus.ACTIVE.value,
        ActivityAction.USER_ACTIVATED,
    ),
    "deactivate": (
        {UserStatus.ACTIVE.value, UserStatus.SUSPENDED.value, UserStatus.LOCKED.value},
        UserStatus.DEACTIVATED.value,
        ActivityAction.USER_DEACTIVATED,
    ),
    "suspend": (
        {UserStatus.ACTIVE.value, UserStatus.LOCKED.value},
        UserStatus.SUSPENDED.value,
        ActivityAction.USER_SUSPENDED,
    ),
    "unlock": (
        {UserStatus.LOCKED.value},
        UserStatus.ACTIVE.value,
        ActivityAction.ACCOUNT_UNLOCKED,
    ),
}
_ENDS_SESSIONS = {"deactivate", "suspend"}


def _dedupe(user_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(uid for uid in user_ids if uid))


class BulkUserOperations:
    """Per-user status and role changes across many users.

    Each user's change is atomic on its own; a failure is reported for that
    user and the batch continues. ``cancel`` is checked between users.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        issuer: Optional[TokenIssuer] = None,
        *,
        activity: Optional[ActivitySink] = None,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.activity = activity

    def _last_admin_guard(self, users: List[User]) -> Optional[str]:
        """Tenant that would be left without an active ADMIN, if any.

        Fails a hopeless batch up front; each per-user change re-checks under
        the store lock, so concurrent batches cannot both pass.
        """
        removed = Counter(
            u.tenant_id for u in users if u.role == Role.ADMIN and u.status == UserStatus.ACTIVE
        )
        for tenant_id, count in removed.items():
            if self.credentials.count_active_admins(tenant_id) - count < 1:
                return tenant_id
        return None

    @staticmethod
    def _summary(updated: int, failures: List[Dict], cancelled: bool) -> dict:
        return {
            "success": not failures and not cancelled,
            "updated_count": updated,
            "failures": failures,
            "cancelled": cancelled,
        }

    def _load(self, user_ids: List[str], failures: List[Dict]) -> Dict[str, User]:
        found: Dict[str, User] = {}
        for user_id in user_ids:
            user = self.credentials.get_by_id(user_id).data
            if user is None:
                failures.append({"user_id": user_id, "error": ErrorKind.NOT_FOUND.value})
            else:
                found[user_id] = user
        return found

    def _all_fail(self, user_ids: List[str], kind: ErrorKind, tenant_id: str) -> Result:
        logger.warning("bulk_blocked_last_admin", tenant_id=tenant_id, count=len(user_ids))
        failures = [{"user_id": uid, "error": kind.value} for uid in user_ids]
        return Result.ok(self._summary(0, failures, False))

    async def set_status(
        self,
        user_ids: Iterable[str],
        action: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Result:
        if action not in STATUS_ACTIONS:
            return Result.fail(ErrorKind.VALIDATION_ERROR, f"unknown action {action!r}", field="action")
        allowed_from, target, activity_action = STATUS_ACTIONS[action]
        ids = _dedupe(user_ids)
        failures: List[Dict] = []
        users = self._load(ids, failures)

        if action in _ENDS_SESSIONS:
            blocked_tenant = self._last_admin_guard(list(users.values()))
            if blocked_tenant:
                return self._all_fail(ids, ErrorKind.LAST_ADMIN, blocked_tenant)

        updated = 0
        cancelled = False
        for user_id, user in users.items():
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            if action in _ENDS_SESSIONS and user_id == actor_id:
                failures.append({"user_id": user_id, "error": ErrorKind.VALIDATION_ERROR.value})
                continue
            extra = {}
            if action == "unlock" or action == "activate":
                extra = {"locked_at": None, "failed_login_attempts": 0, "first_failed_login_at": None}
            outcome = self.credentials.transition_status(
                user_id, allowed_from, target, keep_admin=action in _ENDS_SESSIONS, **extra
            )
            if not outcome.success:
                failures.append({"user_id": user_id, "error": outcome.error.value})
                continue
            if action in _ENDS_SESSIONS and self.issuer:
                await self.issuer.revoke_all(user_id)
            updated += 1
            record_activity(
                self.activity,
                activity_action,
                user_id=user_id,
                actor_id=actor_id,
                reason=reason,
                previous_status=user.status,
            )
            # Let a cancel request land between users
            await asyncio.sleep(0)

        logger.info(
            "bulk_status_change",
            action=action,
            actor_id=actor_id,
            updated=updated,
            failed=len(failures),
            cancelled=cancelled,
        )
        return Result.ok(self._summary(updated, failures, cancelled))

    async def change_roles(
        self,
        user_ids: Iterable[str],
        new_role: str,
        actor_id: str,
        reason: Optional[str] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Result:
        new_role = (new_role or "").upper()
        if new_role not in Role.__members__:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "unknown role", field="role")
        ids = _dedupe(user_ids)
        failures: List[Dict] = []
        users = self._load(ids, failures)

        if new_role != Role.ADMIN:
            blocked_tenant = self._last_admin_guard(list(users.values()))
            if blocked_tenant:
                return self._all_fail(ids, ErrorKind.LAST_ADMIN, blocked_tenant)

        updated = 0
        cancelled = False
        for user_id, user in users.items():
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            if user.role == new_role:
                updated += 1
                continue
            outcome = self.credentials.update(
                user_id, role=new_role, keep_admin=new_role != Role.ADMIN
            )
            if not outcome.success:
                failures.append({"user_id": user_id, "error": outcome.error.value})
                continue
            updated += 1
            record_activity(
                self.activity,
                ActivityAction.ROLE_CHANGED,
                user_id=user_id,
                actor_id=actor_id,
                previous_role=user.role,
                new_role=new_role,
                reason=reason,
            )
            await asyncio.sleep(0)

        logger.info(
            "bulk_role_change",
            new_role=new_role,
            actor_id=actor_id,
            updated=updated,
            failed=len(failures),
            cancelled=cancelled,
        )
        return Result.ok(self._summary(updated, failures, cancelled))


__all__ = ["BulkUserOperations", "STATUS_ACTIONS"]
