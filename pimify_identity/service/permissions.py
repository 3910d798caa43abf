from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set

from pimify_identity.logging import get_logger
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.errors import RecordNotFound
from pimify_identity.storage.models import PermissionGrant, Role

logger = get_logger(__name__)

ROLE_DEFAULTS: Dict[str, FrozenSet[str]] = {
    Role.ADMIN.value: frozenset(
        {
            "workflow:*",
            "products:*",
            "users:*",
            "audit:*",
            "notifications:*",
            "system:*",
            "reports:*",
            "settings:*",
        }
    ),
    Role.EDITOR.value: frozenset(
        {
            "products:create",
            "products:read",
            "products:write",
            "products:edit_own",
            "products:delete_own",
            "products:export_own",
            "products:import_own",
            "workflow:submit",
            "workflow:edit",
            "workflow:view_history",
            "workflow:request_review",
            "draft:create",
            "draft:edit",
            "draft:delete",
            "notifications:read",
            "audit:read_own",
        }
    ),
    Role.REVIEWER.value: frozenset(
        {
            "products:read",
            "products:view_all",
            "workflow:approve",
            "workflow:reject",
            "workflow:view_history",
            "workflow:view_assignments",
            "reports:view",
            "notifications:read",
            "audit:read_own",
        }
    ),
    Role.VIEWER.value: frozenset(
        {
            "products:read",
            "workflow:view_workflow_status",
            "notifications:read",
        }
    ),
}

_PERMISSION_RE = re.compile(r"^[a-z][a-z0-9_]*:([a-z0-9_]+|\*)$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def permission_matches(held: str, wanted: str) -> bool:
    """``*`` covers everything; ``domain:*`` covers every action in a domain."""
    if held == "*" or held == wanted:
        return True
    if held.endswith(":*"):
        return wanted.split(":", 1)[0] == held[:-2]
    return False


class PermissionGrantStore(Protocol):
    def add_grant(self, grant: PermissionGrant) -> PermissionGrant: ...

    def get_grant(self, grant_id: str) -> Optional[PermissionGrant]: ...

    def list_grants(self, user_id: str) -> List[PermissionGrant]: ...

    def revoke_grant_scope(
        self, user_id: str, grant_id: str, *, revoked_by: str, reason: str, now: datetime
    ) -> List[PermissionGrant]: ...


class CustomPermissionService:
    """Time-bounded, optionally resource-scoped grants layered over role
    defaults. Grants are append-only; revocation stamps the rows."""

    def __init__(
        self,
        store: PermissionGrantStore,
        *,
        role_defaults: Optional[Dict[str, FrozenSet[str]]] = None,
        activity: Optional[ActivitySink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.role_defaults = role_defaults or ROLE_DEFAULTS
        self.activity = activity
        self._clock = clock

    def defaults_for(self, role: str) -> FrozenSet[str]:
        return self.role_defaults.get((role or "").upper(), frozenset())

    def grant(
        self,
        user_id: str,
        permission: str,
        granted_by: str,
        reason: str,
        *,
        expires_at: Optional[datetime] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Result:
        if not reason or not reason.strip():
            return Result.fail(ErrorKind.VALIDATION_ERROR, "a reason is required", field="reason")
        if not permission or not _PERMISSION_RE.match(permission):
            return Result.fail(
                ErrorKind.VALIDATION_ERROR,
                "permission must look like domain:action",
                field="permission",
            )
        if resource_id and not resource_type:
            return Result.fail(
                ErrorKind.VALIDATION_ERROR,
                "resource_id requires resource_type",
                field="resource_type",
            )
        now = self._clock()
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                return Result.fail(
                    ErrorKind.VALIDATION_ERROR, "expires_at must be in the future", field="expires_at"
                )

        new_grant = PermissionGrant(
            id=str(uuid.uuid4()),
            user_id=user_id,
            permission=permission,
            granted_by=granted_by,
            reason=reason.strip(),
            granted_at=now,
            expires_at=expires_at,
            resource_type=resource_type,
            resource_id=resource_id,
            context=dict(context) if context else None,
        )
        refreshed = any(
            g.same_scope(new_grant) and g.is_active(now) for g in self.store.list_grants(user_id)
        )
        try:
            stored = self.store.add_grant(new_grant)
        except RecordNotFound:
            return Result.fail(ErrorKind.NOT_FOUND, "user not found")
        record_activity(
            self.activity,
            ActivityAction.PERMISSION_GRANTED,
            user_id=user_id,
            actor_id=granted_by,
            permission=permission,
            resource_type=resource_type,
            resource_id=resource_id,
            refreshed=refreshed,
        )
        logger.info(
            "permission_granted",
            user_id=user_id,
            permission=permission,
            grant_id=stored.id,
            refreshed=refreshed,
        )
        return Result.ok(stored, refreshed=refreshed)

    def revoke(self, user_id: str, permission_id: str, revoked_by: str, reason: str) -> Result:
        """Revoke grant ``permission_id`` and any active duplicates of its scope."""
        if not reason or not reason.strip():
            return Result.fail(ErrorKind.VALIDATION_ERROR, "a reason is required", field="reason")
        revoked = self.store.revoke_grant_scope(
            user_id, permission_id, revoked_by=revoked_by, reason=reason.strip(), now=self._clock()
        )
        if not revoked:
            return Result.fail(ErrorKind.PERMISSION_NOT_FOUND, "no active grant matches")
        record_activity(
            self.activity,
            ActivityAction.PERMISSION_REVOKED,
            user_id=user_id,
            actor_id=revoked_by,
            permission=revoked[0].permission,
            rows=len(revoked),
        )
        logger.info(
            "permission_revoked",
            user_id=user_id,
            permission=revoked[0].permission,
            rows=len(revoked),
        )
        return Result.ok(revoked)

    def active_grants(self, user_id: str) -> List[PermissionGrant]:
        now = self._clock()
        return [g for g in self.store.list_grants(user_id) if g.is_active(now)]

    def list_grants(self, user_id: str, *, include_inactive: bool = False) -> List[PermissionGrant]:
        if include_inactive:
            return self.store.list_grants(user_id)
        return self.active_grants(user_id)

    @staticmethod
    def _applies(
        grant: PermissionGrant, resource_type: Optional[str], resource_id: Optional[str]
    ) -> bool:
        if grant.resource_type is None:
            return True
        if resource_type is None or grant.resource_type != resource_type:
            return False
        return grant.resource_id is None or grant.resource_id == resource_id

    def effective_permissions(
        self,
        user_id: str,
        role_defaults: Iterable[str],
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> Set[str]:
        """Role defaults plus active grants.

        Without a resource filter only unscoped grants count; with one, grants
        scoped to that type (whole type or the given id) count as well.
        """
        effective = set(role_defaults)
        for grant in self.active_grants(user_id):
            if self._applies(grant, resource_type, resource_id):
                effective.add(grant.permission)
        return effective

    def has_permission(
        self,
        user_id: str,
        role: str,
        permission: str,
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        effective = self.effective_permissions(
            user_id,
            self.defaults_for(role),
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return any(permission_matches(held, permission) for held in effective)


__all__ = [
    "CustomPermissionService",
    "PermissionGrantStore",
    "ROLE_DEFAULTS",
    "permission_matches",
]
