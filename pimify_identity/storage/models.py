from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    REVIEWER = "REVIEWER"
    VIEWER = "VIEWER"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    LOCKED = "LOCKED"
    DEACTIVATED = "DEACTIVATED"


class TwoFactorState(str, Enum):
    DISABLED = "DISABLED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    ENABLED = "ENABLED"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SyncStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SyncSchedule(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class SSOProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    SAML = "saml"


@dataclass
class User:
    id: str
    email: str
    tenant_id: str = "default"
    role: str = Role.VIEWER.value
    status: str = UserStatus.ACTIVE.value
    name: Optional[str] = None
    department: Optional[str] = None
    source: str = "local"
    two_factor_enabled: bool = False
    failed_login_attempts: int = 0
    first_failed_login_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def public_view(self) -> dict:
        """Caller-facing representation without credential material."""
        return {
            "id": self.id,
            "email": self.email,
            "tenant_id": self.tenant_id,
            "role": self.role,
            "status": self.status,
            "name": self.name,
            "department": self.department,
            "source": self.source,
            "two_factor_enabled": self.two_factor_enabled,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """A login session; ``expires_at`` moves forward on each refresh."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    tenant_id: str = "default"
    last_refreshed_at: Optional[datetime] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_refreshed_at": (
                self.last_refreshed_at.isoformat() if self.last_refreshed_at else None
            ),
            "expires_at": self.expires_at.isoformat(),
            "ip_addr": self.ip_addr,
            "user_agent": self.user_agent,
        }


@dataclass
class TwoFactorRecord:
    user_id: str
    state: str = TwoFactorState.DISABLED.value
    secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    last_used_step: Optional[int] = None
    enabled_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class PermissionGrant:
    id: str
    user_id: str
    permission: str
    granted_by: str
    reason: str
    granted_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    context: Dict | None = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now

    def same_scope(self, other: "PermissionGrant") -> bool:
        return (
            self.user_id == other.user_id
            and self.permission == other.permission
            and self.resource_type == other.resource_type
            and self.resource_id == other.resource_id
        )


@dataclass
class Invitation:
    id: str
    email: str
    role: str
    invited_by: str
    token_hash: str
    expires_at: datetime
    tenant_id: str = "default"
    status: str = InvitationStatus.PENDING.value
    created_at: datetime = field(default_factory=_utcnow)
    last_sent_at: Optional[datetime] = None
    resend_count: int = 0
    accepted_at: Optional[datetime] = None
    accepted_user_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    metadata: Dict | None = None

    def effective_status(self, now: datetime) -> str:
        """Status as seen at ``now``; a lapsed PENDING invitation reads EXPIRED."""
        if self.status == InvitationStatus.PENDING and self.expires_at <= now:
            return InvitationStatus.EXPIRED.value
        return self.status


@dataclass
class LDAPConfig:
    url: str
    bind_dn: str
    bind_password: str
    base_dn: str
    user_filter: str = "(objectClass=person)"
    email_attribute: str = "mail"
    name_attribute: str = "cn"
    department_attribute: str = "department"
    default_role: str = Role.VIEWER.value
    use_ssl: bool = False
    schedule: str = SyncSchedule.DAILY.value
    updated_at: datetime = field(default_factory=_utcnow)

    def masked(self) -> dict:
        return {
            "url": self.url,
            "bind_dn": self.bind_dn,
            "bind_password": "********" if self.bind_password else "",
            "base_dn": self.base_dn,
            "user_filter": self.user_filter,
            "email_attribute": self.email_attribute,
            "name_attribute": self.name_attribute,
            "department_attribute": self.department_attribute,
            "default_role": self.default_role,
            "use_ssl": self.use_ssl,
            "schedule": self.schedule,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class SSOProviderConfig:
    provider: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    tenant: Optional[str] = None
    entry_point: Optional[str] = None
    issuer: Optional[str] = None
    certificate: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class SyncLog:
    id: str
    tenant_id: str
    status: str
    started_at: datetime
    finished_at: datetime
    schedule: str = SyncSchedule.DAILY.value
    imported: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    attempts: int = 1
    error: Optional[str] = None


@dataclass
class DirectoryEntry:
    """A user record as read from an external directory."""

    email: Optional[str]
    name: Optional[str] = None
    department: Optional[str] = None
    dn: Optional[str] = None


__all__ = [
    "DirectoryEntry",
    "Invitation",
    "InvitationStatus",
    "LDAPConfig",
    "PermissionGrant",
    "Role",
    "SSOProvider",
    "SSOProviderConfig",
    "Session",
    "SyncLog",
    "SyncSchedule",
    "SyncStatus",
    "TwoFactorRecord",
    "TwoFactorState",
    "User",
    "UserStatus",
]
