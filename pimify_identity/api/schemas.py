from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pimify_identity.logging import get_correlation_id

# Bounds on caller-supplied collections and strings
MAX_BULK_USERS = 500
MAX_STRING_LENGTH = 4096


def _request_id() -> str:
    return get_correlation_id() or ""


class Envelope(BaseModel):
    """Response envelope shared by every /v1 route."""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {chr(c) for c in range(0x2066, 0x206A)}
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email domain")
    return normalized


class EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


# -- auth -----------------------------------------------------------------


class LoginRequest(EmailModel):
    password: str = Field(..., max_length=1024)
    code: Optional[str] = Field(None, max_length=32, description="TOTP or backup code")


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_STRING_LENGTH)


class LogoutRequest(BaseModel):
    all_sessions: bool = False


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=32)


class PasswordForgotRequest(EmailModel):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=1024)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    tenant_id: str
    role: str
    status: str
    name: Optional[str] = None
    department: Optional[str] = None
    source: str
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime


# -- invitations ----------------------------------------------------------


RoleName = Literal["ADMIN", "EDITOR", "REVIEWER", "VIEWER"]


class InvitationCreateRequest(EmailModel):
    role: RoleName = "VIEWER"
    metadata: Optional[Dict[str, Any]] = None


class InvitationCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class InvitationAcceptRequest(BaseModel):
    token: str = Field(..., max_length=256)
    password: str = Field(..., max_length=1024)
    name: Optional[str] = Field(None, max_length=200)


class InvitationPreviewRequest(BaseModel):
    token: str = Field(..., max_length=256)


class InvitationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    role: str
    tenant_id: str
    status: str
    invited_by: str
    expires_at: datetime
    created_at: datetime
    last_sent_at: Optional[datetime] = None
    resend_count: int = 0
    accepted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None


# -- permissions ----------------------------------------------------------


class PermissionGrantRequest(BaseModel):
    user_id: str
    permission: str = Field(..., max_length=200)
    reason: str = Field(..., min_length=1, max_length=1000)
    expires_at: Optional[datetime] = None
    resource_type: Optional[str] = Field(None, max_length=100)
    resource_id: Optional[str] = Field(None, max_length=200)
    context: Optional[Dict[str, Any]] = None


class PermissionRevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PermissionGrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    permission: str
    granted_by: str
    reason: str
    granted_at: datetime
    expires_at: Optional[datetime] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None


# -- bulk user administration ---------------------------------------------


class BulkStatusRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=MAX_BULK_USERS)
    action: Literal["activate", "deactivate", "suspend", "unlock"]
    reason: Optional[str] = Field(None, max_length=1000)


class BulkRoleRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=MAX_BULK_USERS)
    role: RoleName
    reason: Optional[str] = Field(None, max_length=1000)


class AdminPasswordResetRequest(BaseModel):
    new_password: str = Field(..., max_length=1024)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    last_refreshed_at: Optional[datetime] = None
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


class ActivityEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


# -- directory federation -------------------------------------------------


class LDAPConfigRequest(BaseModel):
    url: str = Field(..., max_length=500)
    bind_dn: str = Field(..., max_length=500)
    bind_password: str = Field(..., max_length=1024)
    base_dn: str = Field(..., max_length=500)
    user_filter: str = Field("(objectClass=person)", max_length=1000)
    email_attribute: str = "mail"
    name_attribute: str = "cn"
    department_attribute: str = "department"
    default_role: RoleName = "VIEWER"
    use_ssl: bool = False
    schedule: Literal["hourly", "daily", "weekly"] = "daily"


class SyncRequest(BaseModel):
    schedule: Optional[Literal["hourly", "daily", "weekly"]] = None


class SyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    schedule: str
    started_at: datetime
    finished_at: datetime
    imported: int
    updated: int
    unchanged: int
    skipped: int
    attempts: int
    error: Optional[str] = None


class SSOConfigRequest(BaseModel):
    client_id: Optional[str] = Field(None, max_length=500)
    client_secret: Optional[str] = Field(None, max_length=1024)
    redirect_uri: Optional[str] = Field(None, max_length=1000)
    tenant: Optional[str] = Field(None, max_length=200)
    entry_point: Optional[str] = Field(None, max_length=1000)
    issuer: Optional[str] = Field(None, max_length=500)
    certificate: Optional[str] = Field(None, max_length=16384)


__all__ = [
    "ActivityEventResponse",
    "AdminPasswordResetRequest",
    "BulkRoleRequest",
    "BulkStatusRequest",
    "Envelope",
    "InvitationAcceptRequest",
    "InvitationCancelRequest",
    "InvitationCreateRequest",
    "InvitationPreviewRequest",
    "InvitationResponse",
    "LDAPConfigRequest",
    "LoginRequest",
    "LogoutRequest",
    "PasswordForgotRequest",
    "PasswordResetConfirm",
    "PermissionGrantRequest",
    "PermissionGrantResponse",
    "PermissionRevokeRequest",
    "RefreshRequest",
    "SSOConfigRequest",
    "SessionResponse",
    "SyncLogResponse",
    "SyncRequest",
    "TwoFactorCodeRequest",
    "UserResponse",
]
