from __future__ import annotations

import asyncio
import secrets
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from pimify_identity.api.schemas import (
    ActivityEventResponse,
    AdminPasswordResetRequest,
    BulkRoleRequest,
    BulkStatusRequest,
    Envelope,
    InvitationAcceptRequest,
    InvitationCancelRequest,
    InvitationCreateRequest,
    InvitationPreviewRequest,
    InvitationResponse,
    LDAPConfigRequest,
    LoginRequest,
    LogoutRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    PermissionGrantRequest,
    PermissionGrantResponse,
    PermissionRevokeRequest,
    RefreshRequest,
    SessionResponse,
    SSOConfigRequest,
    SyncLogResponse,
    SyncRequest,
    TwoFactorCodeRequest,
    UserResponse,
)
from pimify_identity.logging import get_logger
from pimify_identity.service.activity import ActivityAction
from pimify_identity.service.auth import AuthContext
from pimify_identity.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    error_for,
)
from pimify_identity.service.rate_limit import INVITATION_ROUTE, LOGIN_ROUTE, PASSWORD_RESET_ROUTE
from pimify_identity.service.result import Result
from pimify_identity.service.runtime import get_runtime
from pimify_identity.storage.models import LDAPConfig, Role, SSOProviderConfig

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Permissions guarding admin routes; ADMIN holds all of them through users:* and settings:*
PERM_INVITE = "users:invite"
PERM_READ_USERS = "users:read"
PERM_MANAGE_USERS = "users:manage"
PERM_MANAGE_PERMISSIONS = "users:manage_permissions"
PERM_DIRECTORY = "settings:directory"

_background_syncs: Set[asyncio.Task] = set()


def _ok(data: Any = None, result: Optional[Result] = None) -> Envelope:
    details = result.detail if result is not None and result.detail else None
    return Envelope(success=True, data=data, details=details)


def _user(user) -> dict:
    return UserResponse.model_validate(user).model_dump(mode="json")


def _invitation(invitation) -> dict:
    return InvitationResponse.model_validate(invitation).model_dump(mode="json")


def _grant(grant) -> dict:
    return PermissionGrantResponse.model_validate(grant).model_dump(mode="json")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_rate_headers(response: Response, route: str) -> None:
    config = get_runtime().rate_limiter.config_for(route)
    response.headers["X-RateLimit-Limit"] = str(config.max_requests)
    response.headers["X-RateLimit-Window-Ms"] = str(config.window_ms)


async def _enforce_rate_limit(identity: str, route: str, response: Response) -> None:
    """Count one request for (identity, route); raises RateLimitedError when over."""
    _apply_rate_headers(response, route)
    (await get_runtime().rate_limiter.check(identity, route)).unwrap()


# -- principals -----------------------------------------------------------


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("missing bearer token")
    return (await get_runtime().auth.authenticate(token.strip())).unwrap()


def require_permission(permission: str) -> Callable:
    """Dependency admitting ADMINs and users holding ``permission``."""

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        user = principal.user
        if user.role == Role.ADMIN:
            return principal
        if get_runtime().permissions.has_permission(user.id, user.role, permission):
            return principal
        logger.warning("permission_denied", user_id=user.id, permission=permission)
        raise ForbiddenError(f"{permission} required", detail={"permission": permission})

    return _dependency


def _tenant_user(principal: AuthContext, user_id: str):
    user = get_runtime().credentials.get_by_id(user_id).data
    if user is None or user.tenant_id != principal.user.tenant_id:
        raise error_for(ErrorKind.NOT_FOUND, "user not found")
    return user


# -- auth -----------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    _apply_rate_headers(response, LOGIN_ROUTE)
    result = await runtime.auth.login(
        body.email, body.password, code=body.code, ip_address=_client_ip(request)
    )
    payload = dict(result.unwrap())
    payload["user"] = _user(payload["user"])
    return _ok(payload)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    tokens = (await get_runtime().auth.refresh_tokens(body.refresh_token)).unwrap()
    return _ok(tokens)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return _ok(_user(principal.user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: Optional[LogoutRequest] = None, principal: AuthContext = Depends(get_user)):
    all_sessions = bool(body and body.all_sessions)
    result = await get_runtime().auth.logout(
        principal.user.id, None if all_sessions else principal.session_id
    )
    result.unwrap()
    return _ok({"all_sessions": all_sessions})


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(principal: AuthContext = Depends(get_user)):
    result = get_runtime().two_factor.enable_2fa(principal.user.id, principal.user.email)
    return _ok(result.unwrap())


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor(body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    data = runtime.two_factor.verify_code(principal.user.id, body.code).unwrap()
    if data["newly_enabled"]:
        await asyncio.to_thread(runtime.email.send_two_factor_enabled, principal.user.email)
    return _ok(data)


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)):
    two_factor = get_runtime().two_factor
    two_factor.verify_login_code(principal.user.id, body.code).unwrap()
    data = two_factor.disable_2fa(principal.user.id, actor_id=principal.user.id).unwrap()
    return _ok(data)


@router.get("/auth/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    return _ok(get_runtime().two_factor.get_status(principal.user.id))


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["two-factor"])
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)
):
    two_factor = get_runtime().two_factor
    two_factor.verify_login_code(principal.user.id, body.code).unwrap()
    return _ok(two_factor.regenerate_backup_codes(principal.user.id).unwrap())


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(_client_ip(request) or body.email, PASSWORD_RESET_ROUTE, response)
    (await runtime.password_reset.request_reset(body.email)).unwrap()
    return Envelope(
        success=True, message="If that address has an account, a reset link has been sent."
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    result = await get_runtime().password_reset.complete_reset(body.token, body.new_password)
    return _ok(result.unwrap())


@router.get("/auth/sso/{provider}/url", response_model=Envelope, tags=["sso"])
async def sso_auth_url(
    provider: str,
    state: Optional[str] = Query(None, max_length=200),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
):
    runtime = get_runtime()
    tenant_id = x_tenant_id or runtime.settings.default_tenant_id
    result = runtime.sso.get_auth_url(
        provider, state or secrets.token_urlsafe(24), tenant_id=tenant_id
    )
    return _ok(result.unwrap())


# -- invitations ----------------------------------------------------------


@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: InvitationCreateRequest,
    response: Response,
    principal: AuthContext = Depends(require_permission(PERM_INVITE)),
):
    runtime = get_runtime()
    await _enforce_rate_limit(principal.user.id, INVITATION_ROUTE, response)
    result = await runtime.invitations.send_invitation(
        body.email,
        body.role,
        principal.user.id,
        tenant_id=principal.user.tenant_id,
        metadata=body.metadata,
    )
    return _ok(_invitation(result.unwrap()["invitation"]))


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(
    status: Optional[str] = Query(None, max_length=20),
    principal: AuthContext = Depends(require_permission(PERM_READ_USERS)),
):
    invitations = get_runtime().invitations.list_invitations(
        status, tenant_id=principal.user.tenant_id
    )
    return _ok([_invitation(inv) for inv in invitations])


def _tenant_invitation(principal: AuthContext, invitation_id: str):
    invitation = get_runtime().invitations.get_invitation(invitation_id).unwrap()
    if invitation.tenant_id != principal.user.tenant_id:
        raise error_for(ErrorKind.INVITE_NOT_FOUND, "invitation not found")
    return invitation


@router.post("/invitations/{invitation_id}/resend", response_model=Envelope, tags=["invitations"])
async def resend_invitation(
    invitation_id: str,
    principal: AuthContext = Depends(require_permission(PERM_INVITE)),
):
    _tenant_invitation(principal, invitation_id)
    result = await get_runtime().invitations.resend_invitation(
        invitation_id, actor_id=principal.user.id
    )
    return _ok(_invitation(result.unwrap()["invitation"]))


@router.post("/invitations/{invitation_id}/cancel", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    invitation_id: str,
    body: Optional[InvitationCancelRequest] = None,
    principal: AuthContext = Depends(require_permission(PERM_INVITE)),
):
    _tenant_invitation(principal, invitation_id)
    result = await get_runtime().invitations.cancel_invitation(
        invitation_id, principal.user.id, body.reason if body else None
    )
    return _ok(_invitation(result.unwrap()["invitation"]))


@router.post("/invitations/preview", response_model=Envelope, tags=["invitations"])
async def preview_invitation(body: InvitationPreviewRequest):
    invitation = get_runtime().invitations.get_by_token(body.token).unwrap()
    return _ok(
        {
            "email": invitation.email,
            "role": invitation.role,
            "status": invitation.status,
            "expires_at": invitation.expires_at.isoformat(),
        }
    )


@router.post("/invitations/accept", response_model=Envelope, tags=["invitations"])
async def accept_invitation(body: InvitationAcceptRequest):
    result = await get_runtime().invitations.accept_invitation(
        body.token, body.password, name=body.name
    )
    return _ok(_user(result.unwrap()))


# -- permissions ----------------------------------------------------------


@router.post("/admin/permissions", response_model=Envelope, status_code=201, tags=["admin"])
async def grant_permission(
    body: PermissionGrantRequest,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_PERMISSIONS)),
):
    _tenant_user(principal, body.user_id)
    result = get_runtime().permissions.grant(
        body.user_id,
        body.permission,
        principal.user.id,
        body.reason,
        expires_at=body.expires_at,
        resource_type=body.resource_type,
        resource_id=body.resource_id,
        context=body.context,
    )
    return _ok(_grant(result.unwrap()), result)


@router.post(
    "/admin/users/{user_id}/permissions/{grant_id}/revoke",
    response_model=Envelope,
    tags=["admin"],
)
async def revoke_permission(
    user_id: str,
    grant_id: str,
    body: PermissionRevokeRequest,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_PERMISSIONS)),
):
    _tenant_user(principal, user_id)
    result = get_runtime().permissions.revoke(user_id, grant_id, principal.user.id, body.reason)
    return _ok([_grant(g) for g in result.unwrap()])


@router.get("/admin/users/{user_id}/permissions", response_model=Envelope, tags=["admin"])
async def list_permissions(
    user_id: str,
    include_inactive: bool = Query(False),
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_PERMISSIONS)),
):
    _tenant_user(principal, user_id)
    grants = get_runtime().permissions.list_grants(user_id, include_inactive=include_inactive)
    return _ok([_grant(g) for g in grants])


@router.get("/admin/users/{user_id}/permissions/effective", response_model=Envelope, tags=["admin"])
async def effective_permissions(
    user_id: str,
    resource_type: Optional[str] = Query(None, max_length=100),
    resource_id: Optional[str] = Query(None, max_length=200),
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_PERMISSIONS)),
):
    user = _tenant_user(principal, user_id)
    permissions = get_runtime().permissions
    effective = permissions.effective_permissions(
        user_id,
        permissions.defaults_for(user.role),
        resource_type=resource_type,
        resource_id=resource_id,
    )
    return _ok({"user_id": user_id, "role": user.role, "permissions": sorted(effective)})


# -- users ----------------------------------------------------------------


def _split_by_tenant(principal: AuthContext, user_ids: List[str]) -> tuple[List[str], List[Dict]]:
    credentials = get_runtime().credentials
    inside: List[str] = []
    outside: List[Dict] = []
    for user_id in user_ids:
        user = credentials.get_by_id(user_id).data
        if user is None or user.tenant_id != principal.user.tenant_id:
            outside.append({"user_id": user_id, "error": ErrorKind.NOT_FOUND.value})
        else:
            inside.append(user_id)
    return inside, outside


def _merge_bulk(summary: dict, outside: List[Dict]) -> dict:
    if not outside:
        return summary
    merged = dict(summary)
    merged["failures"] = list(summary["failures"]) + outside
    merged["success"] = False
    return merged


@router.post("/admin/users/bulk/status", response_model=Envelope, tags=["admin"])
async def bulk_status(
    body: BulkStatusRequest,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    inside, outside = _split_by_tenant(principal, body.user_ids)
    result = await get_runtime().bulk.set_status(inside, body.action, principal.user.id, body.reason)
    return _ok(_merge_bulk(result.unwrap(), outside))


@router.post("/admin/users/bulk/role", response_model=Envelope, tags=["admin"])
async def bulk_role(
    body: BulkRoleRequest,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    inside, outside = _split_by_tenant(principal, body.user_ids)
    result = await get_runtime().bulk.change_roles(inside, body.role, principal.user.id, body.reason)
    return _ok(_merge_bulk(result.unwrap(), outside))


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    _tenant_user(principal, user_id)
    result = get_runtime().auth.unlock(user_id, principal.user.id)
    return _ok(_user(result.unwrap()))


@router.post("/admin/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    user_id: str,
    body: AdminPasswordResetRequest,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    _tenant_user(principal, user_id)
    result = await get_runtime().password_reset.admin_reset(
        principal.user.id, user_id, body.new_password
    )
    return _ok(result.unwrap())


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def list_user_sessions(
    user_id: str,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    _tenant_user(principal, user_id)
    sessions = get_runtime().auth.list_sessions(user_id).unwrap()
    return _ok(
        [SessionResponse.model_validate(s).model_dump(mode="json") for s in sessions]
    )


@router.post("/admin/users/{user_id}/sessions/revoke", response_model=Envelope, tags=["admin"])
async def revoke_user_sessions(
    user_id: str,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    _tenant_user(principal, user_id)
    result = await get_runtime().auth.revoke_user_sessions(principal.user.id, user_id)
    return _ok(result.unwrap())


@router.post(
    "/admin/users/{user_id}/sessions/{session_id}/revoke",
    response_model=Envelope,
    tags=["admin"],
)
async def revoke_user_session(
    user_id: str,
    session_id: str,
    principal: AuthContext = Depends(require_permission(PERM_MANAGE_USERS)),
):
    _tenant_user(principal, user_id)
    result = await get_runtime().auth.revoke_user_session(principal.user.id, user_id, session_id)
    return _ok(result.unwrap())


@router.get("/admin/users/{user_id}/activity", response_model=Envelope, tags=["admin"])
async def user_activity(
    user_id: str,
    action: Optional[ActivityAction] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthContext = Depends(require_permission(PERM_READ_USERS)),
):
    _tenant_user(principal, user_id)
    events = get_runtime().activity.events(user_id=user_id, action=action)
    newest = list(reversed(events))[:limit]
    return _ok(
        [
            ActivityEventResponse(
                action=e.action.value,
                actor_id=e.actor_id,
                metadata=dict(e.metadata),
                timestamp=e.timestamp,
            ).model_dump(mode="json")
            for e in newest
        ]
    )


# -- directory federation -------------------------------------------------


def _ldap_config(body: LDAPConfigRequest) -> LDAPConfig:
    return LDAPConfig(**body.model_dump())


@router.put("/admin/directory/ldap", response_model=Envelope, tags=["directory"])
async def configure_ldap(
    body: LDAPConfigRequest,
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    result = get_runtime().directory.configure(principal.user.tenant_id, _ldap_config(body))
    return _ok(result.unwrap())


@router.get("/admin/directory/ldap", response_model=Envelope, tags=["directory"])
async def get_ldap_config(principal: AuthContext = Depends(require_permission(PERM_DIRECTORY))):
    return _ok(get_runtime().directory.get_config(principal.user.tenant_id).unwrap())


@router.post("/admin/directory/ldap/test", response_model=Envelope, tags=["directory"])
async def test_ldap(
    body: LDAPConfigRequest,
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    result = await get_runtime().directory.test_connection(_ldap_config(body))
    return _ok(result.unwrap())


@router.post("/admin/directory/ldap/sync", response_model=Envelope, tags=["directory"])
async def sync_ldap(
    body: Optional[SyncRequest] = None,
    wait: bool = Query(False),
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    directory = get_runtime().directory
    tenant_id = principal.user.tenant_id
    schedule = body.schedule if body else None
    if wait:
        result = await directory.sync_users(tenant_id, schedule, actor_id=principal.user.id)
        return _ok(result.unwrap())
    if directory.sync_in_progress(tenant_id):
        raise ConflictError("a sync is already running for this tenant", kind=ErrorKind.SYNC_IN_PROGRESS)
    directory.get_config(tenant_id).unwrap()
    task = asyncio.create_task(directory.sync_users(tenant_id, schedule, actor_id=principal.user.id))
    _background_syncs.add(task)
    task.add_done_callback(_background_syncs.discard)
    return _ok({"started": True})


@router.get("/admin/directory/ldap/status", response_model=Envelope, tags=["directory"])
async def ldap_status(
    limit: int = Query(20, ge=1, le=200),
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    directory = get_runtime().directory
    tenant_id = principal.user.tenant_id
    logs = directory.list_sync_logs(tenant_id, limit)
    return _ok(
        {
            "in_progress": directory.sync_in_progress(tenant_id),
            "logs": [SyncLogResponse.model_validate(log).model_dump(mode="json") for log in logs],
        }
    )


@router.post("/admin/directory/ldap/sync/cancel", response_model=Envelope, tags=["directory"])
async def cancel_ldap_sync(principal: AuthContext = Depends(require_permission(PERM_DIRECTORY))):
    return _ok(get_runtime().directory.cancel_sync(principal.user.tenant_id).unwrap())


@router.get("/admin/directory/sso", response_model=Envelope, tags=["sso"])
async def list_sso_providers(principal: AuthContext = Depends(require_permission(PERM_DIRECTORY))):
    return _ok(get_runtime().sso.list_providers(principal.user.tenant_id))


@router.put("/admin/directory/sso/{provider}", response_model=Envelope, tags=["sso"])
async def configure_sso(
    provider: str,
    body: SSOConfigRequest,
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    config = SSOProviderConfig(provider=provider.lower(), **body.model_dump())
    result = get_runtime().sso.configure_sso(provider, config, tenant_id=principal.user.tenant_id)
    return _ok(result.unwrap())


@router.post("/admin/directory/sso/{provider}/test", response_model=Envelope, tags=["sso"])
async def test_sso(
    provider: str,
    body: SSOConfigRequest,
    principal: AuthContext = Depends(require_permission(PERM_DIRECTORY)),
):
    config = SSOProviderConfig(provider=provider.lower(), **body.model_dump())
    result = await get_runtime().sso.test_connection(provider, config)
    return _ok(result.unwrap())


__all__ = ["get_user", "require_permission", "router"]
