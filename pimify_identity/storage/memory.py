from __future__ import annotations

import base64
import dataclasses
import hashlib
import hmac
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from pimify_identity.logging import get_logger
from pimify_identity.storage.errors import ConstraintViolation, RecordNotFound
from pimify_identity.storage.models import (
    Invitation,
    InvitationStatus,
    LDAPConfig,
    PermissionGrant,
    Role,
    Session,
    SSOProviderConfig,
    SyncLog,
    TwoFactorRecord,
    TwoFactorState,
    User,
    UserStatus,
)

_USER_MUTABLE_FIELDS = {
    "role",
    "status",
    "name",
    "department",
    "source",
    "tenant_id",
    "failed_login_attempts",
    "first_failed_login_at",
    "locked_at",
    "last_login_at",
    "meta",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """Lock-protected record store for users, credentials, grants, invitations
    and directory settings, optionally persisted to a JSON state file."""

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.two_factor: Dict[str, TwoFactorRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.grants: Dict[str, PermissionGrant] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.ldap_configs: Dict[str, LDAPConfig] = {}
        self.sso_configs: Dict[Tuple[str, str], SSOProviderConfig] = {}
        self.sync_logs: List[SyncLog] = []
        # RLock so compound operations can call other locked helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._persist_enabled = bool(self.fs_root) and persist
        self._cipher = self._build_cipher(encryption_key)
        if self._persist_enabled:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    # -- encryption -------------------------------------------------------

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            if self._persist_enabled:
                raise RuntimeError(
                    "An encryption key is required to persist credential secrets"
                )
            self.logger.warning("store_ephemeral_encryption_key")
            material = secrets.token_urlsafe(48)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("store_secret_decrypt_failed")
            raise RuntimeError("stored secret cannot be decrypted with the configured key") from exc

    # -- users ------------------------------------------------------------

    def _find_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        return next(
            (u for u in self.users.values() if u.email.lower() == normalized), None
        )

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str = "default",
        role: str = "VIEWER",
        status: str = UserStatus.ACTIVE.value,
        name: Optional[str] = None,
        department: Optional[str] = None,
        source: str = "local",
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if self._find_user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip().lower(),
                tenant_id=tenant_id,
                role=role,
                status=status,
                name=name,
                department=department,
                source=source,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return replace(user) if user else None

    def list_users(
        self,
        tenant_id: Optional[str] = None,
        *,
        status: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if (not tenant_id or u.tenant_id == tenant_id)
                and (not status or u.status == status)
                and (not role or u.role == role)
            ]
        return sorted(results, key=lambda u: u.created_at)

    def count_users(
        self, tenant_id: str, *, role: Optional[str] = None, status: Optional[str] = None
    ) -> int:
        return len(self.list_users(tenant_id, role=role, status=status))

    def _is_last_active_admin(self, user: User) -> bool:
        if user.role != Role.ADMIN or user.status != UserStatus.ACTIVE:
            return False
        return not any(
            other.id != user.id
            and other.tenant_id == user.tenant_id
            and other.role == Role.ADMIN
            and other.status == UserStatus.ACTIVE
            for other in self.users.values()
        )

    def update_user(self, user_id: str, *, keep_admin: bool = False, **changes: Any) -> User:
        """Apply ``changes``; with ``keep_admin`` refuse to demote or disable
        the tenant's last active ADMIN."""
        unknown = set(changes) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            stays_admin = (
                changes.get("role", user.role) == Role.ADMIN
                and changes.get("status", user.status) == UserStatus.ACTIVE
            )
            if keep_admin and not stays_admin and self._is_last_active_admin(user):
                raise ConstraintViolation(
                    "tenant must keep an active admin",
                    {"reason": "last_admin", "tenant_id": user.tenant_id},
                )
            updated = replace(user, **changes, updated_at=_utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        window: timedelta,
        threshold: int,
    ) -> Tuple[User, bool]:
        """Count a failed login inside the sliding window.

        Returns the updated user and whether this failure locked the account.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            first = user.first_failed_login_at
            if first is None or now - first > window:
                attempts, first = 1, now
            else:
                attempts = user.failed_login_attempts + 1
            newly_locked = attempts >= threshold and user.status == UserStatus.ACTIVE
            updated = replace(
                user,
                failed_login_attempts=attempts,
                first_failed_login_at=first,
                status=UserStatus.LOCKED.value if newly_locked else user.status,
                locked_at=now if newly_locked else user.locked_at,
                updated_at=now,
            )
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated), newly_locked

    def clear_failed_logins(self, user_id: str, *, login_at: Optional[datetime] = None) -> User:
        changes: Dict[str, Any] = {"failed_login_attempts": 0, "first_failed_login_at": None}
        if login_at is not None:
            changes["last_login_at"] = login_at
        return self.update_user(user_id, **changes)

    def transition_user_status(
        self,
        user_id: str,
        *,
        allowed_from: set[str],
        to_status: str,
        keep_admin: bool = False,
        **changes: Any,
    ) -> User:
        """Move a user to ``to_status`` only from one of ``allowed_from``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if user.status not in allowed_from:
                raise ConstraintViolation(
                    "invalid status transition",
                    {"from": user.status, "to": to_status},
                )
            return self.update_user(
                user_id, status=to_status, keep_admin=keep_admin, **changes
            )

    # -- credentials ------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise RecordNotFound("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- two-factor -------------------------------------------------------

    def _decrypted_two_factor(self, record: TwoFactorRecord) -> TwoFactorRecord:
        return replace(
            record,
            secret=self._decrypt(record.secret),
            backup_code_hashes=list(record.backup_code_hashes),
        )

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorRecord]:
        with self._data_lock:
            record = self.two_factor.get(user_id)
            return self._decrypted_two_factor(record) if record else None

    def save_two_factor(
        self,
        user_id: str,
        *,
        state: str,
        secret: Optional[str],
        backup_code_hashes: List[str],
    ) -> TwoFactorRecord:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found for two-factor", {"user_id": user_id})
            now = _utcnow()
            previous = self.two_factor.get(user_id)
            same_secret = bool(
                previous and secret and self._decrypt(previous.secret) == secret
            )
            record = TwoFactorRecord(
                user_id=user_id,
                state=state,
                secret=self._encrypt(secret),
                backup_code_hashes=list(backup_code_hashes),
                last_used_step=previous.last_used_step if same_secret else None,
                enabled_at=(
                    (previous.enabled_at if previous and previous.enabled_at else now)
                    if state == TwoFactorState.ENABLED
                    else None
                ),
                updated_at=now,
            )
            self.two_factor[user_id] = record
            self.users[user_id] = replace(
                user, two_factor_enabled=state == TwoFactorState.ENABLED, updated_at=now
            )
            self._persist_state()
            return self._decrypted_two_factor(record)

    def clear_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found for two-factor", {"user_id": user_id})
            self.two_factor.pop(user_id, None)
            self.users[user_id] = replace(user, two_factor_enabled=False, updated_at=_utcnow())
            self._persist_state()

    def claim_totp_step(self, user_id: str, step: int) -> bool:
        """Accept a TOTP time step once; steps at or before the last accepted
        one are rejected."""
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return False
            if record.last_used_step is not None and step <= record.last_used_step:
                return False
            self.two_factor[user_id] = replace(record, last_used_step=step)
            self._persist_state()
            return True

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove a matching backup code hash; returns codes remaining or None."""
        with self._data_lock:
            record = self.two_factor.get(user_id)
            if not record:
                return None
            match = None
            for index, stored in enumerate(record.backup_code_hashes):
                if hmac.compare_digest(stored, code_hash):
                    match = index
            if match is None:
                return None
            remaining = list(record.backup_code_hashes)
            remaining.pop(match)
            self.two_factor[user_id] = replace(record, backup_code_hashes=remaining)
            self._persist_state()
            return len(remaining)

    # -- sessions ---------------------------------------------------------

    def record_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise RecordNotFound("user not found for session", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(
        self, session_id: str, *, refreshed_at: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            updated = replace(sess, last_refreshed_at=refreshed_at, expires_at=expires_at)
            self.sessions[session_id] = updated
            self._persist_state()
            return replace(updated)

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_sessions(self, user_id: str, *, now: datetime) -> List[Session]:
        """Unexpired sessions of ``user_id``; expired entries are dropped."""
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            live = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(live, key=lambda s: s.created_at, reverse=True)

    # -- permission grants ------------------------------------------------

    def add_grant(self, grant: PermissionGrant) -> PermissionGrant:
        with self._data_lock:
            if grant.user_id not in self.users:
                raise RecordNotFound("user not found for grant", {"user_id": grant.user_id})
            if grant.id in self.grants:
                raise ConstraintViolation("grant id already exists", {"grant_id": grant.id})
            self.grants[grant.id] = replace(grant)
            self._persist_state()
            return replace(grant)

    def get_grant(self, grant_id: str) -> Optional[PermissionGrant]:
        with self._data_lock:
            grant = self.grants.get(grant_id)
            return replace(grant) if grant else None

    def list_grants(self, user_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            grants = [replace(g) for g in self.grants.values() if g.user_id == user_id]
        return sorted(grants, key=lambda g: g.granted_at)

    def revoke_grant_scope(
        self,
        user_id: str,
        grant_id: str,
        *,
        revoked_by: str,
        reason: str,
        now: datetime,
    ) -> List[PermissionGrant]:
        """Revoke the active grant ``grant_id`` together with any other active
        rows for the same permission and resource scope."""
        with self._data_lock:
            target = self.grants.get(grant_id)
            if not target or target.user_id != user_id or not target.is_active(now):
                return []
            revoked: List[PermissionGrant] = []
            for key, grant in list(self.grants.items()):
                if grant.same_scope(target) and grant.is_active(now):
                    updated = replace(
                        grant, revoked_at=now, revoked_by=revoked_by, revoke_reason=reason
                    )
                    self.grants[key] = updated
                    revoked.append(replace(updated))
            self._persist_state()
            return revoked

    # -- invitations ------------------------------------------------------

    def create_invitation(self, invitation: Invitation, *, now: datetime) -> Invitation:
        with self._data_lock:
            for existing in self.invitations.values():
                if (
                    existing.tenant_id == invitation.tenant_id
                    and existing.email == invitation.email
                    and existing.effective_status(now) == InvitationStatus.PENDING
                ):
                    raise ConstraintViolation(
                        "pending invitation exists",
                        {"field": "email", "invitation_id": existing.id},
                    )
            self.invitations[invitation.id] = replace(invitation)
            self._persist_state()
            return replace(invitation)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            return replace(inv) if inv else None

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._data_lock:
            inv = next(
                (i for i in self.invitations.values() if i.token_hash == token_hash), None
            )
            return replace(inv) if inv else None

    def list_invitations(self, tenant_id: Optional[str] = None) -> List[Invitation]:
        with self._data_lock:
            items = [
                replace(i)
                for i in self.invitations.values()
                if not tenant_id or i.tenant_id == tenant_id
            ]
        return sorted(items, key=lambda i: i.created_at, reverse=True)

    def transition_invitation(
        self, invitation_id: str, *, expected_status: str, **changes: Any
    ) -> Optional[Invitation]:
        """Apply ``changes`` only while the stored status is still
        ``expected_status``; returns None when another writer got there first."""
        with self._data_lock:
            inv = self.invitations.get(invitation_id)
            if not inv:
                raise RecordNotFound("invitation not found", {"invitation_id": invitation_id})
            if inv.status != expected_status:
                return None
            updated = replace(inv, **changes)
            self.invitations[invitation_id] = updated
            self._persist_state()
            return replace(updated)

    # -- directory settings -----------------------------------------------

    def save_ldap_config(self, tenant_id: str, config: LDAPConfig) -> LDAPConfig:
        with self._data_lock:
            stored = replace(
                config, bind_password=self._encrypt(config.bind_password), updated_at=_utcnow()
            )
            self.ldap_configs[tenant_id] = stored
            self._persist_state()
            return replace(stored, bind_password=config.bind_password)

    def get_ldap_config(self, tenant_id: str) -> Optional[LDAPConfig]:
        with self._data_lock:
            cfg = self.ldap_configs.get(tenant_id)
            return replace(cfg, bind_password=self._decrypt(cfg.bind_password)) if cfg else None

    def list_ldap_tenants(self) -> List[str]:
        with self._data_lock:
            return sorted(self.ldap_configs)

    def save_sso_config(self, tenant_id: str, config: SSOProviderConfig) -> SSOProviderConfig:
        with self._data_lock:
            stored = replace(
                config, client_secret=self._encrypt(config.client_secret), updated_at=_utcnow()
            )
            self.sso_configs[(tenant_id, config.provider)] = stored
            self._persist_state()
            return replace(stored, client_secret=config.client_secret)

    def get_sso_config(self, tenant_id: str, provider: str) -> Optional[SSOProviderConfig]:
        with self._data_lock:
            cfg = self.sso_configs.get((tenant_id, provider))
            return replace(cfg, client_secret=self._decrypt(cfg.client_secret)) if cfg else None

    def list_sso_providers(self, tenant_id: str) -> List[str]:
        with self._data_lock:
            return sorted(p for (t, p) in self.sso_configs if t == tenant_id)

    def append_sync_log(self, log: SyncLog) -> SyncLog:
        with self._data_lock:
            self.sync_logs.append(replace(log))
            self._persist_state()
            return replace(log)

    def list_sync_logs(self, tenant_id: str, limit: int = 50) -> List[SyncLog]:
        with self._data_lock:
            logs = [replace(log) for log in self.sync_logs if log.tenant_id == tenant_id]
        return list(reversed(logs))[:limit]

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = dataclasses.asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls, data: dict):
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is not None and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "two_factor": [self._serialize(r) for r in self.two_factor.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "grants": [self._serialize(g) for g in self.grants.values()],
            "invitations": [self._serialize(i) for i in self.invitations.values()],
            "ldap_configs": [
                {"tenant_id": tenant_id, **self._serialize(cfg)}
                for tenant_id, cfg in self.ldap_configs.items()
            ],
            "sso_configs": [
                {"tenant_id": tenant_id, **self._serialize(cfg)}
                for (tenant_id, _), cfg in self.sso_configs.items()
            ],
            "sync_logs": [self._serialize(log) for log in self.sync_logs],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist identity state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.two_factor = {
            r["user_id"]: self._deserialize(TwoFactorRecord, r)
            for r in data.get("two_factor", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.grants = {
            g["id"]: self._deserialize(PermissionGrant, g) for g in data.get("grants", [])
        }
        self.invitations = {
            i["id"]: self._deserialize(Invitation, i) for i in data.get("invitations", [])
        }
        self.ldap_configs = {
            entry["tenant_id"]: self._deserialize(LDAPConfig, entry)
            for entry in data.get("ldap_configs", [])
        }
        self.sso_configs = {
            (entry["tenant_id"], entry["provider"]): self._deserialize(SSOProviderConfig, entry)
            for entry in data.get("sso_configs", [])
        }
        self.sync_logs = [self._deserialize(SyncLog, log) for log in data.get("sync_logs", [])]
        return True


__all__ = ["MemoryStore"]
