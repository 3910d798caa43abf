from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from ldap3 import ALL, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPBindError, LDAPException
from ldap3.utils.conv import escape_filter_chars

from pimify_identity.logging import get_logger, redact_email, sanitize_error_message
from pimify_identity.service.activity import ActivityAction, ActivitySink, record_activity
from pimify_identity.service.credentials import CredentialStore
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.service.webhooks import WebhookDispatcher
from pimify_identity.storage.models import (
    DirectoryEntry,
    LDAPConfig,
    Role,
    SyncLog,
    SyncSchedule,
    SyncStatus,
)

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 300
SCHEDULE_INTERVALS = {
    SyncSchedule.HOURLY.value: timedelta(hours=1),
    SyncSchedule.DAILY.value: timedelta(days=1),
    SyncSchedule.WEEKLY.value: timedelta(weeks=1),
}


class DirectoryError(Exception):
    """The directory could not be reached or refused the service bind."""


class DirectoryClient(Protocol):
    def search_users(self, config: LDAPConfig) -> List[DirectoryEntry]: ...

    def bind_user(self, config: LDAPConfig, email: str, password: str) -> bool: ...

    def server_info(self, config: LDAPConfig) -> dict: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _attr(entry, name: str) -> Optional[str]:
    if not name or name not in entry.entry_attributes:
        return None
    value = entry[name].value
    if isinstance(value, list):
        value = value[0] if value else None
    return str(value).strip() if value else None


class LdapDirectoryClient:
    """Blocking ldap3 client; callers run it in a worker thread."""

    def __init__(self, *, connect_timeout: int = 10) -> None:
        self.connect_timeout = connect_timeout

    def _server(self, config: LDAPConfig) -> Server:
        use_ssl = config.use_ssl or config.url.lower().startswith("ldaps://")
        return Server(config.url, use_ssl=use_ssl, get_info=ALL, connect_timeout=self.connect_timeout)

    def _service_connection(self, config: LDAPConfig) -> Connection:
        try:
            return Connection(
                self._server(config),
                user=config.bind_dn,
                password=config.bind_password,
                auto_bind=True,
                raise_exceptions=True,
            )
        except LDAPException as exc:
            raise DirectoryError(f"service bind failed: {exc}") from exc

    def search_users(self, config: LDAPConfig) -> List[DirectoryEntry]:
        conn = self._service_connection(config)
        try:
            conn.search(
                search_base=config.base_dn,
                search_filter=config.user_filter,
                search_scope=SUBTREE,
                attributes=[
                    config.email_attribute,
                    config.name_attribute,
                    config.department_attribute,
                ],
            )
            return [
                DirectoryEntry(
                    email=_attr(entry, config.email_attribute),
                    name=_attr(entry, config.name_attribute),
                    department=_attr(entry, config.department_attribute),
                    dn=entry.entry_dn,
                )
                for entry in conn.entries
            ]
        except LDAPException as exc:
            raise DirectoryError(f"directory search failed: {exc}") from exc
        finally:
            conn.unbind()

    def bind_user(self, config: LDAPConfig, email: str, password: str) -> bool:
        if not password:
            return False
        conn = self._service_connection(config)
        try:
            search_filter = (
                f"(&{config.user_filter}({config.email_attribute}={escape_filter_chars(email)}))"
            )
            conn.search(
                search_base=config.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[config.email_attribute],
            )
            if not conn.entries:
                return False
            user_dn = conn.entries[0].entry_dn
        except LDAPException as exc:
            raise DirectoryError(f"directory search failed: {exc}") from exc
        finally:
            conn.unbind()
        try:
            user_conn = Connection(
                self._server(config),
                user=user_dn,
                password=password,
                auto_bind=True,
                raise_exceptions=True,
            )
        except LDAPBindError:
            return False
        except LDAPException as exc:
            raise DirectoryError(f"user bind failed: {exc}") from exc
        user_conn.unbind()
        return True

    def server_info(self, config: LDAPConfig) -> dict:
        conn = self._service_connection(config)
        try:
            info = conn.server.info
            return {
                "vendor": str(info.vendor_name) if info and info.vendor_name else "Unknown",
                "naming_contexts": [str(nc) for nc in info.naming_contexts] if info else [],
            }
        finally:
            conn.unbind()


class LDAPConfigStore(Protocol):
    def save_ldap_config(self, tenant_id: str, config: LDAPConfig) -> LDAPConfig: ...

    def get_ldap_config(self, tenant_id: str) -> Optional[LDAPConfig]: ...

    def list_ldap_tenants(self) -> List[str]: ...

    def append_sync_log(self, log: SyncLog) -> SyncLog: ...

    def list_sync_logs(self, tenant_id: str, limit: int = 50) -> List[SyncLog]: ...


def validate_ldap_config(config: LDAPConfig) -> Optional[str]:
    parsed = urlparse(config.url or "")
    if parsed.scheme not in {"ldap", "ldaps"} or not parsed.hostname:
        return "url must be an ldap:// or ldaps:// address"
    if not config.base_dn:
        return "base_dn is required"
    if not config.user_filter.startswith("(") or not config.user_filter.endswith(")"):
        return "user_filter must be a parenthesised LDAP filter"
    if config.default_role not in Role.__members__:
        return "default_role must be a known role"
    if config.schedule not in SCHEDULE_INTERVALS:
        return "schedule must be hourly, daily or weekly"
    return None


class DirectoryFederationService:
    """LDAP configuration, delegated authentication and user sync.

    Syncs for one tenant never overlap: a request while one is running is
    rejected with SYNC_IN_PROGRESS. Directory calls run outside any lock
    guarding local records.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        store: LDAPConfigStore,
        client: Optional[DirectoryClient] = None,
        *,
        webhooks: Optional[WebhookDispatcher] = None,
        ops_webhook_url: Optional[str] = None,
        activity: Optional[ActivitySink] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.credentials = credentials
        self.store = store
        self.client: DirectoryClient = client or LdapDirectoryClient()
        self.webhooks = webhooks
        self.ops_webhook_url = ops_webhook_url
        self.activity = activity
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancel: Dict[str, asyncio.Event] = {}

    # -- configuration ----------------------------------------------------

    def configure(self, tenant_id: str, config: LDAPConfig) -> Result:
        problem = validate_ldap_config(config)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem)
        stored = self.store.save_ldap_config(tenant_id, config)
        logger.info("ldap_configured", tenant_id=tenant_id, host=urlparse(config.url).hostname)
        return Result.ok(stored.masked())

    def get_config(self, tenant_id: str) -> Result:
        config = self.store.get_ldap_config(tenant_id)
        if not config:
            return Result.fail(ErrorKind.NOT_CONFIGURED, "LDAP is not configured")
        return Result.ok(config.masked())

    async def test_connection(self, config: LDAPConfig) -> Result:
        """Try the service bind with ``config``; nothing is stored."""
        problem = validate_ldap_config(config)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem)
        try:
            info = await asyncio.to_thread(self.client.server_info, config)
        except DirectoryError as exc:
            logger.warning("ldap_test_failed", error=sanitize_error_message(str(exc)))
            return Result.fail(
                ErrorKind.DIRECTORY_UNAVAILABLE,
                sanitize_error_message(str(exc)),
            )
        return Result.ok({"success": True, "message": "Connection successful", "server_info": info})

    # -- authentication ---------------------------------------------------

    async def authenticate(self, tenant_id: str, email: str, password: str) -> Result:
        config = self.store.get_ldap_config(tenant_id)
        if not config:
            return Result.fail(ErrorKind.NOT_CONFIGURED, "LDAP is not configured")
        try:
            verified = await asyncio.to_thread(self.client.bind_user, config, email, password)
        except DirectoryError as exc:
            logger.error("ldap_authenticate_failed", tenant_id=tenant_id, error=sanitize_error_message(str(exc)))
            return Result.fail(ErrorKind.DIRECTORY_UNAVAILABLE, "directory is unavailable")
        logger.info("ldap_authenticate", tenant_id=tenant_id, email=redact_email(email), verified=verified)
        return Result.ok(verified)

    # -- sync -------------------------------------------------------------

    def sync_in_progress(self, tenant_id: str) -> bool:
        lock = self._locks.get(tenant_id)
        return bool(lock and lock.locked())

    def cancel_sync(self, tenant_id: str) -> Result:
        if not self.sync_in_progress(tenant_id):
            return Result.ok({"cancelled": False})
        self._cancel.setdefault(tenant_id, asyncio.Event()).set()
        logger.info("directory_sync_cancel_requested", tenant_id=tenant_id)
        return Result.ok({"cancelled": True})

    def list_sync_logs(self, tenant_id: str, limit: int = 50) -> List[SyncLog]:
        return self.store.list_sync_logs(tenant_id, limit)

    async def sync_users(
        self, tenant_id: str, schedule: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> Result:
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        if lock.locked():
            return Result.fail(ErrorKind.SYNC_IN_PROGRESS, "a sync is already running for this tenant")
        async with lock:
            cancel = self._cancel[tenant_id] = asyncio.Event()
            try:
                return await self._run_sync(tenant_id, schedule, cancel, actor_id)
            finally:
                self._cancel.pop(tenant_id, None)

    async def _fetch_with_retry(self, config: LDAPConfig, tenant_id: str) -> tuple[List[DirectoryEntry], int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                entries = await asyncio.to_thread(self.client.search_users, config)
                return entries, attempt
            except DirectoryError as exc:
                if attempt >= self.max_retries:
                    raise DirectoryError(str(exc)) from exc
                backoff = min(self.retry_delay * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "directory_sync_retry",
                    tenant_id=tenant_id,
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error=sanitize_error_message(str(exc)),
                )
                await self._sleep(backoff)

    async def _run_sync(
        self,
        tenant_id: str,
        schedule: Optional[str],
        cancel: asyncio.Event,
        actor_id: Optional[str],
    ) -> Result:
        config = self.store.get_ldap_config(tenant_id)
        if not config:
            return Result.fail(ErrorKind.NOT_CONFIGURED, "LDAP is not configured")
        schedule = schedule or config.schedule
        started_at = self._clock()
        log = SyncLog(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            status=SyncStatus.SUCCESS.value,
            started_at=started_at,
            finished_at=started_at,
            schedule=schedule,
        )
        try:
            entries, attempts = await self._fetch_with_retry(config, tenant_id)
        except DirectoryError as exc:
            message = sanitize_error_message(str(exc))
            log = replace(
                log,
                status=SyncStatus.FAILED.value,
                finished_at=self._clock(),
                attempts=self.max_retries,
                error=message,
            )
            self.store.append_sync_log(log)
            logger.error("directory_sync_failed", tenant_id=tenant_id, attempts=self.max_retries, error=message)
            record_activity(
                self.activity,
                ActivityAction.DIRECTORY_SYNC_FAILED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                attempts=self.max_retries,
            )
            await self._notify_failure(tenant_id, message)
            return Result.fail(
                ErrorKind.DIRECTORY_UNAVAILABLE, "directory sync failed", log_id=log.id
            )

        counts = {"imported": 0, "updated": 0, "unchanged": 0, "skipped": 0}
        status = SyncStatus.SUCCESS.value
        for entry in entries:
            if cancel.is_set():
                status = SyncStatus.CANCELLED.value
                break
            counts[self._upsert(tenant_id, config, entry)] += 1
            await asyncio.sleep(0)

        log = replace(log, status=status, finished_at=self._clock(), attempts=attempts, **counts)
        self.store.append_sync_log(log)
        record_activity(
            self.activity,
            ActivityAction.DIRECTORY_SYNC_COMPLETED,
            actor_id=actor_id,
            tenant_id=tenant_id,
            status=status,
            **counts,
        )
        logger.info("directory_sync_finished", tenant_id=tenant_id, status=status, **counts)
        return Result.ok({"status": status, "log_id": log.id, **counts})

    def _upsert(self, tenant_id: str, config: LDAPConfig, entry: DirectoryEntry) -> str:
        email = (entry.email or "").strip().lower()
        if "@" not in email:
            return "skipped"
        existing = self.credentials.get_by_email(email).data
        if existing is None:
            created = self.credentials.create(
                email,
                None,
                role=config.default_role,
                name=entry.name,
                department=entry.department,
                source="ldap",
                tenant_id=tenant_id,
            )
            if not created.success:
                logger.warning("directory_entry_rejected", email=redact_email(email), error=created.error)
                return "skipped"
            return "imported"
        if existing.tenant_id != tenant_id:
            logger.warning("directory_entry_tenant_mismatch", email=redact_email(email), tenant_id=tenant_id)
            return "skipped"
        changes = {}
        if entry.name is not None and entry.name != existing.name:
            changes["name"] = entry.name
        if entry.department is not None and entry.department != existing.department:
            changes["department"] = entry.department
        if not changes:
            return "unchanged"
        if not self.credentials.update(existing.id, **changes).success:
            return "skipped"
        return "updated"

    async def _notify_failure(self, tenant_id: str, message: str) -> None:
        if not self.webhooks or not self.ops_webhook_url:
            return
        sent = await self.webhooks.send_webhook(
            self.ops_webhook_url,
            f"Directory sync for tenant {tenant_id} failed after {self.max_retries} attempts: {message}",
            title="Directory sync failed",
        )
        if not sent.success:
            logger.warning("directory_sync_alert_failed", tenant_id=tenant_id)


class DirectorySyncWorker:
    """Runs scheduled directory syncs for every configured tenant."""

    def __init__(
        self,
        service: DirectoryFederationService,
        *,
        poll_interval: int = 60,
    ) -> None:
        self.service = service
        self.poll_interval = poll_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("directory_sync_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("directory_sync_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("directory_sync_worker_stopped")

    def _is_due(self, tenant_id: str, schedule: str, now: datetime) -> bool:
        logs = self.service.list_sync_logs(tenant_id, limit=1)
        if not logs:
            return True
        interval = SCHEDULE_INTERVALS.get(schedule, SCHEDULE_INTERVALS[SyncSchedule.DAILY.value])
        return now - logs[0].started_at >= interval

    async def run_due_syncs(self) -> int:
        """Start every sync whose schedule has come round; returns how many ran."""
        ran = 0
        now = self.service._clock()
        for tenant_id in self.service.store.list_ldap_tenants():
            config = self.service.store.get_ldap_config(tenant_id)
            if not config or self.service.sync_in_progress(tenant_id):
                continue
            if not self._is_due(tenant_id, config.schedule, now):
                continue
            await self.service.sync_users(tenant_id, config.schedule)
            ran += 1
        return ran

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            started = time.monotonic()
            try:
                await self.run_due_syncs()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "directory_sync_worker_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(MAX_BACKOFF_SECONDS, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(max(0.0, self.poll_interval - (time.monotonic() - started)))


__all__ = [
    "DirectoryClient",
    "DirectoryError",
    "DirectoryFederationService",
    "DirectorySyncWorker",
    "LdapDirectoryClient",
    "validate_ldap_config",
]
