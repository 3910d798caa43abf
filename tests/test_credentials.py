"""Tests for the credential store: user records, password hashing and lockout bookkeeping."""

from datetime import datetime, timedelta, timezone

import pytest

from pimify_identity.service.credentials import validate_password
from pimify_identity.service.errors import ErrorKind
from pimify_identity.storage.models import UserStatus

PASSWORD = "Correct-Horse-9"


class TestValidatePassword:
    @pytest.mark.parametrize("password", ["", None, "short", "1234567"])
    def test_rejects_short_passwords(self, password):
        assert "at least 8" in validate_password(password)

    def test_rejects_surrounding_whitespace(self):
        assert validate_password(" padded-password ") is not None

    def test_accepts_reasonable_password(self):
        assert validate_password(PASSWORD) is None


class TestCreate:
    def test_create_hashes_password(self, credentials, store):
        user = credentials.create("Person@Example.com", PASSWORD).unwrap()

        assert user.email == "person@example.com"
        assert user.role == "VIEWER"
        password_hash, algo = store.get_password_record(user.id)
        assert algo == "argon2id"
        assert password_hash != PASSWORD
        assert password_hash.startswith("$argon2id$")

    def test_email_is_unique_case_insensitively(self, credentials):
        credentials.create("dup@example.com", PASSWORD).unwrap()
        result = credentials.create("DUP@example.com", PASSWORD)

        assert not result.success
        assert result.error == ErrorKind.VALIDATION_ERROR
        assert result.detail["field"] == "email"

    def test_rejects_unknown_role(self, credentials):
        result = credentials.create("x@example.com", PASSWORD, role="OWNER")
        assert result.error == ErrorKind.VALIDATION_ERROR

    def test_rejects_weak_password(self, credentials):
        result = credentials.create("x@example.com", "weak")
        assert result.error == ErrorKind.VALIDATION_ERROR
        assert result.detail["field"] == "password"

    def test_create_without_password(self, credentials):
        user = credentials.create("ldap@example.com", None, source="ldap").unwrap()
        assert user.source == "ldap"
        assert not credentials.has_password(user.id)


class TestVerifyPassword:
    def test_correct_password(self, credentials):
        user = credentials.create("v@example.com", PASSWORD).unwrap()
        assert credentials.verify_password(user, PASSWORD)

    def test_wrong_password(self, credentials):
        user = credentials.create("v@example.com", PASSWORD).unwrap()
        assert not credentials.verify_password(user, "Wrong-Horse-9")

    def test_unknown_user_spends_hash_time_and_fails(self, credentials, monkeypatch):
        calls = []
        monkeypatch.setattr(credentials, "dummy_verify", lambda password: calls.append(password))

        assert not credentials.verify_password(None, PASSWORD)
        assert calls == [PASSWORD]

    def test_unknown_algorithm_is_refused(self, credentials, store):
        user = credentials.create("v@example.com", PASSWORD).unwrap()
        store.save_password(user.id, "plaintext", "plain")
        assert not credentials.verify_password(user, "plaintext")

    def test_admin_reset_password(self, credentials):
        user = credentials.create("v@example.com", PASSWORD).unwrap()
        assert credentials.admin_reset_password(user.id, "Brand-New-Pass-1").success
        assert credentials.verify_password(user, "Brand-New-Pass-1")
        assert not credentials.verify_password(user, PASSWORD)

    def test_admin_reset_unknown_user(self, credentials):
        result = credentials.admin_reset_password("missing", "Brand-New-Pass-1")
        assert result.error == ErrorKind.NOT_FOUND


class TestUpdates:
    def test_update_validates_role_and_status(self, credentials):
        user = credentials.create("u@example.com", PASSWORD).unwrap()
        assert credentials.update(user.id, role="ROOT").error == ErrorKind.VALIDATION_ERROR
        assert credentials.update(user.id, status="GONE").error == ErrorKind.VALIDATION_ERROR
        assert credentials.update(user.id, role="EDITOR").unwrap().role == "EDITOR"

    def test_update_unknown_user(self, credentials):
        assert credentials.update("missing", name="x").error == ErrorKind.NOT_FOUND

    def test_update_refuses_unknown_fields(self, credentials):
        user = credentials.create("u@example.com", PASSWORD).unwrap()
        result = credentials.update(user.id, email="other@example.com")
        assert result.error == ErrorKind.VALIDATION_ERROR

    def test_transition_status_checks_origin(self, credentials):
        user = credentials.create("u@example.com", PASSWORD).unwrap()
        refused = credentials.transition_status(
            user.id, {UserStatus.LOCKED.value}, UserStatus.ACTIVE.value
        )
        assert refused.error == ErrorKind.VALIDATION_ERROR

        moved = credentials.transition_status(
            user.id, {UserStatus.ACTIVE.value}, UserStatus.SUSPENDED.value
        )
        assert moved.unwrap().status == "SUSPENDED"

    def test_count_active_admins_is_per_tenant(self, credentials):
        credentials.create("a1@example.com", PASSWORD, role="ADMIN").unwrap()
        credentials.create("a2@example.com", PASSWORD, role="ADMIN", tenant_id="acme").unwrap()
        suspended = credentials.create("a3@example.com", PASSWORD, role="ADMIN").unwrap()
        credentials.update(suspended.id, status="SUSPENDED").unwrap()

        assert credentials.count_active_admins("default") == 1
        assert credentials.count_active_admins("acme") == 1


class TestFailedLogins:
    def test_failures_inside_window_accumulate_and_lock(self, credentials):
        user = credentials.create("f@example.com", PASSWORD).unwrap()
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        window = timedelta(minutes=15)

        for attempt in range(1, 5):
            updated, locked = credentials.record_failed_login(
                user.id, now=now + timedelta(minutes=attempt), window=window, threshold=5
            )
            assert updated.failed_login_attempts == attempt
            assert not locked

        updated, locked = credentials.record_failed_login(
            user.id, now=now + timedelta(minutes=5), window=window, threshold=5
        )
        assert locked
        assert updated.status == UserStatus.LOCKED
        assert updated.locked_at == now + timedelta(minutes=5)

    def test_failures_outside_window_restart_count(self, credentials):
        user = credentials.create("f@example.com", PASSWORD).unwrap()
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        window = timedelta(minutes=15)
        for _ in range(4):
            credentials.record_failed_login(user.id, now=now, window=window, threshold=5)

        updated, locked = credentials.record_failed_login(
            user.id, now=now + timedelta(minutes=16), window=window, threshold=5
        )
        assert updated.failed_login_attempts == 1
        assert not locked

    def test_clear_failed_logins(self, credentials):
        user = credentials.create("f@example.com", PASSWORD).unwrap()
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        credentials.record_failed_login(user.id, now=now, window=timedelta(minutes=15), threshold=5)

        cleared = credentials.clear_failed_logins(user.id, login_at=now)
        assert cleared.failed_login_attempts == 0
        assert cleared.first_failed_login_at is None
        assert cleared.last_login_at == now

