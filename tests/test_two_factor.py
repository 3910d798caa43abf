"""Tests for TOTP two-factor enrollment, verification and backup codes."""

import re

import pyotp
import pytest

from pimify_identity.service.activity import ActivityAction
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.two_factor import (
    TwoFactorService,
    generate_backup_codes,
    hash_backup_code,
)
from pimify_identity.storage.models import TwoFactorState


@pytest.fixture
def two_factor(credentials, activity, clock):
    return TwoFactorService(credentials, activity=activity, clock=clock)


def _enroll(two_factor, user, clock):
    setup = two_factor.enable_2fa(user.id, user.email).unwrap()
    code = pyotp.TOTP(setup["secret"]).at(clock())
    two_factor.verify_code(user.id, code).unwrap()
    return setup


class TestBackupCodes:
    def test_format_avoids_ambiguous_characters(self):
        codes = generate_backup_codes(20)
        assert len(codes) == 20
        for code in codes:
            assert re.fullmatch(r"[A-HJ-KM-NP-Z2-9]{4}-[A-HJ-KM-NP-Z2-9]{4}", code)

    def test_hash_ignores_case_dashes_and_spaces(self):
        assert hash_backup_code("ABCD-EFGH") == hash_backup_code(" abcd efgh ")


class TestEnrollment:
    def test_enable_starts_pending_enrollment(self, two_factor, editor, credentials):
        setup = two_factor.enable_2fa(editor.id, editor.email).unwrap()

        assert setup["qr_payload"].startswith("otpauth://totp/")
        assert "issuer=Pimify" in setup["qr_payload"]
        assert len(setup["backup_codes"]) == 10
        assert credentials.get_two_factor(editor.id).state == TwoFactorState.PENDING_VERIFICATION
        assert not credentials.get_by_id(editor.id).unwrap().two_factor_enabled

    def test_verify_completes_enrollment(self, two_factor, editor, credentials, clock, activity):
        _enroll(two_factor, editor, clock)

        assert credentials.get_two_factor(editor.id).state == TwoFactorState.ENABLED
        assert credentials.get_by_id(editor.id).unwrap().two_factor_enabled
        assert activity.events(user_id=editor.id, action=ActivityAction.TWO_FACTOR_ENABLED)

    def test_only_the_enabling_verify_reports_newly_enabled(self, two_factor, editor, clock):
        setup = two_factor.enable_2fa(editor.id, editor.email).unwrap()
        totp = pyotp.TOTP(setup["secret"])

        first = two_factor.verify_code(editor.id, totp.at(clock())).unwrap()
        clock.advance(seconds=30)
        second = two_factor.verify_code(editor.id, totp.at(clock())).unwrap()

        assert first == {"state": "ENABLED", "newly_enabled": True}
        assert second == {"state": "ENABLED", "newly_enabled": False}

    def test_wrong_code_keeps_enrollment_pending(self, two_factor, editor, credentials):
        two_factor.enable_2fa(editor.id, editor.email).unwrap()

        result = two_factor.verify_code(editor.id, "000000")
        assert result.error == ErrorKind.TWO_FACTOR_INVALID_CODE
        assert credentials.get_two_factor(editor.id).state == TwoFactorState.PENDING_VERIFICATION

    def test_verify_without_enrollment(self, two_factor, editor):
        assert two_factor.verify_code(editor.id, "123456").error == ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_enable_twice_is_rejected_once_enabled(self, two_factor, editor, clock):
        _enroll(two_factor, editor, clock)

        result = two_factor.enable_2fa(editor.id, editor.email)
        assert result.error == ErrorKind.TWO_FACTOR_ALREADY_ENABLED

    def test_restarting_pending_enrollment_issues_new_secret(self, two_factor, editor):
        first = two_factor.enable_2fa(editor.id, editor.email).unwrap()
        second = two_factor.enable_2fa(editor.id, editor.email).unwrap()
        assert first["secret"] != second["secret"]

    def test_enable_unknown_user(self, two_factor):
        assert two_factor.enable_2fa("missing", "x@example.com").error == ErrorKind.NOT_FOUND

    def test_secret_is_encrypted_at_rest(self, two_factor, editor, store):
        setup = two_factor.enable_2fa(editor.id, editor.email).unwrap()
        assert store.two_factor[editor.id].secret != setup["secret"]
        assert store.get_two_factor(editor.id).secret == setup["secret"]


class TestLoginCodes:
    def test_current_code_is_accepted(self, two_factor, editor, clock):
        setup = _enroll(two_factor, editor, clock)
        clock.advance(seconds=30)
        code = pyotp.TOTP(setup["secret"]).at(clock())

        assert two_factor.verify_login_code(editor.id, code).unwrap() == {"method": "totp"}

    def test_adjacent_step_is_accepted(self, two_factor, editor, clock):
        setup = _enroll(two_factor, editor, clock)
        code = pyotp.TOTP(setup["secret"]).at(clock(), 1)

        assert two_factor.verify_login_code(editor.id, code).success

    def test_distant_step_is_rejected(self, two_factor, editor, clock):
        setup = _enroll(two_factor, editor, clock)
        code = pyotp.TOTP(setup["secret"]).at(clock(), 3)

        assert two_factor.verify_login_code(editor.id, code).error == ErrorKind.TWO_FACTOR_INVALID_CODE

    def test_code_cannot_be_replayed(self, two_factor, editor, clock):
        setup = _enroll(two_factor, editor, clock)
        clock.advance(seconds=30)
        code = pyotp.TOTP(setup["secret"]).at(clock())

        assert two_factor.verify_login_code(editor.id, code).success
        replay = two_factor.verify_login_code(editor.id, code)
        assert replay.error == ErrorKind.TWO_FACTOR_INVALID_CODE

    def test_backup_code_is_single_use(self, two_factor, editor, clock, activity):
        setup = _enroll(two_factor, editor, clock)
        backup = setup["backup_codes"][0]

        used = two_factor.verify_login_code(editor.id, backup.lower().replace("-", "")).unwrap()
        assert used == {"method": "backup", "backup_codes_remaining": 9}
        assert two_factor.verify_login_code(editor.id, backup).error == ErrorKind.TWO_FACTOR_INVALID_CODE
        assert activity.events(action=ActivityAction.TWO_FACTOR_BACKUP_CODE_USED)

    def test_login_code_requires_enabled_state(self, two_factor, editor):
        two_factor.enable_2fa(editor.id, editor.email).unwrap()
        assert two_factor.verify_login_code(editor.id, "123456").error == ErrorKind.TWO_FACTOR_NOT_ENABLED


class TestManagement:
    def test_disable(self, two_factor, editor, credentials, clock):
        _enroll(two_factor, editor, clock)

        assert two_factor.disable_2fa(editor.id).unwrap() == {"state": "DISABLED"}
        assert credentials.get_two_factor(editor.id) is None
        assert not credentials.get_by_id(editor.id).unwrap().two_factor_enabled
        assert two_factor.disable_2fa(editor.id).error == ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_regenerate_replaces_backup_codes(self, two_factor, editor, clock):
        setup = _enroll(two_factor, editor, clock)

        fresh = two_factor.regenerate_backup_codes(editor.id).unwrap()["backup_codes"]
        assert set(fresh).isdisjoint(setup["backup_codes"])
        old = two_factor.verify_login_code(editor.id, setup["backup_codes"][0])
        assert old.error == ErrorKind.TWO_FACTOR_INVALID_CODE
        assert two_factor.verify_login_code(editor.id, fresh[0]).success

    def test_regenerate_requires_enabled(self, two_factor, editor):
        assert two_factor.regenerate_backup_codes(editor.id).error == ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_status(self, two_factor, editor, clock):
        assert two_factor.get_status(editor.id) == {
            "state": "DISABLED",
            "enabled": False,
            "backup_codes_remaining": 0,
        }
        _enroll(two_factor, editor, clock)
        status = two_factor.get_status(editor.id)
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 10

    def test_enforcement_by_role(self, two_factor):
        assert two_factor.should_enforce("ADMIN")
        assert two_factor.should_enforce("admin")
        assert not two_factor.should_enforce("VIEWER")
