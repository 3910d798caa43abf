"""Tests for access/refresh token issuing, rotation and revocation."""

import asyncio
import base64
import json
from datetime import timedelta

import pytest

from pimify_identity.config import Settings
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.tokens import TokenIssuer
from pimify_identity.storage.models import User
from pimify_identity.storage.token_store import MemoryTokenStore


@pytest.fixture
def issuer(settings, token_store, clock):
    return TokenIssuer(settings, token_store, clock=clock)


@pytest.fixture
def user():
    return User(id="user-1", email="user@example.com", tenant_id="acme", role="EDITOR")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    async def test_issue_returns_token_pair(self, issuer, user):
        tokens = await issuer.issue(user)

        assert tokens["token_type"] == "bearer"
        assert tokens["expires_in"] == 15 * 60
        assert tokens["access_token"] != tokens["refresh_token"]

        claims = await issuer.validate_access(tokens["access_token"])
        assert claims["sub"] == "user-1"
        assert claims["tenant_id"] == "acme"
        assert claims["role"] == "EDITOR"
        assert claims["sid"] == tokens["session_id"]

    async def test_token_types_are_not_interchangeable(self, issuer, user):
        tokens = await issuer.issue(user)

        assert await issuer.validate_access(tokens["refresh_token"]) is None
        assert await issuer.decode_refresh(tokens["access_token"]) is None

    async def test_access_token_expires(self, issuer, user, clock):
        tokens = await issuer.issue(user)
        clock.advance(minutes=15, seconds=31)

        assert await issuer.validate_access(tokens["access_token"]) is None

    async def test_expiry_allows_small_clock_skew(self, issuer, user, clock):
        tokens = await issuer.issue(user)
        clock.advance(minutes=15, seconds=10)

        assert await issuer.validate_access(tokens["access_token"]) is not None


class TestTampering:
    async def test_modified_payload_is_rejected(self, issuer, user):
        tokens = await issuer.issue(user)
        header, payload, signature = tokens["access_token"].split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["role"] = "ADMIN"

        forged = ".".join([header, _b64(claims), signature])
        assert await issuer.validate_access(forged) is None

    async def test_alg_none_is_rejected(self, issuer, user):
        tokens = await issuer.issue(user)
        _, payload, _ = tokens["access_token"].split(".")

        forged = ".".join([_b64({"alg": "none", "typ": "JWT"}), payload, ""])
        assert await issuer.validate_access(forged) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    async def test_malformed_tokens(self, issuer, garbage):
        assert await issuer.validate_access(garbage) is None

    async def test_other_audience_is_rejected(self, settings, token_store, clock, user):
        other = TokenIssuer(
            Settings(jwt_secret=settings.jwt_secret, jwt_audience="another-app"),
            token_store,
            clock=clock,
        )
        tokens = await other.issue(user)
        mine = TokenIssuer(settings, token_store, clock=clock)

        assert await mine.validate_access(tokens["access_token"]) is None


class TestRotation:
    async def test_rotation_replaces_refresh_token(self, issuer, user):
        tokens = await issuer.issue(user)
        claims = await issuer.decode_refresh(tokens["refresh_token"])

        rotated = (await issuer.rotate(claims, user)).unwrap()
        assert rotated["session_id"] == tokens["session_id"]

        assert await issuer.decode_refresh(tokens["refresh_token"]) is None
        assert await issuer.decode_refresh(rotated["refresh_token"]) is not None

    async def test_reusing_rotated_token_fails(self, issuer, user):
        tokens = await issuer.issue(user)
        claims = await issuer.decode_refresh(tokens["refresh_token"])
        (await issuer.rotate(claims, user)).unwrap()

        again = await issuer.rotate(claims, user)
        assert again.error == ErrorKind.AUTH_INVALID_REFRESH

    async def test_concurrent_rotation_succeeds_once(self, issuer, user):
        tokens = await issuer.issue(user)
        claims = await issuer.decode_refresh(tokens["refresh_token"])

        results = await asyncio.gather(*(issuer.rotate(claims, user) for _ in range(5)))
        assert sum(1 for r in results if r.success) == 1

    async def test_sessions_rotate_independently(self, issuer, user):
        first = await issuer.issue(user)
        second = await issuer.issue(user)
        claims = await issuer.decode_refresh(first["refresh_token"])
        (await issuer.rotate(claims, user)).unwrap()

        assert await issuer.decode_refresh(second["refresh_token"]) is not None


class TestRevocation:
    async def test_revoke_session(self, issuer, user):
        first = await issuer.issue(user)
        second = await issuer.issue(user)

        await issuer.revoke_session(first["session_id"])

        assert await issuer.validate_access(first["access_token"]) is None
        assert await issuer.decode_refresh(first["refresh_token"]) is None
        assert await issuer.validate_access(second["access_token"]) is not None

    async def test_revoke_all_ends_every_session(self, issuer, user):
        first = await issuer.issue(user)
        second = await issuer.issue(user)

        await issuer.revoke_all(user.id)

        for tokens in (first, second):
            assert await issuer.validate_access(tokens["access_token"]) is None
            assert await issuer.decode_refresh(tokens["refresh_token"]) is None

        fresh = await issuer.issue(user)
        assert await issuer.validate_access(fresh["access_token"]) is not None

    async def test_revoke_all_is_scoped_to_user(self, issuer, user):
        other = User(id="user-2", email="other@example.com")
        mine = await issuer.issue(user)
        theirs = await issuer.issue(other)

        await issuer.revoke_all(user.id)

        assert await issuer.validate_access(mine["access_token"]) is None
        assert await issuer.validate_access(theirs["access_token"]) is not None

    async def test_revocation_does_not_lapse_for_later_sessions(self, settings, clock, monotonic, user):
        token_store = MemoryTokenStore(clock=monotonic)
        issuer = TokenIssuer(settings, token_store, clock=clock)
        await issuer.revoke_all(user.id)
        tokens = await issuer.issue(user)

        for _ in range(4):
            clock.advance(hours=12)
            monotonic.advance(12 * 3600)
            claims = await issuer.decode_refresh(tokens["refresh_token"])
            assert claims is not None
            tokens = (await issuer.rotate(claims, user)).unwrap()

        assert await issuer.validate_access(tokens["access_token"]) is not None


class TestSessionIndex:
    @pytest.fixture
    def indexed(self, settings, token_store, clock, store):
        return TokenIssuer(settings, token_store, sessions=store, clock=clock)

    @pytest.fixture
    def member(self, credentials):
        return credentials.create("member@example.com", "Correct-Horse-9").unwrap()

    async def test_issued_sessions_are_listed(self, indexed, member, clock):
        first = await indexed.issue(member, ip_address="10.0.0.1")
        clock.advance(minutes=1)
        second = await indexed.issue(member)

        sessions = indexed.list_sessions(member.id)
        assert [s.id for s in sessions] == [second["session_id"], first["session_id"]]
        assert sessions[1].ip_addr == "10.0.0.1"
        assert sessions[1].expires_at == sessions[1].created_at + timedelta(days=1)

    async def test_rotation_moves_expiry(self, indexed, member, clock):
        tokens = await indexed.issue(member)
        clock.advance(hours=20)
        claims = await indexed.decode_refresh(tokens["refresh_token"])
        (await indexed.rotate(claims, member)).unwrap()

        clock.advance(hours=10)
        [session] = indexed.list_sessions(member.id)
        assert session.last_refreshed_at == clock() - timedelta(hours=10)

    async def test_revocation_removes_sessions(self, indexed, member):
        first = await indexed.issue(member)
        await indexed.issue(member)
        await indexed.issue(member)

        await indexed.revoke_session(first["session_id"])
        assert len(indexed.list_sessions(member.id)) == 2

        await indexed.revoke_all(member.id)
        assert indexed.list_sessions(member.id) == []

    async def test_unindexed_issuer_lists_nothing(self, issuer, user):
        await issuer.issue(user)
        assert issuer.list_sessions(user.id) == []
