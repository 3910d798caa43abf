from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from pimify_identity.config import Settings
from pimify_identity.logging import get_logger
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.memory import MemoryStore
from pimify_identity.storage.models import Session, User
from pimify_identity.storage.token_store import TokenStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_INITIAL_GENERATION = "0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Mints HS256 access/refresh pairs and rotates refresh tokens exactly once.

    Each session keeps the id (``jti``) of its one live refresh token under
    ``refresh:{sid}``. Rotation compare-and-deletes that entry, so of two
    concurrent refreshes with the same token only one finds it. A per-user
    generation (``epoch:{user_id}``) is embedded in every token; bumping it
    ends all of the user's sessions at once.

    When a ``sessions`` store is given, live sessions are also indexed per
    user there so administrators can list and end them.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        *,
        sessions: Optional[MemoryStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        clock_skew_leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self.settings = settings
        self.tokens = token_store
        self.sessions = sessions
        self._clock = clock
        self._leeway = clock_skew_leeway

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # -- JWT encoding -----------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject alg=none and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self._leeway.total_seconds():
            return None
        return payload

    # -- store keys -------------------------------------------------------

    @staticmethod
    def _refresh_key(session_id: str) -> str:
        return f"refresh:{session_id}"

    @staticmethod
    def _revoked_key(session_id: str) -> str:
        return f"revoked-session:{session_id}"

    @staticmethod
    def _epoch_key(user_id: str) -> str:
        return f"epoch:{user_id}"

    async def _generation(self, user_id: str) -> str:
        return await self.tokens.get(self._epoch_key(user_id)) or _INITIAL_GENERATION

    # -- issuing ----------------------------------------------------------

    def _mint(self, user: User, session_id: str, generation: str) -> tuple[dict[str, Any], str]:
        now = self._clock()
        refresh_jti = str(uuid.uuid4())
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session_id,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "gen": generation,
        }
        access_payload = {
            **base,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": refresh_jti,
            "exp": int((now + self.refresh_ttl).timestamp()),
        }
        tokens = {
            "access_token": self._encode_jwt(access_payload),
            "refresh_token": self._encode_jwt(refresh_payload),
            "token_type": "bearer",
            "expires_in": int(self.access_ttl.total_seconds()),
            "session_id": session_id,
        }
        return tokens, refresh_jti

    async def issue(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        """Start a new session for ``user`` and return its token pair."""
        session_id = str(uuid.uuid4())
        generation = await self._generation(user.id)
        tokens, refresh_jti = self._mint(user, session_id, generation)
        await self.tokens.put(
            self._refresh_key(session_id),
            refresh_jti,
            int(self.refresh_ttl.total_seconds()),
        )
        if self.sessions is not None:
            now = self._clock()
            self.sessions.record_session(
                Session(
                    id=session_id,
                    user_id=user.id,
                    tenant_id=user.tenant_id,
                    created_at=now,
                    last_refreshed_at=now,
                    expires_at=now + self.refresh_ttl,
                    ip_addr=ip_address,
                    user_agent=user_agent,
                )
            )
        logger.info("session_started", user_id=user.id, session_id=session_id)
        return tokens

    async def decode_refresh(self, refresh_token: str) -> Optional[dict[str, Any]]:
        """Claims of a structurally valid, unexpired refresh token whose
        session has not been ended. Does not consume it."""
        payload = self._decode_jwt(refresh_token or "")
        if not payload or payload.get("token_type") != REFRESH:
            return None
        if payload.get("gen") != await self._generation(payload.get("sub", "")):
            return None
        current = await self.tokens.get(self._refresh_key(payload.get("sid", "")))
        if current is None or not hmac.compare_digest(current, str(payload.get("jti"))):
            return None
        return payload

    async def rotate(self, claims: dict[str, Any], user: User) -> Result:
        """Swap the refresh token in ``claims`` for a new pair.

        The old token is removed before the new one exists, so there is no
        moment when both authenticate.
        """
        session_id = claims["sid"]
        consumed = await self.tokens.compare_and_delete(
            self._refresh_key(session_id), str(claims["jti"])
        )
        if not consumed:
            logger.warning("refresh_token_reuse_rejected", user_id=user.id, session_id=session_id)
            return Result.fail(ErrorKind.AUTH_INVALID_REFRESH, "refresh token is no longer valid")
        tokens, refresh_jti = self._mint(user, session_id, claims["gen"])
        await self.tokens.put(
            self._refresh_key(session_id),
            refresh_jti,
            int(self.refresh_ttl.total_seconds()),
        )
        if self.sessions is not None:
            now = self._clock()
            self.sessions.touch_session(
                session_id, refreshed_at=now, expires_at=now + self.refresh_ttl
            )
        logger.info("refresh_token_rotated", user_id=user.id, session_id=session_id)
        return Result.ok(tokens)

    def list_sessions(self, user_id: str) -> List[Session]:
        """Unexpired indexed sessions of ``user_id``, newest first."""
        if self.sessions is None:
            return []
        return self.sessions.list_sessions(user_id, now=self._clock())

    def get_session(self, session_id: str) -> Optional[Session]:
        if self.sessions is None:
            return None
        return self.sessions.get_session(session_id)

    async def validate_access(self, access_token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(access_token or "")
        if not payload or payload.get("token_type") != ACCESS:
            return None
        if await self.tokens.get(self._revoked_key(payload.get("sid", ""))):
            return None
        if payload.get("gen") != await self._generation(payload.get("sub", "")):
            return None
        return payload

    # -- revocation -------------------------------------------------------

    async def revoke_session(self, session_id: str) -> None:
        await self.tokens.delete(self._refresh_key(session_id))
        # Outstanding access tokens for the session stop validating too
        await self.tokens.put(
            self._revoked_key(session_id),
            "1",
            int((self.access_ttl + self._leeway).total_seconds()),
        )
        if self.sessions is not None:
            self.sessions.revoke_session(session_id)
        logger.info("session_revoked", session_id=session_id)

    async def revoke_all(self, user_id: str) -> None:
        # Stored without expiry; tokens compare against it for their whole life
        await self.tokens.put(self._epoch_key(user_id), uuid.uuid4().hex)
        if self.sessions is not None:
            self.sessions.revoke_user_sessions(user_id)
        logger.info("user_sessions_revoked", user_id=user_id)


__all__ = ["ACCESS", "REFRESH", "TokenIssuer"]
