from __future__ import annotations

from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx
from cryptography import x509

from pimify_identity.logging import get_logger, sanitize_error_message
from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.result import Result
from pimify_identity.storage.models import SSOProvider, SSOProviderConfig

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    SSOProvider.GOOGLE.value: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "discovery_url": "https://accounts.google.com/.well-known/openid-configuration",
        "scope": "openid email profile",
    },
    SSOProvider.MICROSOFT.value: {
        "auth_url": "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
        "discovery_url": "https://login.microsoftonline.com/{tenant}/v2.0/.well-known/openid-configuration",
        "scope": "openid email profile User.Read",
    },
}

_REQUIRED_FIELDS = {
    SSOProvider.GOOGLE.value: ("client_id", "client_secret", "redirect_uri"),
    SSOProvider.MICROSOFT.value: ("client_id", "client_secret", "redirect_uri"),
    SSOProvider.SAML.value: ("entry_point", "issuer", "certificate"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def masked_sso_config(config: SSOProviderConfig) -> dict:
    data = asdict(config)
    data["client_secret"] = "********" if config.client_secret else None
    data["updated_at"] = config.updated_at.isoformat()
    return data


class SSOConfigStore(Protocol):
    def save_sso_config(self, tenant_id: str, config: SSOProviderConfig) -> SSOProviderConfig: ...

    def get_sso_config(self, tenant_id: str, provider: str) -> Optional[SSOProviderConfig]: ...

    def list_sso_providers(self, tenant_id: str) -> List[str]: ...


class SSOService:
    """Per-tenant SSO provider settings and sign-in URLs.

    Only configuration and reachability are handled here; assertion and
    token exchange belong to the identity provider integration.
    """

    def __init__(
        self,
        store: SSOConfigStore,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    @staticmethod
    def _validate(provider: str, config: SSOProviderConfig) -> Optional[str]:
        if provider not in _REQUIRED_FIELDS:
            return f"unsupported provider {provider!r}"
        missing = [name for name in _REQUIRED_FIELDS[provider] if not getattr(config, name)]
        if missing:
            return f"missing required fields: {', '.join(missing)}"
        url = config.entry_point if provider == SSOProvider.SAML.value else config.redirect_uri
        if urlparse(url).scheme not in {"http", "https"}:
            return "urls must be http or https"
        return None

    def configure_sso(self, provider: str, config: SSOProviderConfig, *, tenant_id: str = "default") -> Result:
        provider = (provider or "").lower()
        problem = self._validate(provider, config)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem, field="provider")
        stored = self.store.save_sso_config(tenant_id, replace(config, provider=provider))
        logger.info("sso_configured", tenant_id=tenant_id, provider=provider)
        return Result.ok(masked_sso_config(stored))

    def list_providers(self, tenant_id: str = "default") -> List[dict]:
        providers = []
        for name in self.store.list_sso_providers(tenant_id):
            config = self.store.get_sso_config(tenant_id, name)
            if config:
                providers.append(masked_sso_config(config))
        return providers

    def get_auth_url(self, provider: str, state: str, *, tenant_id: str = "default") -> Result:
        provider = (provider or "").lower()
        config = self.store.get_sso_config(tenant_id, provider)
        if not config:
            return Result.fail(ErrorKind.NOT_CONFIGURED, f"{provider or 'sso'} is not configured")
        if provider == SSOProvider.SAML.value:
            separator = "&" if "?" in config.entry_point else "?"
            url = f"{config.entry_point}{separator}{urlencode({'RelayState': state})}"
            return Result.ok({"authorization_url": url, "state": state, "provider": provider})

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == SSOProvider.GOOGLE.value:
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        auth_url = provider_config["auth_url"].format(tenant=config.tenant or "common")
        return Result.ok(
            {
                "authorization_url": f"{auth_url}?{urlencode(params)}",
                "state": state,
                "provider": provider,
            }
        )

    async def test_connection(self, provider: str, config: SSOProviderConfig) -> Result:
        """Check ``config`` against the provider; stored settings are untouched."""
        provider = (provider or "").lower()
        problem = self._validate(provider, config)
        if problem:
            return Result.fail(ErrorKind.VALIDATION_ERROR, problem)
        if provider == SSOProvider.SAML.value:
            return await self._test_saml(config)
        return await self._test_oidc(provider, config)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=5.0),
            follow_redirects=True,
            transport=self._transport,
        )

    async def _test_oidc(self, provider: str, config: SSOProviderConfig) -> Result:
        url = OAUTH_PROVIDERS[provider]["discovery_url"].format(tenant=config.tenant or "common")
        try:
            async with self._client() as client:
                response = await client.get(url)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as exc:
            logger.warning("sso_test_failed", provider=provider, error_type=type(exc).__name__)
            return Result.fail(
                ErrorKind.DIRECTORY_UNAVAILABLE,
                f"could not load discovery document: {sanitize_error_message(str(exc))}",
            )
        except ValueError:
            return Result.fail(ErrorKind.DIRECTORY_UNAVAILABLE, "discovery document is not valid JSON")
        if "authorization_endpoint" not in document:
            return Result.fail(ErrorKind.DIRECTORY_UNAVAILABLE, "discovery document has no authorization endpoint")
        return Result.ok(
            {
                "success": True,
                "message": "Connection successful",
                "issuer": document.get("issuer"),
            }
        )

    async def _test_saml(self, config: SSOProviderConfig) -> Result:
        try:
            cert = x509.load_pem_x509_certificate(config.certificate.encode("utf-8"))
        except ValueError:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "certificate is not a valid PEM X.509 certificate")
        if cert.not_valid_after_utc <= self._clock():
            return Result.fail(ErrorKind.VALIDATION_ERROR, "certificate has expired")
        try:
            async with self._client() as client:
                response = await client.get(config.entry_point)
        except httpx.HTTPError as exc:
            logger.warning("sso_test_failed", provider="saml", error_type=type(exc).__name__)
            return Result.fail(ErrorKind.DIRECTORY_UNAVAILABLE, "entry point is unreachable")
        if response.status_code >= 500:
            return Result.fail(
                ErrorKind.DIRECTORY_UNAVAILABLE, f"entry point answered {response.status_code}"
            )
        return Result.ok(
            {
                "success": True,
                "message": "Connection successful",
                "certificate_expires_at": cert.not_valid_after_utc.isoformat(),
            }
        )


__all__ = ["OAUTH_PROVIDERS", "SSOService", "masked_sso_config"]
