"""Tests for SSO provider configuration, sign-in URLs and connection checks."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.sso import SSOService
from pimify_identity.storage.models import SSOProviderConfig


def _pem_certificate(not_before, not_after):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.example.com")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _google():
    return SSOProviderConfig(
        provider="google",
        client_id="client-123",
        client_secret="very-secret",
        redirect_uri="https://pim.example.com/sso/callback",
    )


def _saml(clock, *, expired=False):
    now = clock()
    if expired:
        cert = _pem_certificate(now - timedelta(days=30), now - timedelta(days=1))
    else:
        cert = _pem_certificate(now - timedelta(days=1), now + timedelta(days=365))
    return SSOProviderConfig(
        provider="saml",
        entry_point="https://idp.example.com/sso/saml",
        issuer="pimify",
        certificate=cert,
    )


def _service(store, clock, handler=None):
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200, json={})))
    return SSOService(store, transport=transport, clock=clock)


class TestConfigure:
    def test_secret_is_masked_and_encrypted(self, store, clock):
        sso = _service(store, clock)

        masked = sso.configure_sso("Google", _google()).unwrap()

        assert masked["provider"] == "google"
        assert masked["client_secret"] == "********"
        assert store.get_sso_config("default", "google").client_secret == "very-secret"
        assert [p["provider"] for p in sso.list_providers()] == ["google"]

    def test_missing_fields(self, store, clock):
        sso = _service(store, clock)
        config = SSOProviderConfig(provider="google", client_id="client-123")

        result = sso.configure_sso("google", config)

        assert result.error == ErrorKind.VALIDATION_ERROR
        assert "client_secret" in result.message

    def test_unknown_provider(self, store, clock):
        result = _service(store, clock).configure_sso("okta", _google())
        assert result.error == ErrorKind.VALIDATION_ERROR

    def test_providers_are_tenant_scoped(self, store, clock):
        sso = _service(store, clock)
        sso.configure_sso("google", _google(), tenant_id="acme").unwrap()

        assert sso.list_providers() == []
        assert len(sso.list_providers("acme")) == 1


class TestAuthUrl:
    def test_google_url(self, store, clock):
        sso = _service(store, clock)
        sso.configure_sso("google", _google()).unwrap()

        data = sso.get_auth_url("google", "state-xyz").unwrap()

        parsed = urlparse(data["authorization_url"])
        params = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.google.com"
        assert params["client_id"] == ["client-123"]
        assert params["state"] == ["state-xyz"]
        assert params["response_type"] == ["code"]
        assert params["access_type"] == ["offline"]

    def test_microsoft_url_uses_tenant(self, store, clock):
        sso = _service(store, clock)
        config = SSOProviderConfig(
            provider="microsoft",
            client_id="ms-client",
            client_secret="ms-secret",
            redirect_uri="https://pim.example.com/sso/callback",
            tenant="contoso",
        )
        sso.configure_sso("microsoft", config).unwrap()

        url = sso.get_auth_url("microsoft", "s1").unwrap()["authorization_url"]

        assert url.startswith("https://login.microsoftonline.com/contoso/oauth2/v2.0/authorize?")
        assert "access_type" not in url

    def test_saml_url_carries_relay_state(self, store, clock):
        sso = _service(store, clock)
        sso.configure_sso("saml", _saml(clock)).unwrap()

        url = sso.get_auth_url("saml", "relay-1").unwrap()["authorization_url"]
        assert url == "https://idp.example.com/sso/saml?RelayState=relay-1"

    def test_unconfigured_provider(self, store, clock):
        result = _service(store, clock).get_auth_url("google", "s")
        assert result.error == ErrorKind.NOT_CONFIGURED


class TestConnection:
    async def test_oidc_discovery(self, store, clock):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(
                200,
                json={
                    "issuer": "https://accounts.google.com",
                    "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
                },
            )

        result = await _service(store, clock, handler).test_connection("google", _google())

        assert result.unwrap()["issuer"] == "https://accounts.google.com"
        assert seen == ["https://accounts.google.com/.well-known/openid-configuration"]
        assert store.get_sso_config("default", "google") is None

    async def test_oidc_discovery_failure(self, store, clock):
        result = await _service(
            store, clock, lambda request: httpx.Response(503)
        ).test_connection("google", _google())
        assert result.error == ErrorKind.DIRECTORY_UNAVAILABLE

    async def test_oidc_document_without_endpoint(self, store, clock):
        result = await _service(
            store, clock, lambda request: httpx.Response(200, json={"issuer": "x"})
        ).test_connection("google", _google())
        assert result.error == ErrorKind.DIRECTORY_UNAVAILABLE

    async def test_saml_with_valid_certificate(self, store, clock):
        result = await _service(
            store, clock, lambda request: httpx.Response(200, text="<html/>")
        ).test_connection("saml", _saml(clock))

        data = result.unwrap()
        assert data["success"] is True
        assert data["certificate_expires_at"].startswith(str((clock() + timedelta(days=365)).year))

    async def test_saml_with_expired_certificate(self, store, clock):
        result = await _service(store, clock).test_connection("saml", _saml(clock, expired=True))
        assert result.error == ErrorKind.VALIDATION_ERROR
        assert result.message == "certificate has expired"

    async def test_saml_with_garbage_certificate(self, store, clock):
        config = _saml(clock)
        config.certificate = "-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n"

        result = await _service(store, clock).test_connection("saml", config)
        assert result.error == ErrorKind.VALIDATION_ERROR

    async def test_saml_entry_point_down(self, store, clock):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _service(store, clock, handler).test_connection("saml", _saml(clock))
        assert result.error == ErrorKind.DIRECTORY_UNAVAILABLE

    @pytest.mark.parametrize("status", [500, 502])
    async def test_saml_entry_point_error_status(self, store, clock, status):
        result = await _service(
            store, clock, lambda request: httpx.Response(status)
        ).test_connection("saml", _saml(clock))
        assert result.error == ErrorKind.DIRECTORY_UNAVAILABLE
