"""Tests for principal resolution and trust checks."""

from __future__ import annotations

import httpx
import pytest

from setupauth.exceptions import (
    AuthenticationError,
    ReauthenticationRequired,
    ValidationError,
)
from setupauth.identity import (
    GcloudTokenSource,
    Principal,
    StaticTokenSource,
    TokenInfoIdentity,
    TrustKind,
    validate_principal,
)


class RecordingTokens(StaticTokenSource):
    def __init__(self) -> None:
        super().__init__("tok-abc")
        self.invalidated = False

    def invalidate(self) -> None:
        self.invalidated = True


def _tokeninfo(handler, tokens=None, **kwargs) -> TokenInfoIdentity:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenInfoIdentity(tokens or StaticTokenSource("tok-abc"), client=client, **kwargs)


class TestValidatePrincipal:
    def test_accepts_trusted_domain(self):
        principal = validate_principal("Dev@Example.com", "example.com")
        assert principal.domain == "example.com"
        assert principal.member == "user:Dev@Example.com"

    def test_rejects_other_domain_with_login_hint(self):
        with pytest.raises(AuthenticationError) as exc_info:
            validate_principal("dev@gmail.com", "example.com")
        assert "gcloud auth login dev@example.com" in exc_info.value.remedy

    def test_subdomain_is_not_the_trusted_domain(self):
        with pytest.raises(AuthenticationError):
            validate_principal("dev@eng.example.com", "example.com")

    def test_missing_trusted_domain(self):
        with pytest.raises(ValidationError, match="EKG_ORG_PRIMARY_DOMAIN"):
            validate_principal("dev@example.com", "")

    def test_malformed_email(self):
        with pytest.raises(ValidationError):
            validate_principal("not-an-email", "example.com")

    def test_domain_check_applies_to_service_accounts(self):
        with pytest.raises(AuthenticationError):
            validate_principal(
                "ci@proj.iam.gserviceaccount.com", "example.com", TrustKind.DELEGATED,
            )


class TestPrincipal:
    def test_service_account_member(self):
        principal = Principal("ci@example.com", "example.com", TrustKind.DELEGATED)
        assert principal.member == "serviceAccount:ci@example.com"


class TestTokenSources:
    def test_static_token_must_not_be_empty(self):
        with pytest.raises(ValidationError):
            StaticTokenSource("")

    @pytest.mark.asyncio
    async def test_missing_gcloud_binary(self):
        source = GcloudTokenSource(gcloud="/nonexistent/bin/gcloud-missing")
        with pytest.raises(AuthenticationError, match="not installed"):
            await source.token()


class TestTokenInfoIdentity:
    @pytest.mark.asyncio
    async def test_reads_and_caches_email(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"email": "dev@example.com"})

        identity = _tokeninfo(handler)

        assert await identity.current_email() == "dev@example.com"
        assert await identity.current_email() == "dev@example.com"
        assert len(calls) == 1
        assert calls[0].url.params["access_token"] == "tok-abc"

    @pytest.mark.asyncio
    async def test_resolve_principal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"email": "dev@example.com"})

        principal = await _tokeninfo(handler).resolve_principal("example.com")

        assert principal == Principal("dev@example.com", "example.com", TrustKind.USER)

    @pytest.mark.asyncio
    async def test_service_account_email_is_delegated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"email": "ci@proj.iam.gserviceaccount.com"})

        assert await _tokeninfo(handler).trust_kind() is TrustKind.DELEGATED

    @pytest.mark.asyncio
    async def test_explicit_trust_kind_wins(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"email": "ci@proj.iam.gserviceaccount.com"})

        identity = _tokeninfo(handler, trust_kind=TrustKind.KEY)
        assert await identity.trust_kind() is TrustKind.KEY

    @pytest.mark.asyncio
    async def test_reauth_response(self):
        tokens = RecordingTokens()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "reauth related error (invalid_rapt)",
                "error_subtype": "invalid_rapt",
            })

        with pytest.raises(ReauthenticationRequired):
            await _tokeninfo(handler, tokens).current_email()
        assert tokens.invalidated

    @pytest.mark.asyncio
    async def test_missing_email_claim(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"scope": "openid"})

        with pytest.raises(AuthenticationError) as exc_info:
            await _tokeninfo(handler).current_email()
        assert "userinfo.email" in exc_info.value.remedy

    @pytest.mark.asyncio
    async def test_other_http_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        with pytest.raises(AuthenticationError, match="oops"):
            await _tokeninfo(handler).current_email()
