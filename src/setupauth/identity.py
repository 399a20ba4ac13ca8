"""Who is acting: access tokens, the principal's email and trust checks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum

import httpx

from setupauth.exceptions import (
    AuthenticationError,
    ReauthenticationRequired,
    ValidationError,
)
from setupauth.gateway.errors import ErrorKind, classify_response, error_message

logger = logging.getLogger(__name__)

TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
SERVICE_ACCOUNT_SUFFIX = ".gserviceaccount.com"


class TrustKind(StrEnum):
    USER = "user"
    DELEGATED = "delegated"
    KEY = "key"


@dataclass(frozen=True)
class Principal:
    """The identity performing provisioning."""

    email: str
    domain: str
    trust_kind: TrustKind = TrustKind.USER

    @property
    def member(self) -> str:
        """IAM member string for policy bindings."""
        if self.trust_kind is TrustKind.USER:
            return f"user:{self.email}"
        return f"serviceAccount:{self.email}"


def validate_principal(
    email: str,
    trusted_domain: str,
    trust_kind: TrustKind = TrustKind.USER,
) -> Principal:
    """Build a Principal, rejecting any email outside ``trusted_domain``."""
    email = (email or "").strip()
    if "@" not in email:
        raise ValidationError(f"Invalid principal email: {email!r}")
    if not trusted_domain:
        raise ValidationError(
            "Missing required trusted domain. Set EKG_ORG_PRIMARY_DOMAIN "
            "(e.g. EKG_ORG_PRIMARY_DOMAIN=your-domain.com)."
        )
    domain = email.rsplit("@", 1)[1].lower()
    trusted = trusted_domain.strip().lower()
    if domain != trusted:
        user = email.rsplit("@", 1)[0]
        raise AuthenticationError(
            f"Authenticated as {email}, which is not in the trusted domain "
            f"{trusted}.",
            remedy=f"Run 'gcloud auth login {user}@{trusted}' and re-run.",
        )
    return Principal(email=email, domain=domain, trust_kind=trust_kind)


class TokenSource(ABC):
    """Supplies OAuth access tokens for API calls."""

    @abstractmethod
    async def token(self) -> str:
        ...

    def invalidate(self) -> None:
        """Drop any cached token so the next call fetches a fresh one."""


class StaticTokenSource(TokenSource):
    def __init__(self, access_token: str) -> None:
        if not access_token:
            raise ValidationError("Access token must not be empty.")
        self._token = access_token

    async def token(self) -> str:
        return self._token


class GcloudTokenSource(TokenSource):
    """Access tokens from ``gcloud auth print-access-token``."""

    def __init__(self, gcloud: str = "gcloud", account: str = "") -> None:
        self._gcloud = gcloud
        self._account = account
        self._cached = ""

    async def token(self) -> str:
        if self._cached:
            return self._cached
        args = [self._gcloud, "auth", "print-access-token"]
        if self._account:
            args.append(self._account)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise AuthenticationError(
                "The gcloud CLI is not installed or not on PATH.",
                remedy="Install the Google Cloud SDK and run 'gcloud auth login'.",
            ) from e
        stdout, stderr = await proc.communicate()
        err_text = stderr.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            lowered = err_text.lower()
            if "reauth" in lowered or "invalid_rapt" in lowered:
                raise ReauthenticationRequired(
                    f"gcloud credentials need re-authentication: {err_text[:300]}"
                )
            raise AuthenticationError(
                f"gcloud auth print-access-token failed: {err_text[:300]}"
            )
        token = stdout.decode("utf-8", errors="replace").strip()
        if not token:
            raise AuthenticationError("gcloud returned an empty access token.")
        self._cached = token
        return token

    def invalidate(self) -> None:
        self._cached = ""


class IdentityProvider(ABC):
    """Resolves the acting principal."""

    @abstractmethod
    async def current_email(self) -> str:
        """Return the acting principal's email.

        Raises ``ReauthenticationRequired`` when credentials are stale.
        """

    async def trust_kind(self) -> TrustKind:
        return TrustKind.USER

    async def resolve_principal(self, trusted_domain: str) -> Principal:
        email = await self.current_email()
        principal = validate_principal(email, trusted_domain, await self.trust_kind())
        logger.info("Acting as %s (%s)", principal.email, principal.trust_kind)
        return principal


class TokenInfoIdentity(IdentityProvider):
    """Reads the email behind an access token from the tokeninfo endpoint."""

    def __init__(
        self,
        token_source: TokenSource,
        *,
        client: httpx.AsyncClient | None = None,
        trust_kind: TrustKind | None = None,
        tokeninfo_url: str = TOKENINFO_URL,
    ) -> None:
        self._tokens = token_source
        self._client = client
        self._trust_kind = trust_kind
        self._url = tokeninfo_url
        self._email = ""

    async def current_email(self) -> str:
        if self._email:
            return self._email
        token = await self._tokens.token()
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=30.0)
        try:
            response = await client.get(self._url, params={"access_token": token})
        except httpx.HTTPError as e:
            raise AuthenticationError(
                f"Could not reach the token info endpoint: {e}"
            ) from e
        finally:
            if owns_client:
                await client.aclose()

        if response.status_code >= 400:
            kind = classify_response(response.status_code, response.text)
            message = error_message(response.text)
            if kind is ErrorKind.REAUTH_REQUIRED:
                self._tokens.invalidate()
                raise ReauthenticationRequired(
                    f"Failed to retrieve user email: {message}"
                )
            raise AuthenticationError(f"Failed to retrieve user email: {message}")

        email = str(response.json().get("email", "")).strip()
        if not email:
            raise AuthenticationError(
                "Could not determine the user's email from the token info response.",
                remedy=(
                    "Log in with the userinfo.email scope: 'gcloud auth login' "
                    "and 'gcloud auth application-default login'."
                ),
            )
        self._email = email
        return email

    async def trust_kind(self) -> TrustKind:
        if self._trust_kind is not None:
            return self._trust_kind
        email = await self.current_email()
        if email.endswith(SERVICE_ACCOUNT_SUFFIX):
            return TrustKind.DELEGATED
        return TrustKind.USER
