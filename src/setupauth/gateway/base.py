"""Abstract resource gateway.

Everything setup-auth does to Google Cloud goes through one of these
methods. Failures surface as ``ApiError`` with a classified ``kind``;
transient failures have already been retried by the time they escape.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from setupauth.iam.model import AuthorizationScope, PolicyDocument
from setupauth.orgpolicy.model import ConstraintPolicy


@dataclass(frozen=True)
class Brand:
    """OAuth consent screen."""

    name: str
    application_title: str
    support_email: str


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    display_name: str = ""
    redirect_uris: tuple[str, ...] = ()
    disabled: bool = False


@dataclass(frozen=True)
class ClientKey:
    """A managed credential of an OAuth client.

    ``secret`` is only populated in the response to a create call.
    """

    key_id: str
    secret: str = field(default="", repr=False)
    disabled: bool = False


class ResourceGateway(ABC):
    """Remote operations against projects, policies and OAuth resources."""

    # -- IAM --

    @abstractmethod
    async def test_permissions(
        self, scope: AuthorizationScope, permissions: Sequence[str],
    ) -> set[str]:
        """Return the subset of ``permissions`` the caller holds on ``scope``."""

    @abstractmethod
    async def get_policy(self, scope: AuthorizationScope) -> PolicyDocument:
        ...

    @abstractmethod
    async def set_policy(
        self, scope: AuthorizationScope, policy: PolicyDocument,
    ) -> PolicyDocument:
        """Write ``policy``; a stale etag raises ``ApiError(kind=STALE_TOKEN)``."""

    # -- Org policy --

    @abstractmethod
    async def get_constraint_policy(
        self, organization_id: str, constraint: str,
    ) -> ConstraintPolicy | None:
        """Return the policy set directly on the organization, or None."""

    @abstractmethod
    async def set_constraint_policy(
        self, organization_id: str, policy: ConstraintPolicy,
    ) -> ConstraintPolicy:
        ...

    # -- Projects and services --

    @abstractmethod
    async def project_exists(self, project_id: str) -> bool:
        ...

    @abstractmethod
    async def create_project(self, project_id: str, organization_id: str) -> None:
        ...

    @abstractmethod
    async def get_project_organization(self, project_id: str) -> str:
        """``organizations/<id>`` above the project, or ``""`` when it has none."""

    @abstractmethod
    async def move_project(self, project_id: str, organization_id: str) -> None:
        ...

    @abstractmethod
    async def list_enabled_services(self, project_id: str) -> set[str]:
        ...

    @abstractmethod
    async def enable_service(self, project_id: str, service: str) -> None:
        ...

    # -- Consent screen --

    @abstractmethod
    async def get_brand(self, project_id: str) -> Brand | None:
        ...

    @abstractmethod
    async def create_brand(
        self, project_id: str, application_title: str, support_email: str,
    ) -> Brand:
        ...

    # -- OAuth clients --

    @abstractmethod
    async def get_client(self, project_id: str, client_id: str) -> OAuthClient | None:
        ...

    @abstractmethod
    async def create_client(
        self,
        project_id: str,
        client_id: str,
        display_name: str,
        redirect_uris: Sequence[str],
    ) -> OAuthClient:
        ...

    @abstractmethod
    async def update_client_redirect_uris(
        self, project_id: str, client_id: str, redirect_uris: Sequence[str],
    ) -> OAuthClient:
        ...

    @abstractmethod
    async def delete_client(self, project_id: str, client_id: str) -> None:
        ...

    @abstractmethod
    async def list_client_keys(self, project_id: str, client_id: str) -> list[ClientKey]:
        ...

    @abstractmethod
    async def create_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> ClientKey:
        ...

    @abstractmethod
    async def delete_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> None:
        ...

    async def aclose(self) -> None:
        """Release transport resources. Default: nothing to release."""

    async def __aenter__(self) -> ResourceGateway:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
