"""Shared test fixtures for setup-auth."""

from __future__ import annotations

from collections.abc import Sequence

import pytest

from setupauth.config import (
    Config,
    GcpConfig,
    OAuthConfig,
    PropagationConfig,
    RetryConfig,
)
from setupauth.exceptions import ReauthenticationRequired
from setupauth.gateway.base import Brand, ClientKey, OAuthClient, ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind
from setupauth.iam import constants
from setupauth.iam.model import AuthorizationScope, PolicyDocument
from setupauth.identity import IdentityProvider, Principal, TrustKind
from setupauth.orgpolicy.model import ConstraintPolicy
from setupauth.propagation import PropagationWaiter

EMAIL = "dev@example.com"
MEMBER = f"user:{EMAIL}"
ORG_ID = "123456"
PROJECT_ID = "demo-proj"

ROLE_PERMISSIONS: dict[str, set[str]] = {
    constants.OWNER: set(constants.ORGANIZATION_PERMISSIONS) | set(constants.PROJECT_PERMISSIONS),
    constants.ORGANIZATION_VIEWER: {constants.LIST_ORGANIZATIONS, constants.LIST_FOLDERS},
    constants.PROJECT_CREATOR: {constants.CREATE_PROJECT},
    constants.BILLING_VIEWER: {constants.LIST_BILLING_ACCOUNTS},
    constants.SERVICE_USAGE_ADMIN: {
        constants.ENABLE_SERVICE,
        constants.GET_SERVICE,
        constants.LIST_SERVICES,
        constants.USE_SERVICE,
    },
}


def api_error(kind: ErrorKind, message: str = "synthetic") -> ApiError:
    return ApiError(message, kind=kind)


class FakeGateway(ResourceGateway):
    """In-memory gateway whose permissions follow its IAM policies.

    The principal holds a permission on a resource when it is listed in
    ``direct[resource]`` or when a role bound to the principal in that
    resource's policy confers it (see ``role_permissions``).
    """

    def __init__(self, member: str = MEMBER) -> None:
        self.member = member
        self.role_permissions: dict[str, set[str]] = {k: set(v) for k, v in ROLE_PERMISSIONS.items()}
        self.direct: dict[str, set[str]] = {}
        self.policies: dict[str, PolicyDocument] = {}
        self.set_policy_calls: list[tuple[str, PolicyDocument]] = []
        self.stale_writes = 0
        self.constraint: ConstraintPolicy | None = None
        self.constraint_writes: list[ConstraintPolicy] = []
        self.projects: set[str] = {PROJECT_ID}
        self.project_orgs: dict[str, str] = {PROJECT_ID: f"organizations/{ORG_ID}"}
        self.enabled: set[str] = set()
        self.brand: Brand | None = None
        self.clients: dict[str, OAuthClient] = {}
        self.keys: dict[str, list[ClientKey]] = {}
        self.key_counter = 0
        self.errors: dict[str, BaseException] = {}
        self.delete_key_errors: dict[str, BaseException] = {}
        self.calls: list[str] = []

    # -- helpers for tests --

    def grant(self, resource: str, *permissions: str) -> None:
        self.direct.setdefault(resource, set()).update(permissions)

    def grant_everything(self) -> None:
        org = f"organizations/{ORG_ID}"
        self.grant(org, *constants.GLOBAL_PERMISSIONS, *constants.ORGANIZATION_PERMISSIONS)
        self.grant(f"projects/{PROJECT_ID}", *constants.PROJECT_PERMISSIONS)
        self.enabled = set(constants.REQUIRED_SERVICES) - constants.PUBLIC_SERVICES

    def held(self, resource: str) -> set[str]:
        held = set(self.direct.get(resource, set()))
        policy = self.policies.get(resource)
        if policy is not None:
            for binding in policy.bindings:
                if self.member in binding.members:
                    held |= self.role_permissions.get(binding.role, set())
        return held

    def _record(self, name: str) -> None:
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    # -- IAM --

    async def test_permissions(
        self, scope: AuthorizationScope, permissions: Sequence[str],
    ) -> set[str]:
        self._record("test_permissions")
        if scope.resource.startswith("projects/") and scope.resource_id not in self.projects:
            raise api_error(ErrorKind.PERMISSION_DENIED, "project not visible")
        held = self.held(scope.resource)
        return {p for p in permissions if p in held}

    async def get_policy(self, scope: AuthorizationScope) -> PolicyDocument:
        self._record("get_policy")
        policy = self.policies.get(scope.resource)
        if policy is None:
            policy = PolicyDocument(etag="etag-0")
            self.policies[scope.resource] = policy
        return policy

    async def set_policy(
        self, scope: AuthorizationScope, policy: PolicyDocument,
    ) -> PolicyDocument:
        self._record("set_policy")
        self.set_policy_calls.append((scope.resource, policy))
        current = self.policies.get(scope.resource, PolicyDocument(etag="etag-0"))
        if self.stale_writes > 0:
            self.stale_writes -= 1
            self.policies[scope.resource] = PolicyDocument(
                bindings=current.bindings, etag=f"{current.etag}-x",
            )
            raise api_error(ErrorKind.STALE_TOKEN, "concurrent policy changes")
        if policy.etag != current.etag:
            raise api_error(ErrorKind.STALE_TOKEN, "etag mismatch")
        stored = PolicyDocument(
            bindings=policy.bindings, etag=f"etag-{len(self.set_policy_calls)}",
        )
        self.policies[scope.resource] = stored
        return stored

    # -- Org policy --

    async def get_constraint_policy(
        self, organization_id: str, constraint: str,
    ) -> ConstraintPolicy | None:
        self._record("get_constraint_policy")
        return self.constraint

    async def set_constraint_policy(
        self, organization_id: str, policy: ConstraintPolicy,
    ) -> ConstraintPolicy:
        self._record("set_constraint_policy")
        if self.constraint is not None and policy.etag != self.constraint.etag:
            raise api_error(ErrorKind.STALE_TOKEN, "etag mismatch")
        self.constraint_writes.append(policy)
        self.constraint = ConstraintPolicy(
            name=policy.name, rules=policy.rules, etag=f"c-{len(self.constraint_writes)}",
        )
        return self.constraint

    # -- Projects and services --

    async def project_exists(self, project_id: str) -> bool:
        self._record("project_exists")
        return project_id in self.projects

    async def create_project(self, project_id: str, organization_id: str) -> None:
        self._record("create_project")
        if project_id in self.projects:
            raise api_error(ErrorKind.ALREADY_EXISTS)
        self.projects.add(project_id)
        self.project_orgs[project_id] = f"organizations/{organization_id}"

    async def get_project_organization(self, project_id: str) -> str:
        self._record("get_project_organization")
        return self.project_orgs.get(project_id, "")

    async def move_project(self, project_id: str, organization_id: str) -> None:
        self._record("move_project")
        self.project_orgs[project_id] = f"organizations/{organization_id}"

    async def list_enabled_services(self, project_id: str) -> set[str]:
        self._record("list_enabled_services")
        return set(self.enabled)

    async def enable_service(self, project_id: str, service: str) -> None:
        self._record("enable_service")
        self.enabled.add(service)

    # -- Consent screen --

    async def get_brand(self, project_id: str) -> Brand | None:
        self._record("get_brand")
        return self.brand

    async def create_brand(
        self, project_id: str, application_title: str, support_email: str,
    ) -> Brand:
        self._record("create_brand")
        self.brand = Brand(
            name=f"projects/{project_id}/brands/1",
            application_title=application_title,
            support_email=support_email,
        )
        return self.brand

    # -- OAuth clients --

    async def get_client(self, project_id: str, client_id: str) -> OAuthClient | None:
        self._record("get_client")
        return self.clients.get(client_id)

    async def create_client(
        self,
        project_id: str,
        client_id: str,
        display_name: str,
        redirect_uris: Sequence[str],
    ) -> OAuthClient:
        self._record("create_client")
        client = OAuthClient(client_id, display_name, tuple(redirect_uris))
        self.clients[client_id] = client
        return client

    async def update_client_redirect_uris(
        self, project_id: str, client_id: str, redirect_uris: Sequence[str],
    ) -> OAuthClient:
        self._record("update_client_redirect_uris")
        client = self.clients[client_id]
        updated = OAuthClient(client.client_id, client.display_name, tuple(redirect_uris))
        self.clients[client_id] = updated
        return updated

    async def delete_client(self, project_id: str, client_id: str) -> None:
        self._record("delete_client")
        self.clients.pop(client_id, None)

    async def list_client_keys(self, project_id: str, client_id: str) -> list[ClientKey]:
        self._record("list_client_keys")
        return list(self.keys.get(client_id, []))

    async def create_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> ClientKey:
        self._record("create_client_key")
        self.key_counter += 1
        key = ClientKey(key_id=key_id, secret=f"secret-{self.key_counter}")
        self.keys.setdefault(client_id, []).append(ClientKey(key_id=key_id))
        return key

    async def delete_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> None:
        self._record("delete_client_key")
        error = self.delete_key_errors.get(key_id)
        if error is not None:
            raise error
        self.keys[client_id] = [k for k in self.keys.get(client_id, []) if k.key_id != key_id]


class FakeIdentity(IdentityProvider):
    def __init__(
        self,
        email: str = EMAIL,
        *,
        kind: TrustKind = TrustKind.USER,
        reauth: bool = False,
    ) -> None:
        self.email = email
        self.kind = kind
        self.reauth = reauth
        self.calls = 0

    async def current_email(self) -> str:
        self.calls += 1
        if self.reauth:
            raise ReauthenticationRequired("invalid_rapt")
        return self.email

    async def trust_kind(self) -> TrustKind:
        return self.kind


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def principal() -> Principal:
    return Principal(email=EMAIL, domain="example.com")


@pytest.fixture
def waiter() -> PropagationWaiter:
    return PropagationWaiter(timeout=0.1, interval=0.005)


@pytest.fixture
def config() -> Config:
    """A complete, valid provisioning configuration with fast timings."""
    return Config(
        gcp=GcpConfig(
            organization_id=ORG_ID,
            project_id=PROJECT_ID,
            trusted_domain="example.com",
        ),
        oauth=OAuthConfig(
            platform="vercel",
            brand_name="Demo App",
            vercel_project_name="demo",
            project_name="demo",
        ),
        propagation=PropagationConfig(timeout_seconds=0.1, interval_seconds=0.005),
        retry=RetryConfig(
            max_attempts=1,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            jitter_seconds=0.0,
        ),
    )
