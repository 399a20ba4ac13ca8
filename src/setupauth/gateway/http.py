"""REST implementation of the resource gateway over httpx.

Talks to the public Google Cloud REST APIs:

- Cloud Resource Manager v3 (projects, organizations, IAM policies)
- Org Policy v2 (constraint policies)
- Service Usage v1 (enabled services)
- IAP v1 (OAuth brands / consent screen)
- IAM v1 (OAuth clients and their credentials)

Every call goes through ``call_with_retry``; failures leave as ``ApiError``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from setupauth.config import Config
from setupauth.gateway.base import Brand, ClientKey, OAuthClient, ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind, classify_response, error_message
from setupauth.gateway.retry import ApiRetryPolicy, call_with_retry
from setupauth.iam.constants import LIST_BILLING_ACCOUNTS, LIST_ORGANIZATIONS
from setupauth.iam.model import AuthorizationScope, PolicyDocument, ScopeKind
from setupauth.identity import TokenSource
from setupauth.orgpolicy.model import ConstraintPolicy

logger = logging.getLogger(__name__)

CRM = "https://cloudresourcemanager.googleapis.com/v3"
ORG_POLICY = "https://orgpolicy.googleapis.com/v2"
SERVICE_USAGE = "https://serviceusage.googleapis.com/v1"
IAP = "https://iap.googleapis.com/v1"
IAM = "https://iam.googleapis.com/v1"
BILLING = "https://cloudbilling.googleapis.com/v1"

CLIENT_GRANT_TYPES = ["AUTHORIZATION_CODE_GRANT", "REFRESH_TOKEN_GRANT"]
CLIENT_SCOPES = ["https://www.googleapis.com/auth/cloud-platform", "openid", "email"]


class GcpRestGateway(ResourceGateway):
    """``ResourceGateway`` backed by Google's REST endpoints."""

    def __init__(
        self,
        token_source: TokenSource,
        *,
        retry: ApiRetryPolicy | None = None,
        timeout: float = 60.0,
        quota_project_id: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._tokens = token_source
        self._retry = retry or ApiRetryPolicy()
        self._timeout = timeout
        self._quota_project = quota_project_id
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        token_source: TokenSource,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> GcpRestGateway:
        return cls(
            token_source,
            retry=ApiRetryPolicy.from_config(config.retry),
            timeout=config.gateway.request_timeout_seconds,
            quota_project_id=config.gcp.quota_project_id,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"content-type": "application/json"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async def invoke() -> dict[str, Any]:
            client = await self._get_client()
            headers = {"authorization": f"Bearer {await self._tokens.token()}"}
            if self._quota_project:
                headers["x-goog-user-project"] = self._quota_project
            try:
                response = await client.request(
                    method, url, json=json, params=params, headers=headers,
                )
            except httpx.TimeoutException as e:
                raise ApiError(
                    f"{operation} timed out: {e}",
                    kind=ErrorKind.UNAVAILABLE, operation=operation, original=e,
                ) from e
            except httpx.TransportError as e:
                raise ApiError(
                    f"Cannot reach {url}: {e}",
                    kind=ErrorKind.UNAVAILABLE, operation=operation, original=e,
                ) from e

            if response.status_code >= 400:
                kind = classify_response(response.status_code, response.text)
                if kind is ErrorKind.REAUTH_REQUIRED:
                    self._tokens.invalidate()
                raise ApiError(
                    f"{operation} returned HTTP {response.status_code}: "
                    f"{error_message(response.text)}",
                    kind=kind,
                    status_code=response.status_code,
                    operation=operation,
                )
            if not response.content:
                return {}
            return response.json()

        return await call_with_retry(invoke, policy=self._retry, operation=operation)

    # -- IAM --

    async def test_permissions(
        self, scope: AuthorizationScope, permissions: Sequence[str],
    ) -> set[str]:
        if scope.kind is ScopeKind.GLOBAL:
            return await self._test_global_permissions(scope, permissions)
        return await self._test_resource_permissions(scope.resource, permissions)

    async def _test_resource_permissions(
        self, resource: str, permissions: Sequence[str],
    ) -> set[str]:
        if not permissions:
            return set()
        data = await self._request(
            "POST", f"{CRM}/{resource}:testIamPermissions",
            operation=f"testIamPermissions({resource})",
            json={"permissions": list(permissions)},
        )
        return set(data.get("permissions", []) or [])

    async def _test_global_permissions(
        self, scope: AuthorizationScope, permissions: Sequence[str],
    ) -> set[str]:
        """Account-wide permissions have no resource to test against.

        Listing permissions are checked by calling the listing endpoint; the
        rest are tested on the organization the grants would land on.
        """
        granted: set[str] = set()
        remaining = list(permissions)
        listing_calls = {
            LIST_ORGANIZATIONS: (f"{CRM}/organizations:search", {"pageSize": 1}),
            LIST_BILLING_ACCOUNTS: (f"{BILLING}/billingAccounts", {"pageSize": 1}),
        }
        for permission, (url, params) in listing_calls.items():
            if permission not in remaining:
                continue
            remaining.remove(permission)
            try:
                await self._request("GET", url, operation=f"list for {permission}", params=params)
                granted.add(permission)
            except ApiError as e:
                if e.kind is not ErrorKind.PERMISSION_DENIED:
                    raise
        if remaining:
            granted |= await self._test_resource_permissions(scope.resource, remaining)
        return granted

    async def get_policy(self, scope: AuthorizationScope) -> PolicyDocument:
        data = await self._request(
            "POST", f"{CRM}/{scope.resource}:getIamPolicy",
            operation=f"getIamPolicy({scope.resource})",
            json={"options": {"requestedPolicyVersion": 3}},
        )
        return PolicyDocument.from_api(data)

    async def set_policy(
        self, scope: AuthorizationScope, policy: PolicyDocument,
    ) -> PolicyDocument:
        data = await self._request(
            "POST", f"{CRM}/{scope.resource}:setIamPolicy",
            operation=f"setIamPolicy({scope.resource})",
            json={"policy": policy.to_api()},
        )
        return PolicyDocument.from_api(data)

    # -- Org policy --

    @staticmethod
    def _policy_name(organization_id: str, constraint: str) -> str:
        return f"organizations/{organization_id}/policies/{constraint.removeprefix('constraints/')}"

    async def get_constraint_policy(
        self, organization_id: str, constraint: str,
    ) -> ConstraintPolicy | None:
        name = self._policy_name(organization_id, constraint)
        try:
            data = await self._request(
                "GET", f"{ORG_POLICY}/{name}", operation=f"getPolicy({name})",
            )
        except ApiError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        return ConstraintPolicy.from_api(data)

    async def set_constraint_policy(
        self, organization_id: str, policy: ConstraintPolicy,
    ) -> ConstraintPolicy:
        body = policy.to_api()
        if policy.etag:
            data = await self._request(
                "PATCH", f"{ORG_POLICY}/{policy.name}",
                operation=f"updatePolicy({policy.name})",
                json=body,
                params={"updateMask": "spec"},
            )
        else:
            data = await self._request(
                "POST", f"{ORG_POLICY}/organizations/{organization_id}/policies",
                operation=f"createPolicy({policy.name})",
                json=body,
            )
        return ConstraintPolicy.from_api(data)

    # -- Projects and services --

    async def project_exists(self, project_id: str) -> bool:
        try:
            await self._request(
                "GET", f"{CRM}/projects/{project_id}",
                operation=f"getProject({project_id})",
            )
        except ApiError as e:
            # Missing projects answer 403 as often as 404.
            if e.kind in (ErrorKind.NOT_FOUND, ErrorKind.PERMISSION_DENIED):
                return False
            raise
        return True

    async def create_project(self, project_id: str, organization_id: str) -> None:
        await self._request(
            "POST", f"{CRM}/projects",
            operation=f"createProject({project_id})",
            json={
                "projectId": project_id,
                "parent": f"organizations/{organization_id}",
                "displayName": project_id,
            },
        )

    async def get_project_organization(self, project_id: str) -> str:
        data = await self._request(
            "GET", f"{CRM}/projects/{project_id}",
            operation=f"getProject({project_id})",
        )
        parent = str(data.get("parent", "") or "")
        # Folders can nest; walk up until an organization or the top.
        seen: set[str] = set()
        while parent.startswith("folders/") and parent not in seen:
            seen.add(parent)
            folder = await self._request(
                "GET", f"{CRM}/{parent}", operation=f"getFolder({parent})",
            )
            parent = str(folder.get("parent", "") or "")
        return parent if parent.startswith("organizations/") else ""

    async def move_project(self, project_id: str, organization_id: str) -> None:
        await self._request(
            "POST", f"{CRM}/projects/{project_id}:move",
            operation=f"moveProject({project_id})",
            json={"destinationParent": f"organizations/{organization_id}"},
        )

    async def list_enabled_services(self, project_id: str) -> set[str]:
        enabled: set[str] = set()
        params: dict[str, Any] = {"filter": "state:ENABLED", "pageSize": 200}
        while True:
            data = await self._request(
                "GET", f"{SERVICE_USAGE}/projects/{project_id}/services",
                operation=f"listServices({project_id})",
                params=params,
            )
            for service in data.get("services", []) or []:
                name = (service.get("config") or {}).get("name") or service.get("name", "")
                if name:
                    enabled.add(name.rsplit("/", 1)[-1])
            token = data.get("nextPageToken")
            if not token:
                return enabled
            params = {**params, "pageToken": token}

    async def enable_service(self, project_id: str, service: str) -> None:
        await self._request(
            "POST", f"{SERVICE_USAGE}/projects/{project_id}/services/{service}:enable",
            operation=f"enableService({service})",
            json={},
        )

    # -- Consent screen --

    @staticmethod
    def _brand(data: dict[str, Any]) -> Brand:
        return Brand(
            name=str(data.get("name", "")),
            application_title=str(data.get("applicationTitle", "")),
            support_email=str(data.get("supportEmail", "")),
        )

    async def get_brand(self, project_id: str) -> Brand | None:
        try:
            data = await self._request(
                "GET", f"{IAP}/projects/{project_id}/brands",
                operation=f"listBrands({project_id})",
            )
        except ApiError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        brands = data.get("brands", []) or []
        return self._brand(brands[0]) if brands else None

    async def create_brand(
        self, project_id: str, application_title: str, support_email: str,
    ) -> Brand:
        data = await self._request(
            "POST", f"{IAP}/projects/{project_id}/brands",
            operation=f"createBrand({project_id})",
            json={"applicationTitle": application_title, "supportEmail": support_email},
        )
        return self._brand(data)

    # -- OAuth clients --

    @staticmethod
    def _clients_url(project_id: str) -> str:
        return f"{IAM}/projects/{project_id}/locations/global/oauthClients"

    @staticmethod
    def _oauth_client(data: dict[str, Any]) -> OAuthClient:
        return OAuthClient(
            client_id=str(data.get("name", "")).rsplit("/", 1)[-1],
            display_name=str(data.get("displayName", "")),
            redirect_uris=tuple(data.get("allowedRedirectUris", []) or []),
            disabled=bool(data.get("disabled", False)),
        )

    async def get_client(self, project_id: str, client_id: str) -> OAuthClient | None:
        try:
            data = await self._request(
                "GET", f"{self._clients_url(project_id)}/{client_id}",
                operation=f"getOauthClient({client_id})",
            )
        except ApiError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        return self._oauth_client(data)

    async def create_client(
        self,
        project_id: str,
        client_id: str,
        display_name: str,
        redirect_uris: Sequence[str],
    ) -> OAuthClient:
        data = await self._request(
            "POST", self._clients_url(project_id),
            operation=f"createOauthClient({client_id})",
            params={"oauthClientId": client_id},
            json={
                "displayName": display_name,
                "clientType": "CONFIDENTIAL_CLIENT",
                "allowedGrantTypes": CLIENT_GRANT_TYPES,
                "allowedScopes": CLIENT_SCOPES,
                "allowedRedirectUris": list(redirect_uris),
            },
        )
        return self._oauth_client(data)

    async def update_client_redirect_uris(
        self, project_id: str, client_id: str, redirect_uris: Sequence[str],
    ) -> OAuthClient:
        data = await self._request(
            "PATCH", f"{self._clients_url(project_id)}/{client_id}",
            operation=f"updateOauthClient({client_id})",
            params={"updateMask": "allowedRedirectUris"},
            json={"allowedRedirectUris": list(redirect_uris)},
        )
        return self._oauth_client(data)

    async def delete_client(self, project_id: str, client_id: str) -> None:
        await self._request(
            "DELETE", f"{self._clients_url(project_id)}/{client_id}",
            operation=f"deleteOauthClient({client_id})",
        )

    async def list_client_keys(self, project_id: str, client_id: str) -> list[ClientKey]:
        data = await self._request(
            "GET", f"{self._clients_url(project_id)}/{client_id}/credentials",
            operation=f"listOauthClientCredentials({client_id})",
        )
        return [
            ClientKey(
                key_id=str(item.get("name", "")).rsplit("/", 1)[-1],
                disabled=bool(item.get("disabled", False)),
            )
            for item in data.get("oauthClientCredentials", []) or []
        ]

    async def create_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> ClientKey:
        data = await self._request(
            "POST", f"{self._clients_url(project_id)}/{client_id}/credentials",
            operation=f"createOauthClientCredential({client_id})",
            params={"oauthClientCredentialId": key_id},
            json={},
        )
        return ClientKey(
            key_id=str(data.get("name", key_id)).rsplit("/", 1)[-1],
            secret=str(data.get("clientSecret", "")),
        )

    async def delete_client_key(
        self, project_id: str, client_id: str, key_id: str,
    ) -> None:
        url = f"{self._clients_url(project_id)}/{client_id}/credentials/{key_id}"
        # Credentials must be disabled before they can be deleted.
        await self._request(
            "PATCH", url,
            operation=f"disableOauthClientCredential({key_id})",
            params={"updateMask": "disabled"},
            json={"disabled": True},
        )
        await self._request(
            "DELETE", url, operation=f"deleteOauthClientCredential({key_id})",
        )
