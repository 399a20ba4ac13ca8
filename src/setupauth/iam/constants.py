"""Permissions, roles and services required to provision OAuth on GCP."""

from __future__ import annotations

from types import MappingProxyType

from setupauth.iam.model import AuthorizationScope, ScopeKind

# Services

RESOURCE_MANAGER = "cloudresourcemanager.googleapis.com"
SERVICE_USAGE = "serviceusage.googleapis.com"
IAM = "iam.googleapis.com"
IAM_CREDENTIALS = "iamcredentials.googleapis.com"
ORG_POLICY = "orgpolicy.googleapis.com"
OAUTH2 = "oauth2.googleapis.com"
IAP = "iap.googleapis.com"
CLOUD_BILLING = "cloudbilling.googleapis.com"
ACCESS_CONTEXT_MANAGER = "accesscontextmanager.googleapis.com"
SERVICE_MANAGEMENT = "servicemanagement.googleapis.com"

REQUIRED_SERVICES: tuple[str, ...] = (
    RESOURCE_MANAGER,
    SERVICE_USAGE,
    IAM,
    IAM_CREDENTIALS,
    ORG_POLICY,
    OAUTH2,
    IAP,
    CLOUD_BILLING,
    ACCESS_CONTEXT_MANAGER,
    SERVICE_MANAGEMENT,
)

# Globally available; cannot be toggled per project.
PUBLIC_SERVICES: frozenset[str] = frozenset({OAUTH2})

# Global permissions

LIST_ORGANIZATIONS = "resourcemanager.organizations.list"
LIST_FOLDERS = "resourcemanager.folders.list"
CREATE_PROJECT = "resourcemanager.projects.create"
LIST_BILLING_ACCOUNTS = "billing.accounts.list"

GLOBAL_PERMISSIONS: tuple[str, ...] = (
    LIST_ORGANIZATIONS,
    LIST_FOLDERS,
    CREATE_PROJECT,
    LIST_BILLING_ACCOUNTS,
)

# Organization permissions

GET_ORGANIZATION = "resourcemanager.organizations.get"
UPDATE_ORGANIZATION = "resourcemanager.organizations.update"
GET_ORGANIZATION_IAM_POLICY = "resourcemanager.organizations.getIamPolicy"
SET_ORGANIZATION_IAM_POLICY = "resourcemanager.organizations.setIamPolicy"
LIST_PROJECTS = "resourcemanager.projects.list"
PROJECTS_SET_IAM_POLICY = "resourcemanager.projects.setIamPolicy"
ORG_POLICY_GET = "orgpolicy.policy.get"
ORG_POLICY_SET = "orgpolicy.policy.set"

ORGANIZATION_PERMISSIONS: tuple[str, ...] = (
    GET_ORGANIZATION,
    UPDATE_ORGANIZATION,
    GET_ORGANIZATION_IAM_POLICY,
    SET_ORGANIZATION_IAM_POLICY,
    LIST_PROJECTS,
    PROJECTS_SET_IAM_POLICY,
    ORG_POLICY_GET,
    ORG_POLICY_SET,
)

# Project permissions

GET_PROJECT = "resourcemanager.projects.get"
UPDATE_PROJECT = "resourcemanager.projects.update"
GET_PROJECT_IAM_POLICY = "resourcemanager.projects.getIamPolicy"
SET_PROJECT_IAM_POLICY = "resourcemanager.projects.setIamPolicy"
ENABLE_SERVICE = "serviceusage.services.enable"
GET_SERVICE = "serviceusage.services.get"
LIST_SERVICES = "serviceusage.services.list"
USE_SERVICE = "serviceusage.services.use"

PROJECT_PERMISSIONS: tuple[str, ...] = (
    GET_PROJECT,
    UPDATE_PROJECT,
    GET_PROJECT_IAM_POLICY,
    SET_PROJECT_IAM_POLICY,
    ENABLE_SERVICE,
    GET_SERVICE,
    LIST_SERVICES,
    USE_SERVICE,
)

# Roles

OWNER = "roles/owner"
ORGANIZATION_VIEWER = "roles/resourcemanager.organizationViewer"
PROJECT_CREATOR = "roles/resourcemanager.projectCreator"
BILLING_VIEWER = "roles/billing.viewer"
SERVICE_USAGE_ADMIN = "roles/serviceusage.serviceUsageAdmin"

# Permission -> roles that cover it, per scope. The
# organization and project scopes grant roles/owner for any gap.
DEFAULT_ROLE_TABLE: MappingProxyType[ScopeKind, MappingProxyType[str, tuple[str, ...]]] = (
    MappingProxyType({
        ScopeKind.GLOBAL: MappingProxyType({
            LIST_ORGANIZATIONS: (ORGANIZATION_VIEWER,),
            LIST_FOLDERS: (ORGANIZATION_VIEWER,),
            CREATE_PROJECT: (PROJECT_CREATOR,),
            LIST_BILLING_ACCOUNTS: (BILLING_VIEWER,),
        }),
        ScopeKind.ORGANIZATION: MappingProxyType({
            permission: (OWNER,) for permission in ORGANIZATION_PERMISSIONS
        }),
        ScopeKind.PROJECT: MappingProxyType({
            permission: (OWNER, SERVICE_USAGE_ADMIN) for permission in PROJECT_PERMISSIONS
        }),
    })
)


def global_scope(organization_id: str) -> AuthorizationScope:
    """Account-wide capabilities; grants land on the organization."""
    return AuthorizationScope(
        kind=ScopeKind.GLOBAL,
        resource=f"organizations/{organization_id}",
        required=GLOBAL_PERMISSIONS,
        critical=frozenset(),
    )


def organization_scope(organization_id: str) -> AuthorizationScope:
    return AuthorizationScope(
        kind=ScopeKind.ORGANIZATION,
        resource=f"organizations/{organization_id}",
        required=ORGANIZATION_PERMISSIONS,
        critical=frozenset({PROJECTS_SET_IAM_POLICY}),
    )


def project_scope(project_id: str) -> AuthorizationScope:
    return AuthorizationScope(
        kind=ScopeKind.PROJECT,
        resource=f"projects/{project_id}",
        required=PROJECT_PERMISSIONS,
        critical=frozenset(PROJECT_PERMISSIONS),
    )


def scope_for(kind: ScopeKind | str, *, organization_id: str, project_id: str) -> AuthorizationScope:
    """Build the standard scope of ``kind`` for the given ids."""
    kind = ScopeKind(kind)
    if kind is ScopeKind.GLOBAL:
        return global_scope(organization_id)
    if kind is ScopeKind.ORGANIZATION:
        return organization_scope(organization_id)
    return project_scope(project_id)
