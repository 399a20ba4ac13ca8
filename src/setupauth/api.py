"""Programmatic entry points.

Each function takes a ``Config`` and optional collaborators. When no
gateway or identity is given, credentials come from the gcloud CLI and
the REST gateway is used.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from setupauth.config import Config
from setupauth.events.bus import EventBus
from setupauth.exceptions import SetupAuthError
from setupauth.gateway.base import ResourceGateway
from setupauth.gateway.errors import ApiError, translate
from setupauth.gateway.http import GcpRestGateway
from setupauth.iam.constants import scope_for
from setupauth.iam.model import AuthorizationScope, ScopeKind
from setupauth.iam.reconciler import PermissionReconciler
from setupauth.identity import GcloudTokenSource, IdentityProvider, TokenInfoIdentity
from setupauth.propagation import PropagationWaiter
from setupauth.provisioning.orchestrator import ProvisioningOrchestrator
from setupauth.provisioning.state import FULL_PLAN, REDIRECT_PLAN, ProvisioningState
from setupauth.results import ProvisioningResult, ReconciliationResult


@asynccontextmanager
async def _collaborators(
    config: Config,
    gateway: ResourceGateway | None,
    identity: IdentityProvider | None,
) -> AsyncIterator[tuple[ResourceGateway, IdentityProvider]]:
    tokens = GcloudTokenSource()
    owned = gateway is None
    gateway = gateway or GcpRestGateway.from_config(config, tokens)
    identity = identity or TokenInfoIdentity(tokens)
    try:
        yield gateway, identity
    finally:
        if owned:
            await gateway.aclose()


def _resolve_scope(scope: AuthorizationScope | ScopeKind | str, config: Config) -> AuthorizationScope:
    if isinstance(scope, AuthorizationScope):
        return scope
    return scope_for(
        scope,
        organization_id=config.gcp.organization_id,
        project_id=config.gcp.project_id,
    )


async def provision(
    config: Config,
    *,
    gateway: ResourceGateway | None = None,
    identity: IdentityProvider | None = None,
    event_bus: EventBus | None = None,
    state: ProvisioningState | None = None,
) -> ProvisioningResult:
    """Run the full OAuth provisioning workflow."""
    async with _collaborators(config, gateway, identity) as (gw, ident):
        orchestrator = ProvisioningOrchestrator(config, gw, ident, event_bus=event_bus)
        return await orchestrator.run(FULL_PLAN, state)


async def update_redirect_uris(
    config: Config,
    *,
    gateway: ResourceGateway | None = None,
    identity: IdentityProvider | None = None,
    event_bus: EventBus | None = None,
    state: ProvisioningState | None = None,
) -> ProvisioningResult:
    """Add any missing redirect URIs to the configured OAuth client."""
    async with _collaborators(config, gateway, identity) as (gw, ident):
        orchestrator = ProvisioningOrchestrator(config, gw, ident, event_bus=event_bus)
        return await orchestrator.run(REDIRECT_PLAN, state)


async def _reconciler(
    config: Config,
    gateway: ResourceGateway,
    identity: IdentityProvider,
) -> PermissionReconciler:
    return await PermissionReconciler.create(
        gateway,
        identity,
        trusted_domain=config.gcp.trusted_domain,
        waiter=PropagationWaiter.from_config(config.propagation),
        max_stale_token_retries=config.reconcile.max_stale_token_retries,
    )


async def reconcile(
    scope: AuthorizationScope | ScopeKind | str,
    config: Config,
    *,
    gateway: ResourceGateway | None = None,
    identity: IdentityProvider | None = None,
) -> ReconciliationResult:
    """Grant what is missing at one scope; expected failures come back as a result."""
    resolved = _resolve_scope(scope, config)
    async with _collaborators(config, gateway, identity) as (gw, ident):
        try:
            reconciler = await _reconciler(config, gw, ident)
        except SetupAuthError as e:
            return ReconciliationResult(scope=resolved.label, ok=False, error=e)
        except ApiError as e:
            translated = translate(e)
            if translated is None:
                raise
            return ReconciliationResult(scope=resolved.label, ok=False, error=translated)
        return await reconciler.reconcile(resolved)


async def check_permissions(
    scope: AuthorizationScope | ScopeKind | str,
    config: Config,
    *,
    gateway: ResourceGateway | None = None,
    identity: IdentityProvider | None = None,
) -> tuple[str, ...]:
    """Return the permissions missing at one scope without changing anything."""
    resolved = _resolve_scope(scope, config)
    async with _collaborators(config, gateway, identity) as (gw, ident):
        reconciler = await _reconciler(config, gw, ident)
        return await reconciler.check_permissions(resolved)
