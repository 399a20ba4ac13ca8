"""Provisioning orchestrator.

Drives one run through its plan, step by step. Each step inspects the
remote target first and skips when it already matches, so a run that
failed halfway can simply be started again.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from setupauth.config import Config, validate_for_provisioning
from setupauth.events import types as events
from setupauth.events.bus import Event, EventBus
from setupauth.exceptions import (
    PermissionEscalationError,
    ProvisioningFault,
    ResourceConflictError,
    SetupAuthError,
    StateError,
    ValidationError,
)
from setupauth.gateway.base import OAuthClient, ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind, translate
from setupauth.iam import constants
from setupauth.iam.reconciler import PermissionReconciler, RoleTable
from setupauth.identity import IdentityProvider, Principal
from setupauth.orgpolicy.patcher import PolicyPatcher
from setupauth.propagation import PropagationWaiter
from setupauth.provisioning.state import (
    FULL_PLAN,
    ProvisioningState,
    ProvisioningStep,
)
from setupauth.redirects import build_redirect_uris, project_name_for
from setupauth.results import ProvisioningResult

logger = logging.getLogger(__name__)

CLIENT_ID_SUFFIX = ".apps.googleusercontent.com"
BRAND_CREATE_PERMISSION = "clientauthconfig.brands.create"
CLIENT_CREATE_PERMISSION = "iam.oauthClients.create"
EVENT_DRAIN_SECONDS = 10.0
PLATFORM_TITLES = {"vercel": "Vercel", "netlify": "Netlify", "opennext": "OpenNext"}

StepHandler = Callable[[ProvisioningState], Awaitable[bool]]


def normalize_client_id(client_id: str) -> str:
    """Strip the ``.apps.googleusercontent.com`` suffix if present."""
    return client_id.strip().removesuffix(CLIENT_ID_SUFFIX)


def default_client_id(config: Config) -> str:
    """A stable client id so re-runs find the client they created."""
    base = f"{project_name_for(config.oauth)}-{config.oauth.platform}-web"
    slug = re.sub(r"[^a-z0-9-]+", "-", base.lower()).strip("-")
    if not slug or not slug[0].isalpha():
        slug = f"oauth-{slug}"
    return slug[:63].rstrip("-")


class ProvisioningOrchestrator:
    """Runs the provisioning steps for one configuration."""

    def __init__(
        self,
        config: Config,
        gateway: ResourceGateway,
        identity: IdentityProvider,
        *,
        waiter: PropagationWaiter | None = None,
        patcher: PolicyPatcher | None = None,
        role_table: RoleTable | None = None,
        event_bus: EventBus | None = None,
        run_id: str = "",
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._identity = identity
        self._waiter = waiter or PropagationWaiter.from_config(config.propagation)
        self._patcher = patcher or PolicyPatcher.from_config(
            gateway, config, waiter=self._waiter,
        )
        self._role_table = role_table
        self._events = event_bus or EventBus()
        self._run_id = run_id or uuid.uuid4().hex[:12]
        self._handlers: dict[ProvisioningStep, StepHandler] = {
            ProvisioningStep.VALIDATING_PRINCIPAL: self._validate_principal,
            ProvisioningStep.ENFORCING_POLICY: self._enforce_policy,
            ProvisioningStep.RECONCILING_PERMISSIONS: self._reconcile_permissions,
            ProvisioningStep.ENABLING_SERVICES: self._enable_services,
            ProvisioningStep.ENSURING_CONSENT_SCREEN: self._ensure_consent_screen,
            ProvisioningStep.ENSURING_CREDENTIALS: self._ensure_credentials,
            ProvisioningStep.WIRING_REDIRECT_URIS: self._wire_redirect_uris,
        }

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def project_id(self) -> str:
        return self._config.gcp.project_id

    @property
    def required_services(self) -> tuple[str, ...]:
        return tuple(self._config.gcp.required_services) or constants.REQUIRED_SERVICES

    async def run(
        self,
        plan: tuple[ProvisioningStep, ...] = FULL_PLAN,
        state: ProvisioningState | None = None,
    ) -> ProvisioningResult:
        """Execute ``plan`` to DONE or FAILED.

        Expected failures are returned as a failed result; anything else
        is raised as ``ProvisioningFault`` with the cause chained. Async
        event subscribers have finished by the time this returns.
        """
        try:
            return await self._run(plan, state)
        finally:
            await self._events.drain(timeout=EVENT_DRAIN_SECONDS)

    async def _run(
        self,
        plan: tuple[ProvisioningStep, ...],
        state: ProvisioningState | None,
    ) -> ProvisioningResult:
        if state is None:
            state = ProvisioningState(plan=plan)
        elif state.step is ProvisioningStep.IDLE:
            state.plan = plan
        self._emit(events.RUN_STARTED, plan=[s.value for s in state.plan])
        try:
            for step in state.plan:
                state.advance(step)
                self._emit(events.STEP_STARTED, step=step.value)
                changed = await self._handlers[step](state)
                self._emit(
                    events.STEP_COMPLETED if changed else events.STEP_SKIPPED,
                    step=step.value,
                )
            state.advance(ProvisioningStep.DONE)
        except SetupAuthError as e:
            self._fail(state, e)
            return self._result(state)
        except ApiError as e:
            translated = translate(e)
            if translated is None:
                raise self._fault(state, e) from e
            translated.__cause__ = e
            self._fail(state, translated)
            return self._result(state)
        except Exception as e:
            raise self._fault(state, e) from e

        logger.info("Provisioning run %s completed", self._run_id)
        self._emit(events.RUN_COMPLETED, client_id=state.client_id)
        return self._result(state)

    # -- steps --

    async def _validate_principal(self, state: ProvisioningState) -> bool:
        if ProvisioningStep.ENFORCING_POLICY in state.plan:
            validate_for_provisioning(self._config)
        else:
            self._validate_for_redirects()
        state.principal = await self._identity.resolve_principal(
            self._config.gcp.trusted_domain,
        )
        return True

    async def _enforce_policy(self, state: ProvisioningState) -> bool:
        changed = False
        for service in self.required_services:
            if service in constants.PUBLIC_SERVICES:
                continue
            outcome = await self._patcher.ensure_service_allowed(service)
            if outcome.changed:
                changed = True
                self._emit(events.POLICY_UPDATED, service=service)
        return changed

    async def _reconcile_permissions(self, state: ProvisioningState) -> bool:
        reconciler = PermissionReconciler(
            self._gateway,
            self._require_principal(state),
            waiter=self._waiter,
            max_stale_token_retries=self._config.reconcile.max_stale_token_retries,
            role_table=self._role_table,
        )
        org_id = self._config.gcp.organization_id
        changed = False

        # Global permissions are nice to have; a failure here is not fatal.
        result = await reconciler.reconcile(constants.global_scope(org_id))
        if not result.ok:
            logger.warning("Global permission reconciliation failed: %s", result.error)
        state.reconciliations.append(result)
        changed |= result.changed

        result = await reconciler.ensure_permissions(constants.organization_scope(org_id))
        state.reconciliations.append(result)
        changed |= result.changed

        changed |= await self._ensure_project()

        result = await reconciler.ensure_permissions(constants.project_scope(self.project_id))
        state.reconciliations.append(result)
        changed |= result.changed

        for entry in state.reconciliations:
            if entry.granted_roles:
                self._emit(events.ROLES_GRANTED, scope=entry.scope, roles=list(entry.granted_roles))
        return changed

    async def _ensure_project(self) -> bool:
        project_id = self.project_id
        if await self._gateway.project_exists(project_id):
            return await self._ensure_attached(project_id)
        org_id = self._config.gcp.organization_id
        logger.info("Project %s not found; creating it under organizations/%s", project_id, org_id)
        try:
            await self._gateway.create_project(project_id, org_id)
        except ApiError as e:
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise PermissionEscalationError(
                    f"Creating project {project_id} was denied: {e}",
                    permission=constants.CREATE_PROJECT,
                    scope=self._config.organization_resource,
                ) from e
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            if not await self._gateway.project_exists(project_id):
                raise ResourceConflictError(
                    f"Project id {project_id} is already taken by a project "
                    "you cannot see.",
                    remedy="Choose a different GCP project id and re-run.",
                ) from e
            await self._ensure_attached(project_id)
            return True
        await self._waiter.wait(
            lambda: self._gateway.project_exists(project_id),
            description=f"project {project_id}",
        )
        return True

    async def _ensure_attached(self, project_id: str) -> bool:
        """Keep an existing project inside the configured organization.

        A project with no organization is moved in; one that belongs to a
        different organization is rejected.
        """
        org = self._config.organization_resource
        current = await self._gateway.get_project_organization(project_id)
        if current == org:
            return False
        if current:
            raise ValidationError(
                f"Project {project_id} belongs to {current}, not {org}.",
                remedy=(
                    "Pick a project inside the configured organization or set "
                    "GCP_ORGANIZATION_ID to the project's organization."
                ),
            )

        logger.info("Project %s has no organization; moving it under %s", project_id, org)
        try:
            await self._gateway.move_project(project_id, self._config.gcp.organization_id)
        except ApiError as e:
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise PermissionEscalationError(
                    f"Moving project {project_id} into {org} was denied: {e}",
                    permission=constants.UPDATE_PROJECT,
                    scope=self._config.project_resource,
                ) from e
            raise

        async def attached() -> bool:
            return await self._gateway.get_project_organization(project_id) == org

        await self._waiter.wait(attached, description=f"project {project_id} move into {org}")
        self._emit(events.PROJECT_MOVED, project_id=project_id, organization=org)
        return True

    async def _enable_services(self, state: ProvisioningState) -> bool:
        project_id = self.project_id
        wanted = [s for s in self.required_services if s not in constants.PUBLIC_SERVICES]
        enabled = await self._gateway.list_enabled_services(project_id)
        missing = [s for s in wanted if s not in enabled]
        if not missing:
            state.enabled_services = sorted(enabled)
            logger.info("All %d required services already enabled", len(wanted))
            return False

        for service in missing:
            logger.info("Enabling %s on %s", service, project_id)
            try:
                await self._gateway.enable_service(project_id, service)
            except ApiError as e:
                if e.kind is ErrorKind.ALREADY_EXISTS:
                    logger.info("%s was already enabled", service)
                    continue
                if e.kind is ErrorKind.PERMISSION_DENIED:
                    raise PermissionEscalationError(
                        f"Enabling {service} on project {project_id} was denied: {e}",
                        permission=constants.ENABLE_SERVICE,
                        scope=self._config.project_resource,
                    ) from e
                raise
            self._emit(events.SERVICE_ENABLED, service=service)

        async def all_enabled() -> bool:
            current = await self._gateway.list_enabled_services(project_id)
            state.enabled_services = sorted(current)
            return all(s in current for s in wanted)

        await self._waiter.wait(all_enabled, description=f"services on {project_id}")
        return True

    async def _ensure_consent_screen(self, state: ProvisioningState) -> bool:
        project_id = self.project_id
        brand = await self._gateway.get_brand(project_id)
        if brand is not None:
            logger.info("Reusing consent screen %s", brand.name)
            state.consent_screen = brand.name
            return False

        principal = self._require_principal(state)
        title = self._config.oauth.brand_name
        support_email = self._config.oauth.support_email or principal.email
        try:
            brand = await self._gateway.create_brand(project_id, title, support_email)
        except ApiError as e:
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise PermissionEscalationError(
                    f"Creating the OAuth consent screen on {project_id} was denied: {e}",
                    permission=BRAND_CREATE_PERMISSION,
                    scope=self._config.project_resource,
                ) from e
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            brand = await self._gateway.get_brand(project_id)
            if brand is None:
                raise ResourceConflictError(
                    f"A consent screen exists on {project_id} but cannot be read."
                ) from e
        logger.info("Consent screen %s (%s) ready", brand.name, brand.application_title)
        state.consent_screen = brand.name
        return True

    async def _ensure_credentials(self, state: ProvisioningState) -> bool:
        project_id = self.project_id
        oauth = self._config.oauth
        client_id = normalize_client_id(oauth.client_id) or default_client_id(self._config)

        client = await self._gateway.get_client(project_id, client_id)
        created = False
        if client is None:
            client = await self._create_client(project_id, client_id)
            created = True
        else:
            logger.info("Reusing OAuth client %s", client.client_id)
        state.client_id = client.client_id
        state.redirect_uris = list(client.redirect_uris)

        if oauth.client_secret and not created:
            state.client_secret = oauth.client_secret
            return False

        await self._rotate_credentials(state, project_id, client.client_id)
        return True

    async def _create_client(self, project_id: str, client_id: str) -> OAuthClient:
        platform = self._config.oauth.platform
        display_name = f"{PLATFORM_TITLES.get(platform, platform.title())} OAuth Client"
        redirect_uris = build_redirect_uris(self._config.oauth)
        logger.info("Creating OAuth client %s (%s)", client_id, display_name)
        try:
            return await self._gateway.create_client(
                project_id, client_id, display_name, redirect_uris,
            )
        except ApiError as e:
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise PermissionEscalationError(
                    f"Creating OAuth client {client_id} was denied: {e}",
                    permission=CLIENT_CREATE_PERMISSION,
                    scope=self._config.project_resource,
                ) from e
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            client = await self._gateway.get_client(project_id, client_id)
            if client is None:
                raise ResourceConflictError(
                    f"OAuth client {client_id} exists but cannot be read."
                ) from e
            return client

    async def _rotate_credentials(
        self, state: ProvisioningState, project_id: str, client_id: str,
    ) -> None:
        """Leave exactly one fresh key on the client.

        Existing keys are deleted first; a key that cannot be deleted is
        logged and skipped.
        """
        keys = await self._gateway.list_client_keys(project_id, client_id)
        for key in keys:
            try:
                await self._gateway.delete_client_key(project_id, client_id, key.key_id)
                logger.info("Deleted credential %s of %s", key.key_id, client_id)
            except ApiError as e:
                if e.kind is ErrorKind.REAUTH_REQUIRED:
                    raise
                logger.warning(
                    "Could not delete credential %s of %s: %s", key.key_id, client_id, e,
                )

        key_id = f"key-{datetime.now():%Y%m%d%H%M%S}"
        key = await self._gateway.create_client_key(project_id, client_id, key_id)
        state.credential_id = key.key_id
        state.client_secret = key.secret
        logger.info("Created credential %s for %s", key.key_id, client_id)
        self._emit(events.CREDENTIAL_ROTATED, client_id=client_id, credential_id=key.key_id)

    async def _wire_redirect_uris(self, state: ProvisioningState) -> bool:
        project_id = self.project_id
        client_id = state.client_id or normalize_client_id(self._config.oauth.client_id)
        if not client_id:
            raise ValidationError(
                "No OAuth client id. Set GCP_OAUTH_CLIENT_ID or run gcp-setup-oauth first."
            )
        client = await self._gateway.get_client(project_id, client_id)
        if client is None:
            raise ValidationError(
                f"OAuth client {client_id} was not found in project {project_id}."
            )
        state.client_id = client.client_id

        desired = build_redirect_uris(self._config.oauth)
        current = list(client.redirect_uris)
        missing = [uri for uri in desired if uri not in current]
        if not missing:
            logger.info("All %d redirect URIs already configured", len(desired))
            state.redirect_uris = current
            return False

        for uri in missing:
            logger.info("Adding redirect URI %s", uri)
        updated = await self._gateway.update_client_redirect_uris(
            project_id, client_id, current + missing,
        )
        state.redirect_uris = list(updated.redirect_uris)
        return True

    # -- helpers --

    def _require_principal(self, state: ProvisioningState) -> Principal:
        if state.principal is None:
            raise StateError(f"No validated principal at step {state.step}.")
        return state.principal

    def _validate_for_redirects(self) -> None:
        if not self._config.gcp.project_id:
            raise ValidationError(
                "GCP Project ID must be provided via --gcp-oauth-project-id "
                "or GCP_PROJECT_ID env var."
            )
        if not self._config.oauth.platform:
            raise ValidationError("Platform is not set. Pass --platform or set PLATFORM.")
        if not self._config.gcp.trusted_domain:
            raise ValidationError(
                "Missing required trusted domain. Set EKG_ORG_PRIMARY_DOMAIN."
            )

    def _fail(self, state: ProvisioningState, error: SetupAuthError) -> None:
        step = state.step
        logger.error("Provisioning failed during %s: %s", step, error)
        if not state.terminal:
            state.fail(error)
        self._emit(
            events.RUN_FAILED, step=step.value, error=str(error), remedy=error.remedy,
        )

    def _fault(self, state: ProvisioningState, error: BaseException) -> ProvisioningFault:
        step = state.step
        fault = ProvisioningFault(f"Unexpected failure during {step}: {error}")
        fault.__cause__ = error
        if not state.terminal:
            state.fail(fault)
        self._emit(events.RUN_FAILED, step=step.value, error=str(fault), remedy=fault.remedy)
        return fault

    def _result(self, state: ProvisioningState) -> ProvisioningResult:
        error = state.error if isinstance(state.error, SetupAuthError) else None
        return ProvisioningResult(
            ok=state.step is ProvisioningStep.DONE,
            final_step=state.step.value,
            failed_step=state.failed_step.value if state.failed_step else "",
            error=error,
            client_id=state.client_id,
            client_secret=state.client_secret,
            consent_screen=state.consent_screen,
            redirect_uris=list(state.redirect_uris),
            enabled_services=list(state.enabled_services),
            reconciliations=list(state.reconciliations),
        )

    def _emit(self, event_type: str, **data) -> None:
        self._events.emit(Event(event_type=event_type, run_id=self._run_id, data=data))
