"""Keeps required services allowed by the organization's service constraint."""

from __future__ import annotations

import logging

from setupauth.config import Config
from setupauth.exceptions import (
    PermissionEscalationError,
    PolicyConflictError,
    StalePolicyTokenError,
)
from setupauth.gateway.base import ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind
from setupauth.iam.constants import ORG_POLICY_GET, ORG_POLICY_SET
from setupauth.iam.model import AuthorizationScope, ScopeKind
from setupauth.orgpolicy.model import ConstraintPolicy, evaluate, is_allowed
from setupauth.propagation import PropagationWaiter
from setupauth.results import PatchOutcome

logger = logging.getLogger(__name__)

SERVICE_USAGE_CONSTRAINT = "constraints/serviceuser.services"


class PolicyPatcher:
    """Edits the organization-level constraint policy, one service at a time."""

    def __init__(
        self,
        gateway: ResourceGateway,
        organization_id: str,
        *,
        constraint: str = SERVICE_USAGE_CONSTRAINT,
        waiter: PropagationWaiter | None = None,
        verify_after_write: bool = True,
        max_stale_token_retries: int = 3,
    ) -> None:
        self._gateway = gateway
        self._organization_id = organization_id
        self._constraint = constraint
        self._waiter = waiter or PropagationWaiter()
        self._verify = verify_after_write
        self._max_stale = max(1, int(max_stale_token_retries))

    @classmethod
    def from_config(
        cls,
        gateway: ResourceGateway,
        config: Config,
        *,
        waiter: PropagationWaiter | None = None,
    ) -> PolicyPatcher:
        return cls(
            gateway,
            config.gcp.organization_id,
            constraint=config.orgpolicy.constraint,
            waiter=waiter or PropagationWaiter.from_config(config.propagation),
            verify_after_write=config.orgpolicy.verify_after_write,
            max_stale_token_retries=config.reconcile.max_stale_token_retries,
        )

    @property
    def resource(self) -> str:
        return f"organizations/{self._organization_id}"

    async def ensure_service_allowed(self, service: str) -> PatchOutcome:
        """Make sure ``service`` is allowed by the constraint.

        Raises ``PolicyConflictError`` for a deny-all rule and
        ``PermissionEscalationError`` when the policy cannot be written.
        """
        for attempt in range(1, self._max_stale + 1):
            policy = await self._fetch()
            if policy is None:
                logger.debug(
                    "No %s policy on %s; %s allowed by default",
                    self._constraint, self.resource, service,
                )
                return PatchOutcome(service, allowed=True, reason="no policy")

            result = evaluate(policy, service)
            if not result.allowed:
                raise PolicyConflictError(
                    f"Service {service} is blocked by a deny-all rule in "
                    f"{self._constraint} on {self.resource}.",
                    remedy=(
                        f"Ask an organization policy administrator to allow {service} "
                        f"in {self._constraint} on {self.resource}."
                    ),
                )
            if not result.changed:
                logger.info("Service %s is allowed by %s", service, self._constraint)
                return PatchOutcome(service, allowed=True, reason="already allowed")

            await self._require_set_permission(service)
            logger.info(
                "Updating %s on %s to allow %s (etag %s)",
                self._constraint, self.resource, service, policy.etag or "-",
            )
            try:
                await self._gateway.set_constraint_policy(self._organization_id, result.policy)
            except ApiError as e:
                if e.kind is ErrorKind.STALE_TOKEN:
                    logger.info(
                        "%s changed concurrently (attempt %d/%d); re-reading",
                        self._constraint, attempt, self._max_stale,
                    )
                    continue
                if e.kind is ErrorKind.PERMISSION_DENIED:
                    raise PermissionEscalationError(
                        f"Writing {self._constraint} on {self.resource} was denied: {e}",
                        permission=ORG_POLICY_SET,
                        scope=self.resource,
                    ) from e
                raise

            if self._verify:
                await self._waiter.wait(
                    lambda: self._allowed_now(service),
                    description=f"{self._constraint} change allowing {service}",
                )
            return PatchOutcome(service, allowed=True, changed=True, reason="policy updated")

        raise StalePolicyTokenError(
            f"Gave up updating {self._constraint} on {self.resource} after "
            f"{self._max_stale} concurrent modification(s)."
        )

    async def _fetch(self) -> ConstraintPolicy | None:
        try:
            return await self._gateway.get_constraint_policy(
                self._organization_id, self._constraint,
            )
        except ApiError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            if e.kind is ErrorKind.INVALID_ARGUMENT and self._constraint == SERVICE_USAGE_CONSTRAINT:
                # The API answers INVALID_ARGUMENT for this constraint when no
                # organization-level policy exists.
                logger.warning(
                    "INVALID_ARGUMENT reading %s on %s; treating as no policy",
                    self._constraint, self.resource,
                )
                return None
            if e.kind is ErrorKind.PERMISSION_DENIED:
                raise PermissionEscalationError(
                    f"Reading {self._constraint} on {self.resource} was denied: {e}",
                    permission=ORG_POLICY_GET,
                    scope=self.resource,
                ) from e
            raise

    async def _require_set_permission(self, service: str) -> None:
        scope = AuthorizationScope(
            kind=ScopeKind.ORGANIZATION,
            resource=self.resource,
            required=(ORG_POLICY_SET,),
        )
        try:
            granted = await self._gateway.test_permissions(scope, scope.required)
        except ApiError as e:
            if e.kind is not ErrorKind.PERMISSION_DENIED:
                raise
            granted = set()
        if ORG_POLICY_SET not in granted:
            raise PermissionEscalationError(
                f"Cannot modify {self._constraint} to allow {service}: "
                f"'{ORG_POLICY_SET}' is missing on {self.resource}.",
                permission=ORG_POLICY_SET,
                scope=self.resource,
            )

    async def _allowed_now(self, service: str) -> bool:
        return is_allowed(await self._fetch(), service)
