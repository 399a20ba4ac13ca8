"""Permission reconciler.

Tests which required permissions the principal lacks at a scope, grants
the roles that cover them with one read-modify-write of the scope's IAM
policy, then waits until the grant is observable.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from setupauth.exceptions import (
    PermissionEscalationError,
    PropagationTimeoutError,
    SetupAuthError,
    StalePolicyTokenError,
)
from setupauth.gateway.base import ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind, translate
from setupauth.iam.constants import DEFAULT_ROLE_TABLE
from setupauth.iam.model import AuthorizationScope, ScopeKind
from setupauth.identity import IdentityProvider, Principal
from setupauth.propagation import PropagationWaiter
from setupauth.results import ReconciliationResult

logger = logging.getLogger(__name__)

RoleTable = Mapping[ScopeKind, Mapping[str, Sequence[str]]]


class PermissionReconciler:
    """Closes permission gaps for one principal, scope by scope.

    Holds no policy state between calls. Build with ``create`` so the
    principal is resolved exactly once.
    """

    def __init__(
        self,
        gateway: ResourceGateway,
        principal: Principal,
        *,
        waiter: PropagationWaiter | None = None,
        max_stale_token_retries: int = 3,
        role_table: RoleTable | None = None,
    ) -> None:
        self._gateway = gateway
        self._principal = principal
        self._waiter = waiter or PropagationWaiter()
        self._max_stale = max(1, int(max_stale_token_retries))
        self._roles = role_table if role_table is not None else DEFAULT_ROLE_TABLE

    @classmethod
    async def create(
        cls,
        gateway: ResourceGateway,
        identity: IdentityProvider,
        *,
        trusted_domain: str,
        waiter: PropagationWaiter | None = None,
        max_stale_token_retries: int = 3,
        role_table: RoleTable | None = None,
    ) -> PermissionReconciler:
        principal = await identity.resolve_principal(trusted_domain)
        return cls(
            gateway,
            principal,
            waiter=waiter,
            max_stale_token_retries=max_stale_token_retries,
            role_table=role_table,
        )

    @property
    def principal(self) -> Principal:
        return self._principal

    async def check_permissions(self, scope: AuthorizationScope) -> tuple[str, ...]:
        """Return the required permissions the principal lacks, in order."""
        try:
            granted = await self._gateway.test_permissions(scope, scope.required)
        except ApiError as e:
            if e.kind is not ErrorKind.PERMISSION_DENIED:
                raise
            # The caller cannot even test permissions here.
            logger.debug("Permission test denied on %s: %s", scope.label, e)
            granted = set()
        return tuple(p for p in scope.required if p not in granted)

    async def ensure_permissions(self, scope: AuthorizationScope) -> ReconciliationResult:
        """Grant whatever is missing at ``scope``.

        Raises ``PermissionEscalationError`` when a critical permission is
        still missing after one full grant-and-wait cycle.
        """
        missing = await self.check_permissions(scope)
        if not missing:
            logger.info("All required permissions present on %s", scope.label)
            return ReconciliationResult(scope=scope.label)

        logger.info(
            "%s is missing %d permission(s) on %s: %s",
            self._principal.email, len(missing), scope.label, ", ".join(missing),
        )
        roles, unmapped = self._roles_for(scope, missing)
        if unmapped:
            logger.warning(
                "No role mapping for %s on %s; these cannot be granted automatically",
                ", ".join(unmapped), scope.label,
            )

        added: tuple[str, ...] = ()
        writes = 0
        if roles:
            added, writes = await self._grant(scope, roles)

        covered = tuple(p for p in missing if p not in unmapped)
        outstanding = tuple(unmapped)
        if covered:
            try:
                await self._waiter.wait(
                    lambda: self._granted(scope, covered),
                    description=f"IAM roles for {self._principal.email} on {scope.label}",
                )
            except PropagationTimeoutError:
                outstanding = await self.check_permissions(scope)

        for permission in outstanding:
            if scope.is_critical(permission):
                raise PermissionEscalationError(
                    f"{self._principal.email} still lacks critical permission "
                    f"'{permission}' on {scope.label} after granting "
                    f"{', '.join(roles) or 'no roles'}.",
                    permission=permission,
                    scope=scope.resource,
                )
        if outstanding:
            logger.warning(
                "Continuing without non-critical permission(s) on %s: %s",
                scope.label, ", ".join(outstanding),
            )

        return ReconciliationResult(
            scope=scope.label,
            missing_before=missing,
            granted_roles=added,
            outstanding=outstanding,
            unmapped=unmapped,
            policy_writes=writes,
        )

    async def reconcile(self, scope: AuthorizationScope) -> ReconciliationResult:
        """Like ``ensure_permissions`` but returns expected failures as a result."""
        try:
            return await self.ensure_permissions(scope)
        except SetupAuthError as e:
            return ReconciliationResult(scope=scope.label, ok=False, error=e)
        except ApiError as e:
            translated = translate(e)
            if translated is None:
                raise
            return ReconciliationResult(scope=scope.label, ok=False, error=translated)

    def _roles_for(
        self, scope: AuthorizationScope, missing: Sequence[str],
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        table = self._roles.get(scope.kind, {})
        roles: list[str] = []
        unmapped: list[str] = []
        for permission in missing:
            covering = table.get(permission)
            if not covering:
                unmapped.append(permission)
                continue
            for role in covering:
                if role not in roles:
                    roles.append(role)
        return tuple(roles), tuple(unmapped)

    async def _granted(self, scope: AuthorizationScope, permissions: Sequence[str]) -> bool:
        missing = await self.check_permissions(scope)
        return not any(p in missing for p in permissions)

    async def _grant(
        self, scope: AuthorizationScope, roles: Sequence[str],
    ) -> tuple[tuple[str, ...], int]:
        """Read-modify-write the scope policy. Returns (roles added, writes)."""
        member = self._principal.member
        for attempt in range(1, self._max_stale + 1):
            try:
                policy = await self._gateway.get_policy(scope)
            except ApiError as e:
                if e.kind is ErrorKind.PERMISSION_DENIED:
                    raise PermissionEscalationError(
                        f"Cannot read the IAM policy of {scope.label}: {e}",
                        permission=scope.get_policy_permission,
                        scope=scope.resource,
                    ) from e
                raise

            updated = policy
            added: list[str] = []
            for role in roles:
                if not updated.has_member(role, member):
                    updated = updated.with_member(role, member)
                    added.append(role)
            if not added:
                logger.info(
                    "%s already holds %s on %s; no policy change needed",
                    member, ", ".join(roles), scope.label,
                )
                return (), 0

            try:
                await self._gateway.set_policy(scope, updated)
            except ApiError as e:
                if e.kind is ErrorKind.STALE_TOKEN:
                    logger.info(
                        "IAM policy of %s changed concurrently (attempt %d/%d); re-reading",
                        scope.label, attempt, self._max_stale,
                    )
                    continue
                if e.kind is ErrorKind.PERMISSION_DENIED:
                    raise PermissionEscalationError(
                        f"{self._principal.email} may not change the IAM policy "
                        f"of {scope.label}: {e}",
                        permission=scope.set_policy_permission,
                        scope=scope.resource,
                    ) from e
                raise

            logger.info("Granted %s to %s on %s", ", ".join(added), member, scope.label)
            return tuple(added), 1

        raise StalePolicyTokenError(
            f"Gave up updating the IAM policy of {scope.label} after "
            f"{self._max_stale} concurrent modification(s)."
        )
