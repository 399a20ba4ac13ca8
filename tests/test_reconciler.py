"""Tests for the permission reconciler."""

from __future__ import annotations

import pytest
from conftest import EMAIL, MEMBER, ORG_ID, PROJECT_ID, FakeIdentity, api_error

from setupauth.exceptions import (
    AuthenticationError,
    PermissionEscalationError,
    ReauthenticationRequired,
    StalePolicyTokenError,
)
from setupauth.gateway.errors import ErrorKind
from setupauth.iam import constants
from setupauth.iam.model import AuthorizationScope, PolicyBinding, PolicyDocument, ScopeKind
from setupauth.iam.reconciler import PermissionReconciler

EDIT = "resourcemanager.projects.update"
LIST = "serviceusage.services.list"


def _editor_scope() -> AuthorizationScope:
    return AuthorizationScope(
        kind=ScopeKind.PROJECT,
        resource=f"projects/{PROJECT_ID}",
        required=(EDIT, LIST),
        critical=frozenset({EDIT, LIST}),
    )


def _editor_table():
    return {ScopeKind.PROJECT: {EDIT: ("Editor",), LIST: ("Editor",)}}


class TestCheckPermissions:
    @pytest.mark.asyncio
    async def test_returns_missing_in_required_order(self, gateway, principal, waiter):
        org = f"organizations/{ORG_ID}"
        gateway.grant(org, constants.GET_ORGANIZATION, constants.ORG_POLICY_SET)
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        missing = await reconciler.check_permissions(constants.organization_scope(ORG_ID))

        expected = tuple(
            p for p in constants.ORGANIZATION_PERMISSIONS
            if p not in (constants.GET_ORGANIZATION, constants.ORG_POLICY_SET)
        )
        assert missing == expected

    @pytest.mark.asyncio
    async def test_repeated_checks_are_identical_and_write_nothing(
        self, gateway, principal, waiter,
    ):
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)
        for scope in (
            constants.global_scope(ORG_ID),
            constants.organization_scope(ORG_ID),
            constants.project_scope(PROJECT_ID),
        ):
            first = await reconciler.check_permissions(scope)
            second = await reconciler.check_permissions(scope)
            assert first == second
        assert gateway.set_policy_calls == []

    @pytest.mark.asyncio
    async def test_denied_permission_test_counts_everything_missing(
        self, gateway, principal, waiter,
    ):
        gateway.projects.clear()
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        missing = await reconciler.check_permissions(constants.project_scope(PROJECT_ID))

        assert missing == constants.PROJECT_PERMISSIONS

    @pytest.mark.asyncio
    async def test_other_api_errors_propagate(self, gateway, principal, waiter):
        gateway.errors["test_permissions"] = api_error(ErrorKind.UNAVAILABLE)
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        with pytest.raises(Exception, match="synthetic"):
            await reconciler.check_permissions(constants.project_scope(PROJECT_ID))


class TestEnsurePermissions:
    @pytest.mark.asyncio
    async def test_nothing_missing_means_no_policy_traffic(self, gateway, principal, waiter):
        gateway.grant_everything()
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        result = await reconciler.ensure_permissions(constants.project_scope(PROJECT_ID))

        assert result.ok
        assert result.missing_before == ()
        assert "get_policy" not in gateway.calls
        assert gateway.set_policy_calls == []

    @pytest.mark.asyncio
    async def test_editor_binding_closes_gap_with_one_write(self, gateway, principal, waiter):
        gateway.role_permissions["Editor"] = {EDIT, LIST}
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter, role_table=_editor_table(),
        )
        scope = _editor_scope()

        result = await reconciler.ensure_permissions(scope)

        assert await reconciler.check_permissions(scope) == ()
        assert len(gateway.set_policy_calls) == 1
        _, written = gateway.set_policy_calls[0]
        assert PolicyBinding(role="Editor", members=(f"user:{EMAIL}",)) in written.bindings
        assert result.granted_roles == ("Editor",)
        assert result.policy_writes == 1
        assert result.outstanding == ()

    @pytest.mark.asyncio
    async def test_second_call_performs_no_additional_writes(self, gateway, principal, waiter):
        gateway.role_permissions["Editor"] = {EDIT, LIST}
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter, role_table=_editor_table(),
        )
        scope = _editor_scope()

        await reconciler.ensure_permissions(scope)
        second = await reconciler.ensure_permissions(scope)

        assert len(gateway.set_policy_calls) == 1
        assert second.policy_writes == 0
        assert not second.changed

    @pytest.mark.asyncio
    async def test_existing_bindings_are_preserved(self, gateway, principal, waiter):
        gateway.role_permissions["Editor"] = {EDIT, LIST}
        gateway.policies[f"projects/{PROJECT_ID}"] = PolicyDocument(
            bindings=(
                PolicyBinding("roles/viewer", ("user:someone@example.com",)),
                PolicyBinding("Editor", ("group:devs@example.com",)),
            ),
            etag="etag-0",
        )
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter, role_table=_editor_table(),
        )

        await reconciler.ensure_permissions(_editor_scope())

        _, written = gateway.set_policy_calls[0]
        assert written.members_of("roles/viewer") == ("user:someone@example.com",)
        assert written.members_of("Editor") == ("group:devs@example.com", MEMBER)

    @pytest.mark.asyncio
    async def test_role_already_bound_skips_the_write(self, gateway, principal, waiter):
        # Editor is bound but does not confer LIST.
        gateway.policies[f"projects/{PROJECT_ID}"] = PolicyDocument(
            bindings=(PolicyBinding("Editor", (MEMBER,)),), etag="etag-0",
        )
        gateway.role_permissions["Editor"] = {EDIT}
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter, role_table=_editor_table(),
        )
        scope = AuthorizationScope(
            kind=ScopeKind.PROJECT,
            resource=f"projects/{PROJECT_ID}",
            required=(EDIT, LIST),
        )

        result = await reconciler.ensure_permissions(scope)

        assert gateway.set_policy_calls == []
        assert result.ok
        assert result.policy_writes == 0
        assert result.outstanding == (LIST,)

    @pytest.mark.asyncio
    async def test_stale_token_repeats_read_modify_write(self, gateway, principal, waiter):
        gateway.role_permissions["Editor"] = {EDIT, LIST}
        gateway.stale_writes = 2
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter, role_table=_editor_table(),
        )

        result = await reconciler.ensure_permissions(_editor_scope())

        assert len(gateway.set_policy_calls) == 3
        assert gateway.calls.count("get_policy") == 3
        assert result.policy_writes == 1

    @pytest.mark.asyncio
    async def test_stale_token_retries_are_bounded(self, gateway, principal, waiter):
        gateway.stale_writes = 10
        reconciler = PermissionReconciler(
            gateway, principal, waiter=waiter,
            max_stale_token_retries=3, role_table=_editor_table(),
        )

        with pytest.raises(StalePolicyTokenError):
            await reconciler.ensure_permissions(_editor_scope())
        assert len(gateway.set_policy_calls) == 3

    @pytest.mark.asyncio
    async def test_denied_write_names_set_iam_policy(self, gateway, principal, waiter):
        gateway.errors["set_policy"] = api_error(ErrorKind.PERMISSION_DENIED)
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)
        scope = constants.organization_scope(ORG_ID)

        with pytest.raises(PermissionEscalationError) as exc_info:
            await reconciler.ensure_permissions(scope)

        assert exc_info.value.permission == constants.SET_ORGANIZATION_IAM_POLICY
        assert exc_info.value.scope == f"organizations/{ORG_ID}"
        assert constants.SET_ORGANIZATION_IAM_POLICY in exc_info.value.remedy

    @pytest.mark.asyncio
    async def test_critical_permission_still_missing_escalates(self, gateway, principal, waiter):
        # roles/owner is granted but confers nothing, so the gap never closes.
        gateway.role_permissions[constants.OWNER] = set()
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        with pytest.raises(PermissionEscalationError) as exc_info:
            await reconciler.ensure_permissions(constants.organization_scope(ORG_ID))

        assert exc_info.value.permission == constants.PROJECTS_SET_IAM_POLICY
        assert exc_info.value.scope == f"organizations/{ORG_ID}"
        assert len(gateway.set_policy_calls) == 1

    @pytest.mark.asyncio
    async def test_non_critical_gap_is_reported_not_raised(self, gateway, principal, waiter):
        gateway.role_permissions[constants.BILLING_VIEWER] = set()
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        result = await reconciler.ensure_permissions(constants.global_scope(ORG_ID))

        assert result.ok
        assert result.outstanding == (constants.LIST_BILLING_ACCOUNTS,)
        assert set(result.granted_roles) == {
            constants.ORGANIZATION_VIEWER,
            constants.PROJECT_CREATOR,
            constants.BILLING_VIEWER,
        }

    @pytest.mark.asyncio
    async def test_unmapped_permissions_are_reported(self, gateway, principal, waiter):
        scope = AuthorizationScope(
            kind=ScopeKind.ORGANIZATION,
            resource=f"organizations/{ORG_ID}",
            required=("custom.thing.do",),
        )
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        result = await reconciler.ensure_permissions(scope)

        assert result.unmapped == ("custom.thing.do",)
        assert result.outstanding == ("custom.thing.do",)
        assert gateway.set_policy_calls == []


class TestReconcile:
    @pytest.mark.asyncio
    async def test_expected_failure_comes_back_as_result(self, gateway, principal, waiter):
        gateway.errors["set_policy"] = api_error(ErrorKind.PERMISSION_DENIED)
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        result = await reconciler.reconcile(constants.project_scope(PROJECT_ID))

        assert not result.ok
        assert isinstance(result.error, PermissionEscalationError)
        assert "FAILED" in result.summary()

    @pytest.mark.asyncio
    async def test_reauth_api_error_is_translated(self, gateway, principal, waiter):
        gateway.errors["get_policy"] = api_error(ErrorKind.REAUTH_REQUIRED)
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        result = await reconciler.reconcile(constants.project_scope(PROJECT_ID))

        assert isinstance(result.error, ReauthenticationRequired)

    @pytest.mark.asyncio
    async def test_unexpected_api_error_is_raised(self, gateway, principal, waiter):
        gateway.errors["get_policy"] = api_error(ErrorKind.UNKNOWN, "boom")
        reconciler = PermissionReconciler(gateway, principal, waiter=waiter)

        with pytest.raises(Exception, match="boom"):
            await reconciler.reconcile(constants.project_scope(PROJECT_ID))


class TestCreate:
    @pytest.mark.asyncio
    async def test_resolves_principal_once(self, gateway, waiter):
        identity = FakeIdentity()
        reconciler = await PermissionReconciler.create(
            gateway, identity, trusted_domain="example.com", waiter=waiter,
        )

        await reconciler.check_permissions(constants.project_scope(PROJECT_ID))
        await reconciler.check_permissions(constants.project_scope(PROJECT_ID))

        assert identity.calls == 1
        assert reconciler.principal.member == MEMBER

    @pytest.mark.asyncio
    async def test_rejects_untrusted_domain(self, gateway):
        with pytest.raises(AuthenticationError, match="not in the trusted domain"):
            await PermissionReconciler.create(
                gateway, FakeIdentity("eve@evil.test"), trusted_domain="example.com",
            )
