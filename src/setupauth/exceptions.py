"""setup-auth exception hierarchy.

Provides a structured exception tree so callers can tell expected,
actionable failures (bad input, missing permissions, policy conflicts)
apart from faults that should surface with their full cause chain.

Every error carries a ``remedy``: the action an operator should take.
"""

from __future__ import annotations


class SetupAuthError(Exception):
    """Base for all setup-auth exceptions."""

    default_remedy = "Check your GCP permissions and configuration."

    def __init__(self, message: str, *, remedy: str = "") -> None:
        super().__init__(message)
        self.remedy = remedy or self.default_remedy


class ValidationError(SetupAuthError):
    """Bad input. Never retried."""

    default_remedy = "Fix the option or environment variable named above."


class StateError(SetupAuthError):
    """Illegal provisioning state transition."""


class AuthenticationError(SetupAuthError):
    """The acting principal is invalid, untrusted, or stale."""

    default_remedy = (
        "Run 'gcloud auth login' and 'gcloud auth application-default login' "
        "with an account from the trusted organization domain."
    )


class ReauthenticationRequired(AuthenticationError):
    """Credentials exist but the provider demands a fresh login."""

    default_remedy = (
        "Your credentials are expired or need re-authentication. Run "
        "'gcloud auth login' and 'gcloud auth application-default login', "
        "then re-run this command. See https://support.google.com/a/answer/9368756"
    )


class PermissionEscalationError(SetupAuthError):
    """A required permission is missing and could not be granted."""

    def __init__(
        self,
        message: str,
        *,
        permission: str,
        scope: str,
        grantor: str = "",
        remedy: str = "",
    ) -> None:
        self.permission = permission
        self.scope = scope
        self.grantor = grantor or f"an administrator of {scope}"
        super().__init__(
            message,
            remedy=remedy or (
                f"Ask {self.grantor} to grant '{permission}' on {scope} "
                "(for example via roles/owner or a custom role), then re-run."
            ),
        )


class PolicyConflictError(SetupAuthError):
    """A constraint policy blocks the operation and cannot be auto-resolved."""

    default_remedy = (
        "Ask an organization policy administrator to review the constraint."
    )


class StalePolicyTokenError(SetupAuthError):
    """A policy write kept losing the concurrency-token race."""

    default_remedy = (
        "Another process is editing the same policy. Wait and re-run."
    )


class PropagationTimeoutError(SetupAuthError):
    """A mutation likely succeeded but its effect is not yet observable."""

    default_remedy = (
        "Changes can take several minutes to propagate. Wait and re-run; "
        "completed steps are skipped."
    )

    def __init__(self, description: str, timeout: float) -> None:
        self.description = description
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {description} to propagate."
        )


class ResourceConflictError(SetupAuthError):
    """A resource already exists but does not match what was requested."""

    default_remedy = "Inspect the existing resource in the GCP console."


class ProvisioningFault(SetupAuthError):
    """Unexpected failure during provisioning; the cause is chained."""

    default_remedy = "This looks like a bug or an unsupported setup. See the cause below."
