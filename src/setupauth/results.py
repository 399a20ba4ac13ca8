"""Result values returned by the public operations.

Expected failures come back as a result with ``ok=False`` and the error
attached; only unexpected faults are raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from setupauth.exceptions import SetupAuthError


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of reconciling one authorization scope."""

    scope: str
    ok: bool = True
    missing_before: tuple[str, ...] = ()
    granted_roles: tuple[str, ...] = ()
    outstanding: tuple[str, ...] = ()
    unmapped: tuple[str, ...] = ()
    policy_writes: int = 0
    error: SetupAuthError | None = None

    @property
    def changed(self) -> bool:
        return self.policy_writes > 0

    def summary(self) -> str:
        if not self.ok:
            return f"{self.scope}: FAILED ({self.error})"
        if not self.missing_before:
            return f"{self.scope}: all permissions present"
        parts = [f"{self.scope}: {len(self.missing_before)} missing"]
        if self.granted_roles:
            parts.append(f"granted {', '.join(self.granted_roles)}")
        if self.outstanding:
            parts.append(f"still missing {', '.join(self.outstanding)}")
        return "; ".join(parts)


@dataclass(frozen=True)
class PatchOutcome:
    """Outcome of ensuring one service is allowed by the constraint policy."""

    service: str
    allowed: bool
    changed: bool = False
    reason: str = ""


@dataclass
class ProvisioningResult:
    """Outcome of a provisioning run."""

    ok: bool
    final_step: str
    failed_step: str = ""
    error: SetupAuthError | None = None
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    consent_screen: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    enabled_services: list[str] = field(default_factory=list)
    reconciliations: list[ReconciliationResult] = field(default_factory=list)

    @property
    def remedy(self) -> str:
        return self.error.remedy if self.error is not None else ""
