"""Provisioning run state: the step cursor and the artifacts produced so far.

One run owns one ``ProvisioningState``. Steps only move forward along the
run's plan; FAILED and DONE are terminal.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

import yaml

from setupauth.exceptions import StateError
from setupauth.identity import Principal
from setupauth.results import ReconciliationResult


class ProvisioningStep(StrEnum):
    IDLE = "idle"
    VALIDATING_PRINCIPAL = "validating_principal"
    ENFORCING_POLICY = "enforcing_policy"
    RECONCILING_PERMISSIONS = "reconciling_permissions"
    ENABLING_SERVICES = "enabling_services"
    ENSURING_CONSENT_SCREEN = "ensuring_consent_screen"
    ENSURING_CREDENTIALS = "ensuring_credentials"
    WIRING_REDIRECT_URIS = "wiring_redirect_uris"
    DONE = "done"
    FAILED = "failed"


FULL_PLAN: tuple[ProvisioningStep, ...] = (
    ProvisioningStep.VALIDATING_PRINCIPAL,
    ProvisioningStep.ENFORCING_POLICY,
    ProvisioningStep.RECONCILING_PERMISSIONS,
    ProvisioningStep.ENABLING_SERVICES,
    ProvisioningStep.ENSURING_CONSENT_SCREEN,
    ProvisioningStep.ENSURING_CREDENTIALS,
    ProvisioningStep.WIRING_REDIRECT_URIS,
)

REDIRECT_PLAN: tuple[ProvisioningStep, ...] = (
    ProvisioningStep.VALIDATING_PRINCIPAL,
    ProvisioningStep.WIRING_REDIRECT_URIS,
)

TERMINAL = frozenset({ProvisioningStep.DONE, ProvisioningStep.FAILED})


@dataclass
class Transition:
    source: ProvisioningStep
    target: ProvisioningStep
    at: str = ""

    def __post_init__(self):
        if not self.at:
            self.at = datetime.now().isoformat()


@dataclass
class ProvisioningState:
    plan: tuple[ProvisioningStep, ...] = FULL_PLAN
    step: ProvisioningStep = ProvisioningStep.IDLE
    principal: Principal | None = None
    consent_screen: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    credential_id: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    enabled_services: list[str] = field(default_factory=list)
    reconciliations: list[ReconciliationResult] = field(default_factory=list)
    failed_step: ProvisioningStep | None = None
    error: BaseException | None = None
    history: list[Transition] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.step in TERMINAL

    def next_step(self) -> ProvisioningStep:
        if self.step is ProvisioningStep.IDLE:
            return self.plan[0]
        index = self.plan.index(self.step)
        if index + 1 < len(self.plan):
            return self.plan[index + 1]
        return ProvisioningStep.DONE

    def advance(self, target: ProvisioningStep) -> None:
        """Move to ``target``; only the next planned step is legal."""
        if self.terminal:
            raise StateError(f"Run already {self.step}; cannot move to {target}.")
        if target is ProvisioningStep.FAILED:
            raise StateError("Use fail() to enter the failed state.")
        expected = self.next_step()
        if target is not expected:
            raise StateError(
                f"Illegal transition {self.step} -> {target} (expected {expected})."
            )
        self._move(target)

    def fail(self, error: BaseException) -> None:
        """Enter FAILED from any non-terminal step, keeping the cause."""
        if self.terminal:
            raise StateError(f"Run already {self.step}; cannot fail again.")
        self.failed_step = self.step
        self.error = error
        self._move(ProvisioningStep.FAILED)

    def _move(self, target: ProvisioningStep) -> None:
        self.history.append(Transition(self.step, target))
        self.step = target

    def to_dict(self) -> dict:
        data: dict = {"step": self.step.value}
        if self.principal is not None:
            data["principal"] = self.principal.email
        if self.consent_screen:
            data["consent_screen"] = self.consent_screen
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = f"***{self.client_secret[-4:]}"
        if self.credential_id:
            data["credential_id"] = self.credential_id
        if self.redirect_uris:
            data["redirect_uris"] = list(self.redirect_uris)
        if self.enabled_services:
            data["enabled_services"] = sorted(self.enabled_services)
        if self.failed_step is not None:
            data["failed_step"] = self.failed_step.value
            data["error"] = str(self.error)[:300]
        data["history"] = [
            {"from": t.source.value, "to": t.target.value, "at": t.at}
            for t in self.history
        ]
        return data

    def to_yaml(self) -> str:
        return yaml.dump(
            self.to_dict(), default_flow_style=False, sort_keys=False, allow_unicode=True,
        )


def save_state(state: ProvisioningState, path: Path) -> None:
    """Atomic write: write to temp file, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".yaml.tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(state.to_yaml())
        os.replace(tmp_path, path)
    except Exception:
        os.unlink(tmp_path)
        raise
