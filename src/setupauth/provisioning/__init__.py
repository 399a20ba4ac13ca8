"""Provisioning workflow: step state machine and orchestrator."""

from setupauth.provisioning.state import (
    FULL_PLAN,
    REDIRECT_PLAN,
    ProvisioningState,
    ProvisioningStep,
)

__all__ = ["FULL_PLAN", "REDIRECT_PLAN", "ProvisioningState", "ProvisioningStep"]
