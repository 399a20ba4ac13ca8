"""Layered IAM permission reconciliation."""

from setupauth.iam.model import (
    AuthorizationScope,
    PolicyBinding,
    PolicyDocument,
    ScopeKind,
)

__all__ = [
    "AuthorizationScope",
    "PolicyBinding",
    "PolicyDocument",
    "ScopeKind",
]
