"""IAM data model: authorization scopes and policy documents.

Policy documents are immutable values. Editing one returns a new document
so the fetched original (and its etag) stays intact for comparison.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any


class ScopeKind(StrEnum):
    GLOBAL = "global"
    ORGANIZATION = "organization"
    PROJECT = "project"


@dataclass(frozen=True)
class AuthorizationScope:
    """A boundary at which permissions are tested and roles granted.

    ``resource`` is the policy-bearing resource name. Global scope grants
    land on the organization, so its resource is ``organizations/<id>``.
    """

    kind: ScopeKind
    resource: str
    required: tuple[str, ...] = ()
    critical: frozenset[str] = frozenset()

    @property
    def resource_id(self) -> str:
        return self.resource.rsplit("/", 1)[-1]

    @property
    def label(self) -> str:
        if self.kind is ScopeKind.GLOBAL:
            return f"global scope (via {self.resource})"
        return self.resource

    @property
    def set_policy_permission(self) -> str:
        """The permission needed to write this scope's IAM policy."""
        if self.kind is ScopeKind.PROJECT:
            return "resourcemanager.projects.setIamPolicy"
        return "resourcemanager.organizations.setIamPolicy"

    @property
    def get_policy_permission(self) -> str:
        if self.kind is ScopeKind.PROJECT:
            return "resourcemanager.projects.getIamPolicy"
        return "resourcemanager.organizations.getIamPolicy"

    def is_critical(self, permission: str) -> bool:
        return permission in self.critical


@dataclass(frozen=True)
class PolicyBinding:
    role: str
    members: tuple[str, ...] = ()
    condition: dict[str, Any] | None = None

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "members": list(self.members)}
        if self.condition:
            data["condition"] = dict(self.condition)
        return data


@dataclass(frozen=True)
class PolicyDocument:
    """An IAM policy as read from the provider.

    ``etag`` is the opaque concurrency token that must accompany the write.
    Fields this package does not edit (audit configs) ride along in
    ``extra`` so a write never drops them.
    """

    bindings: tuple[PolicyBinding, ...] = ()
    etag: str = ""
    version: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PolicyDocument:
        bindings = tuple(
            PolicyBinding(
                role=str(b.get("role", "")),
                members=tuple(str(m) for m in b.get("members", []) or []),
                condition=b.get("condition") or None,
            )
            for b in data.get("bindings", []) or []
        )
        extra = {
            k: v for k, v in data.items()
            if k not in ("bindings", "etag", "version")
        }
        return cls(
            bindings=bindings,
            etag=str(data.get("etag", "")),
            version=int(data.get("version", 1) or 1),
            extra=extra,
        )

    def to_api(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        data["bindings"] = [b.to_api() for b in self.bindings]
        data["version"] = self.version
        if self.etag:
            data["etag"] = self.etag
        return data

    def has_member(self, role: str, member: str) -> bool:
        return any(
            b.role == role and b.condition is None and member in b.members
            for b in self.bindings
        )

    def members_of(self, role: str) -> tuple[str, ...]:
        for binding in self.bindings:
            if binding.role == role and binding.condition is None:
                return binding.members
        return ()

    def with_member(self, role: str, member: str) -> PolicyDocument:
        """Return a document where ``member`` holds ``role`` unconditionally."""
        if self.has_member(role, member):
            return self
        bindings = list(self.bindings)
        for i, binding in enumerate(bindings):
            if binding.role == role and binding.condition is None:
                bindings[i] = replace(binding, members=binding.members + (member,))
                break
        else:
            bindings.append(PolicyBinding(role=role, members=(member,)))
        return replace(self, bindings=tuple(bindings))
