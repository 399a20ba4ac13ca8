"""List-constraint policies as an ordered sequence of rules."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any


class RuleKind(StrEnum):
    ALLOW_ALL = "allow_all"
    DENY_ALL = "deny_all"
    ALLOW_LIST = "allow_list"
    DENY_LIST = "deny_list"


@dataclass(frozen=True)
class ConstraintRule:
    kind: RuleKind
    values: tuple[str, ...] = ()
    condition: dict[str, Any] | None = None

    def contains(self, value: str) -> bool:
        return value in self.values

    def with_value(self, value: str) -> ConstraintRule:
        if value in self.values:
            return self
        return replace(self, values=self.values + (value,))

    def without_value(self, value: str) -> ConstraintRule:
        return replace(self, values=tuple(v for v in self.values if v != value))


@dataclass(frozen=True)
class ConstraintPolicy:
    """A constraint policy set on a resource, with its concurrency token."""

    name: str
    rules: tuple[ConstraintRule, ...] = ()
    etag: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ConstraintPolicy:
        """Parse an Org Policy v2 ``Policy`` resource.

        A v2 rule carrying both allowed and denied values becomes two rules,
        the deny list first.
        """
        spec = data.get("spec") or {}
        rules: list[ConstraintRule] = []
        for raw in spec.get("rules", []) or []:
            condition = raw.get("condition") or None
            if raw.get("allowAll"):
                rules.append(ConstraintRule(RuleKind.ALLOW_ALL, condition=condition))
                continue
            if raw.get("denyAll"):
                rules.append(ConstraintRule(RuleKind.DENY_ALL, condition=condition))
                continue
            values = raw.get("values") or {}
            denied = tuple(values.get("deniedValues", []) or [])
            allowed = tuple(values.get("allowedValues", []) or [])
            if denied:
                rules.append(ConstraintRule(RuleKind.DENY_LIST, denied, condition))
            if allowed or not denied:
                rules.append(ConstraintRule(RuleKind.ALLOW_LIST, allowed, condition))
        return cls(
            name=str(data.get("name", "")),
            rules=tuple(rules),
            etag=str(data.get("etag") or spec.get("etag") or ""),
        )

    def to_api(self) -> dict[str, Any]:
        rules: list[dict[str, Any]] = []
        for rule in self.rules:
            raw: dict[str, Any]
            if rule.kind is RuleKind.ALLOW_ALL:
                raw = {"allowAll": True}
            elif rule.kind is RuleKind.DENY_ALL:
                raw = {"denyAll": True}
            elif rule.kind is RuleKind.ALLOW_LIST:
                raw = {"values": {"allowedValues": list(rule.values)}}
            else:
                raw = {"values": {"deniedValues": list(rule.values)}}
            if rule.condition:
                raw["condition"] = dict(rule.condition)
            rules.append(raw)
        spec: dict[str, Any] = {"rules": rules}
        if self.etag:
            spec["etag"] = self.etag
        return {"name": self.name, "spec": spec}


@dataclass(frozen=True)
class Evaluation:
    """Result of walking a policy's rules for one value."""

    allowed: bool
    policy: ConstraintPolicy | None
    changed: bool = False
    blocked_by_deny_all: bool = False


def evaluate(policy: ConstraintPolicy | None, value: str) -> Evaluation:
    """Walk rules in order, editing list rules so ``value`` is allowed.

    Returns the possibly edited policy. A DENY_ALL rule reached before any
    deciding rule blocks the value and leaves the policy untouched.
    """
    if policy is None or not policy.rules:
        return Evaluation(allowed=True, policy=policy)

    rules = list(policy.rules)
    changed = False
    for i, rule in enumerate(rules):
        if rule.kind is RuleKind.DENY_LIST:
            if rule.contains(value):
                rules[i] = rule.without_value(value)
                changed = True
            continue
        if rule.kind is RuleKind.ALLOW_LIST:
            if not rule.contains(value):
                rules[i] = rule.with_value(value)
                changed = True
            break
        if rule.kind is RuleKind.ALLOW_ALL:
            break
        if rule.kind is RuleKind.DENY_ALL:
            return Evaluation(allowed=False, policy=policy, blocked_by_deny_all=True)

    edited = replace(policy, rules=tuple(rules)) if changed else policy
    return Evaluation(allowed=True, policy=edited, changed=changed)


def is_allowed(policy: ConstraintPolicy | None, value: str) -> bool:
    """True when ``policy`` already allows ``value`` without edits."""
    result = evaluate(policy, value)
    return result.allowed and not result.changed
