"""Organization constraint policy handling."""

from setupauth.orgpolicy.model import ConstraintPolicy, ConstraintRule, RuleKind

__all__ = ["ConstraintPolicy", "ConstraintRule", "RuleKind"]
