"""Semantic validation for rules and manual transactions."""

from recurring_ledger.validation.validator import RuleValidator, ValidationIssue

__all__ = ["RuleValidator", "ValidationIssue"]
