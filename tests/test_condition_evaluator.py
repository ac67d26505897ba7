"""Tests for condition evaluation."""

import pytest

from crm_automation.errors import ConditionConfigurationError
from crm_automation.services.condition_evaluator import (
    build_condition_context,
    evaluate_condition,
    evaluate_conditions,
    loose_equals,
    resolve_path,
)


class TestResolvePath:
    """Dotted-path lookups."""

    def test_nested_dicts(self):
        """Nested keys resolve."""
        assert resolve_path({"a": {"b": {"c": 3}}}, "a.b.c") == 3

    def test_list_index(self):
        """Numeric parts index into lists."""
        assert resolve_path({"tags": ["vip", "new"]}, "tags.1") == "new"

    def test_missing_is_none(self):
        """Missing segments resolve to None instead of raising."""
        assert resolve_path({"a": {}}, "a.b.c") is None
        assert resolve_path({"a": None}, "a.b") is None
        assert resolve_path({"tags": []}, "tags.5") is None


class TestOperators:
    """The nine condition operators."""

    def test_greater_than(self):
        """greater-than passes above, fails below and on a missing field."""
        condition = {"field": "amount", "operator": "greater-than", "value": 100}
        assert evaluate_condition(condition, {"amount": 150}) is True
        assert evaluate_condition(condition, {"amount": 50}) is False
        assert evaluate_condition(condition, {}) is False

    def test_less_than_coerces_strings(self):
        """Numeric strings compare as numbers."""
        assert evaluate_condition({"field": "amount", "operator": "less-than", "value": "100"}, {"amount": "99.5"})

    def test_equals_absent_value(self):
        """equals fails on an absent value unless the expected value is absent too."""
        assert evaluate_condition({"field": "x", "operator": "equals", "value": "a"}, {}) is False
        assert evaluate_condition({"field": "x", "operator": "equals", "value": None}, {}) is True

    def test_equals_is_loose(self):
        """Numbers match numeric strings, booleans match their string form."""
        assert evaluate_condition({"field": "n", "operator": "equals", "value": "5"}, {"n": 5})
        assert evaluate_condition({"field": "flag", "operator": "equals", "value": "true"}, {"flag": True})

    def test_not_equals(self):
        """not-equals treats absent as null."""
        assert evaluate_condition({"field": "x", "operator": "not-equals", "value": "a"}, {}) is True
        assert evaluate_condition({"field": "x", "operator": "not-equals", "value": "a"}, {"x": "a"}) is False

    def test_in(self):
        """in requires the value to appear in the expected list."""
        condition = {"field": "source", "operator": "in", "value": ["web", "referral"]}
        assert evaluate_condition(condition, {"source": "web"}) is True
        assert evaluate_condition(condition, {"source": "walk-in"}) is False
        assert evaluate_condition({"field": "source", "operator": "in", "value": "web"}, {"source": "web"}) is False

    def test_empty_and_not_empty(self):
        """Empty lists and strings count as empty."""
        assert evaluate_condition({"field": "tags", "operator": "empty"}, {"tags": []}) is True
        assert evaluate_condition({"field": "name", "operator": "empty"}, {"name": ""}) is True
        assert evaluate_condition({"field": "name", "operator": "not-empty"}, {"name": "Jo"}) is True
        assert evaluate_condition({"field": "missing", "operator": "not-empty"}, {}) is False

    def test_contains(self):
        """contains is a substring match on the string form."""
        assert evaluate_condition({"field": "body", "operator": "contains", "value": "stop"}, {"body": "please stop"})
        assert evaluate_condition({"field": "body", "operator": "contains", "value": "x"}, {}) is False

    def test_exists(self):
        """exists is true for any non-null value, including falsy ones."""
        assert evaluate_condition({"field": "count", "operator": "exists"}, {"count": 0}) is True
        assert evaluate_condition({"field": "count", "operator": "exists"}, {"count": None}) is False

    def test_unknown_operator(self):
        """Unknown operators are configuration errors."""
        with pytest.raises(ConditionConfigurationError):
            evaluate_condition({"field": "x", "operator": "matches", "value": 1}, {"x": 1})

    def test_missing_field(self):
        """A condition without a field is a configuration error."""
        with pytest.raises(ConditionConfigurationError):
            evaluate_condition({"operator": "exists"}, {})


class TestEvaluateConditions:
    """AND semantics over a condition list."""

    def test_empty_list_passes(self):
        """No conditions always pass."""
        assert evaluate_conditions([], {}) is True
        assert evaluate_conditions(None, {}) is True

    def test_all_must_pass(self):
        """One failing condition fails the list."""
        conditions = [
            {"field": "a", "operator": "equals", "value": 1},
            {"field": "b", "operator": "equals", "value": 2},
        ]
        assert evaluate_conditions(conditions, {"a": 1, "b": 2}) is True
        assert evaluate_conditions(conditions, {"a": 1, "b": 3}) is False

    def test_short_circuits(self):
        """Conditions after the first failure are not evaluated."""
        conditions = [
            {"field": "a", "operator": "equals", "value": 1},
            {"field": "b", "operator": "bogus"},
        ]
        assert evaluate_conditions(conditions, {"a": 2}) is False


class TestConditionContext:
    """Flattened context with deposit aliases."""

    def test_deposit_alias_prefers_specific_path(self):
        """depositAmount wins over the older quoteDepositAmount."""
        context = build_condition_context("quote-signed", {"depositAmount": 500, "quoteDepositAmount": 10})
        assert context["depositAmount"] == 500

    def test_deposit_alias_falls_back(self):
        """quoteDepositAmount is used when depositAmount is absent, else 0."""
        assert build_condition_context("quote-signed", {"quoteDepositAmount": 75})["depositAmount"] == 75
        assert build_condition_context("quote-signed", {})["depositAmount"] == 0
        assert build_condition_context("quote-signed", {})["depositRequired"] is False

    def test_payload_is_flattened_and_nested(self):
        """Payload fields are reachable at top level, under data and under event."""
        context = build_condition_context("contact-created", {"contactId": "C1"})
        assert context["contactId"] == "C1"
        assert context["data"]["contactId"] == "C1"
        assert context["event"]["type"] == "contact-created"

    def test_loose_equals_none(self):
        """None only equals None."""
        assert loose_equals(None, None)
        assert not loose_equals(None, 0)
