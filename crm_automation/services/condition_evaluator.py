from typing import Any, Dict, Iterable, Optional
import logging

from crm_automation.errors import ConditionConfigurationError

logger = logging.getLogger(__name__)

# Alias -> candidate payload paths, most specific first
CONTEXT_ALIASES = {
    "depositAmount": ("depositAmount", "quoteDepositAmount", "quote.depositAmount"),
    "depositRequired": ("depositRequired", "quoteDepositRequired", "quote.depositRequired"),
}
ALIAS_DEFAULTS = {"depositAmount": 0, "depositRequired": False}


def resolve_path(container: Any, path: Optional[str]) -> Any:
    """Dotted lookup over dicts, lists (numeric parts) and attributes. Missing -> None."""
    normalized = (path or "").strip()
    if not normalized:
        return None

    current: Any = container
    for part in [item for item in normalized.split(".") if item]:
        if current is None:
            return None
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, (list, tuple)):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
            continue
        current = getattr(current, part, None)
    return current


def build_condition_context(event_type: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Flatten an event for condition checks.

    Alias fields go first, then the payload at top level, then the payload again
    under `data` and the event type under `event`.
    """
    data = data or {}
    context: Dict[str, Any] = {}

    for alias, paths in CONTEXT_ALIASES.items():
        value = None
        for path in paths:
            value = resolve_path(data, path)
            if value is not None:
                break
        context[alias] = value if value is not None else ALIAS_DEFAULTS[alias]

    context.update(data)
    context["data"] = data
    context["event"] = {"type": event_type, **data}
    return context


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def loose_equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None

    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()

    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        left, right = _to_number(actual), _to_number(expected)
        if left is not None and right is not None:
            return left == right

    return str(actual) == str(expected)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, str)):
        return len(value) == 0
    return not value


def _compare(actual: Any, expected: Any, greater: bool) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return any(loose_equals(item, expected) for item in actual)
    return str(expected) in str(actual)


OPERATORS = {
    "equals": lambda actual, expected: loose_equals(actual, expected),
    "not-equals": lambda actual, expected: not loose_equals(actual, expected),
    "greater-than": lambda actual, expected: _compare(actual, expected, greater=True),
    "less-than": lambda actual, expected: _compare(actual, expected, greater=False),
    "in": lambda actual, expected: isinstance(expected, (list, tuple, set))
    and any(loose_equals(actual, item) for item in expected),
    "empty": lambda actual, expected: _is_empty(actual),
    "not-empty": lambda actual, expected: not _is_empty(actual),
    "contains": _contains,
    "exists": lambda actual, expected: actual is not None,
}


def evaluate_condition(condition: Dict[str, Any], context: Dict[str, Any]) -> bool:
    field = condition.get("field")
    operator = condition.get("operator")
    if not field:
        raise ConditionConfigurationError("Condition is missing a field")

    check = OPERATORS.get(operator)
    if check is None:
        raise ConditionConfigurationError(f"Unknown condition operator: {operator}")

    return check(resolve_path(context, field), condition.get("value"))


def evaluate_conditions(conditions: Optional[Iterable[Dict[str, Any]]], context: Dict[str, Any]) -> bool:
    """All conditions must pass; stops at the first failure. No conditions -> True."""
    for condition in conditions or []:
        if not evaluate_condition(condition, context):
            logger.debug(
                "Condition failed: %s %s %r",
                condition.get("field"), condition.get("operator"), condition.get("value"),
            )
            return False
    return True
