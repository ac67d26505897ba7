"""Exceptions raised by the automation engine."""


class AutomationError(Exception):
    """Base class for automation engine errors."""


class ActionConfigurationError(AutomationError, ValueError):
    """An action cannot run as configured. Retrying will not help."""


class UnknownActionTypeError(ActionConfigurationError):
    """The action type is outside the vocabulary or has no registered effector."""

    def __init__(self, action_type: str, reason: str = "Unknown action type"):
        self.action_type = action_type
        super().__init__(f"{reason}: {action_type}")


class ConditionConfigurationError(AutomationError, ValueError):
    """A rule condition is malformed (unknown operator, missing field)."""


class EffectorError(AutomationError):
    """Transient failure reported by an effector, including timeouts."""
