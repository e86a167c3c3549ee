"""Exception hierarchy for the action engine.

Configuration errors are fatal and never retried. Transient errors are
retried by the runner up to the log's retry budget. Expected "no action"
outcomes (condition not met, cooldown active, insufficient data) are never
raised; they come back as decision or analysis values.
"""

from __future__ import annotations

from typing import Any


class ActionEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}


# ---- configuration --------------------------------------------------------


class ConfigurationError(ActionEngineError):
    """Raised for malformed rules or actions that can never succeed as configured."""


class UnknownActionError(ConfigurationError):
    """Raised when no executor is registered for an action kind."""


class IncompatibleAgentError(ConfigurationError):
    """Raised when the target agent kind is not in the action's compatible set."""


class MissingParameterError(ConfigurationError):
    """Raised when a required action parameter is absent from the config."""


class InvalidRuleError(ConfigurationError):
    """Raised when a rule definition fails validation."""


# ---- execution ------------------------------------------------------------


class TransientActionError(ActionEngineError):
    """Executor-reported failure that may succeed on a later attempt."""


class ActionTimeoutError(TransientActionError):
    """An attempt exceeded its time bound."""


class PermanentActionError(ActionEngineError):
    """Executor-reported failure that retrying cannot fix."""


class ActionCancelledError(ActionEngineError):
    """The attempt was cancelled before it finished."""


# ---- persistence / learning -----------------------------------------------


class NotFoundError(ActionEngineError):
    """Raised when a referenced record does not exist."""


class InvalidTransitionError(ActionEngineError):
    """Raised for a status change the lifecycle does not allow."""


class WeightVersionConflict(ActionEngineError):
    """The active weight version changed between read and write."""


class WeightUpdateError(ActionEngineError):
    """Compare-and-swap retries were exhausted for a context."""
