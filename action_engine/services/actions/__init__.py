"""Action capability registry and built-in executors."""

from action_engine.services.actions.base import (
    ActionConfig,
    ActionContext,
    ActionExecutor,
    ActionRegistry,
    ActionSpec,
    ExecutorResult,
    RetryPolicy,
)
from action_engine.services.actions.builtin import builtin_actions

__all__ = [
    "ActionConfig",
    "ActionContext",
    "ActionExecutor",
    "ActionRegistry",
    "ActionSpec",
    "ExecutorResult",
    "RetryPolicy",
    "build_default_registry",
]


def build_default_registry() -> ActionRegistry:
    """Build a registry pre-loaded with the built-in action kinds."""
    registry = ActionRegistry()
    for spec, executor in builtin_actions():
        registry.register(spec, executor)
    return registry
