"""Base abstractions for pluggable corrective actions."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Protocol

from action_engine.exceptions import (
    ConfigurationError,
    IncompatibleAgentError,
    MissingParameterError,
    UnknownActionError,
)
from action_engine.models import ActionPriority
from action_engine.services.metrics import MetricContext
from action_engine.settings import settings


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    timeout_seconds: float = 60.0

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry *retry_number* (1-based)."""
        return self.retry_delay_seconds * self.backoff_multiplier ** max(retry_number - 1, 0)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_retries=settings.ACTION_DEFAULT_MAX_RETRIES,
            retry_delay_seconds=settings.ACTION_RETRY_DELAY_SECONDS,
            backoff_multiplier=settings.ACTION_BACKOFF_MULTIPLIER,
            timeout_seconds=settings.ACTION_ATTEMPT_TIMEOUT_SECONDS,
        )


# ---------------------------------------------------------------------------
# Typed action configuration
# ---------------------------------------------------------------------------

_NUMERIC_OPTIONS = ("adjustment_percent", "boost_factor")


@dataclass
class ActionConfig:
    """Recognised action options plus an explicit ``extra`` map.

    Anything an executor needs that is not a recognised option goes to
    ``extra`` untouched.
    """

    message: str | None = None
    reason: str | None = None
    severity: str | None = None
    issue_type: str | None = None
    adjustment_percent: float | None = None
    new_mode: str | None = None
    review_type: str | None = None
    alert_type: str | None = None
    change_id: str | None = None
    resource_type: str | None = None
    redistribution_strategy: str | None = None
    strategy_type: str | None = None
    updates: dict[str, Any] | None = None
    backup_agent_kind: str | None = None
    report_type: str | None = None
    recipients: list[str] | None = None
    boost_factor: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def option_names(cls) -> set[str]:
        return {f.name for f in fields(cls) if f.name != "extra"}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ActionConfig:
        data = dict(data or {})
        known = cls.option_names()
        extra = dict(data.pop("extra", None) or {})
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            else:
                extra[key] = value
        for name in _NUMERIC_OPTIONS:
            value = kwargs.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(
                    f"Option '{name}' must be numeric",
                    details={"option": name, "value": value},
                )
            kwargs[name] = float(value)
        return cls(**kwargs, extra=extra)

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.option_names():
            value = getattr(self, name)
        else:
            value = self.extra.get(name)
        return default if value is None else value

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def to_dict(self) -> dict[str, Any]:
        out = {name: getattr(self, name) for name in self.option_names() if getattr(self, name) is not None}
        if self.extra:
            out["extra"] = dict(self.extra)
        return out


# ---------------------------------------------------------------------------
# Executor interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionContext:
    """What an executor knows about the attempt it is running."""

    action_log_id: str
    agent_kind: str
    action_kind: str
    attempt: int = 1
    campaign_id: str | None = None
    rule_id: str | None = None
    metric_context: MetricContext | None = None
    trigger_value: float | None = None


@dataclass
class ExecutorResult:
    """Outcome of one executor attempt.

    ``retryable`` only matters when ``success`` is False. ``post_value`` is the
    metric value the executor observed after applying the action, if any.
    """

    success: bool
    message: str = ""
    retryable: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    rollback_data: dict[str, Any] = field(default_factory=dict)
    post_value: float | None = None


class ActionExecutor(Protocol):
    async def execute(self, config: ActionConfig, context: ActionContext) -> ExecutorResult: ...


@dataclass(frozen=True)
class ActionSpec:
    """Capability declaration for one action kind."""

    action_kind: str
    description: str
    compatible_agents: frozenset[str]
    required_params: tuple[str, ...] = ()
    optional_params: tuple[str, ...] = ()
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy.from_settings)
    fallback_action_kind: str | None = None
    priority: ActionPriority = ActionPriority.MEDIUM
    requires_campaign: bool = False

    def missing_params(self, config: ActionConfig, campaign_id: str | None = None) -> list[str]:
        missing = [p for p in self.required_params if not config.has(p)]
        if self.requires_campaign and campaign_id is None and not config.has("campaign_id"):
            missing.insert(0, "campaign_id")
        return missing


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ActionRegistry:
    """Explicitly constructed catalog of action kinds and their executors.

    Provides ``register``, ``resolve``, ``get_spec``, ``list_specs`` and
    ``validate``.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[ActionSpec, ActionExecutor]] = {}

    # ---- mutation -------------------------------------------------------------

    def register(self, spec: ActionSpec, executor: ActionExecutor) -> None:
        """Register an action kind.  Overwrites an existing registration."""
        if spec.fallback_action_kind == spec.action_kind:
            raise ConfigurationError(
                f"Action '{spec.action_kind}' cannot fall back to itself",
                details={"action_kind": spec.action_kind},
            )
        self._entries[spec.action_kind] = (spec, executor)

    # ---- queries --------------------------------------------------------------

    def __contains__(self, action_kind: str) -> bool:
        return action_kind in self._entries

    def get_spec(self, action_kind: str) -> ActionSpec | None:
        entry = self._entries.get(action_kind)
        return entry[0] if entry else None

    def spec_for(self, action_kind: str) -> ActionSpec:
        spec = self.get_spec(action_kind)
        if spec is None:
            raise UnknownActionError(
                f"No executor registered for action '{action_kind}'",
                details={"action_kind": action_kind},
            )
        return spec

    def resolve(self, action_kind: str) -> ActionExecutor:
        entry = self._entries.get(action_kind)
        if entry is None:
            raise UnknownActionError(
                f"No executor registered for action '{action_kind}'",
                details={"action_kind": action_kind},
            )
        return entry[1]

    def list_specs(self) -> list[ActionSpec]:
        return sorted((spec for spec, _ in self._entries.values()), key=lambda s: s.action_kind)

    def compatible_actions(self, agent_kind: str) -> list[ActionSpec]:
        return [s for s in self.list_specs() if agent_kind in s.compatible_agents]

    def validate(
        self,
        agent_kind: str,
        action_kind: str,
        config: ActionConfig,
        campaign_id: str | None = None,
        *,
        check_campaign: bool = True,
    ) -> ActionSpec:
        """Check that *action_kind* can run for *agent_kind* with *config*.

        Rules pass ``check_campaign=False``: their campaign comes from the
        context that fires them.

        Raises
        ------
        UnknownActionError, IncompatibleAgentError, MissingParameterError
        """
        spec = self.spec_for(action_kind)
        if agent_kind not in spec.compatible_agents:
            raise IncompatibleAgentError(
                f"Action '{action_kind}' is not compatible with agent '{agent_kind}'",
                details={
                    "action_kind": action_kind,
                    "agent_kind": agent_kind,
                    "compatible_agents": sorted(spec.compatible_agents),
                },
            )
        missing = spec.missing_params(config, campaign_id)
        if not check_campaign:
            missing = [p for p in missing if p != "campaign_id"]
        if missing:
            raise MissingParameterError(
                f"Action '{action_kind}' is missing required parameters: {', '.join(missing)}",
                details={"action_kind": action_kind, "missing": missing},
            )
        return spec
