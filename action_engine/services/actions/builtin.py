"""Built-in corrective actions.

These executors simulate the side effect against the target agent and return
realistic results, the way a dry-run platform adapter would. Each executor
caches its result per action log so a replayed attempt is idempotent.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timezone

from action_engine.models import ActionPriority, AgentKind
from action_engine.services.actions.base import (
    ActionConfig,
    ActionContext,
    ActionSpec,
    ExecutorResult,
    RetryPolicy,
)

ALL_AGENTS = frozenset(a.value for a in AgentKind)
CAMPAIGN_AGENTS = frozenset(
    {
        AgentKind.CONTENT.value,
        AgentKind.EMAIL.value,
        AgentKind.SOCIAL.value,
        AgentKind.SUPPORT.value,
        AgentKind.TREND.value,
        AgentKind.AD.value,
    }
)
BUDGET_AGENTS = frozenset(
    {
        AgentKind.CONTENT.value,
        AgentKind.EMAIL.value,
        AgentKind.SOCIAL.value,
        AgentKind.TREND.value,
        AgentKind.AD.value,
    }
)
CREATIVE_AGENTS = frozenset(
    {AgentKind.CONTENT.value, AgentKind.SOCIAL.value, AgentKind.TREND.value, AgentKind.AD.value}
)

MAX_CACHED_RESULTS = 1024


# ---------------------------------------------------------------------------
# Simulated executors
# ---------------------------------------------------------------------------


class SimulatedExecutor:
    """Base for built-in executors: idempotent per action log.

    A successful result is replayed for repeat attempts on the same log until
    the runner releases it. At most ``MAX_CACHED_RESULTS`` are kept.
    """

    def __init__(self) -> None:
        self._applied: OrderedDict[str, ExecutorResult] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def cached_results(self) -> int:
        with self._lock:
            return len(self._applied)

    async def execute(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        with self._lock:
            cached = self._applied.get(context.action_log_id)
        if cached is not None:
            return cached

        result = self.apply(config, context)
        result.data.setdefault("applied_at", datetime.now(tz=timezone.utc).isoformat())
        result.data.setdefault("simulated", True)
        if result.success:
            with self._lock:
                self._applied[context.action_log_id] = result
                while len(self._applied) > MAX_CACHED_RESULTS:
                    self._applied.popitem(last=False)
        return result

    def release(self, action_log_id: str) -> None:
        """Drop the cached result of a log that reached a terminal state."""
        with self._lock:
            self._applied.pop(action_log_id, None)

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        raise NotImplementedError


class CampaignStateExecutor(SimulatedExecutor):
    """Moves a campaign (or, without one, the agent) into *target_state*."""

    def __init__(self, target_state: str) -> None:
        super().__init__()
        self.target_state = target_state

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        campaign_id = context.campaign_id or config.get("campaign_id")
        target = f"campaign {campaign_id}" if campaign_id else f"{context.agent_kind} agent"
        return ExecutorResult(
            success=True,
            message=f"Set {target} to '{self.target_state}'",
            data={
                "campaign_id": campaign_id,
                "state": self.target_state,
                "reason": config.reason,
            },
            rollback_data={"campaign_id": campaign_id, "restore_state": "active"},
        )


class BudgetAdjustmentExecutor(SimulatedExecutor):
    """Scales a campaign budget up or down by ``adjustment_percent``."""

    def __init__(self, direction: int) -> None:
        super().__init__()
        self.direction = direction

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        pct = config.adjustment_percent or 0.0
        if not 0 < pct <= 100:
            return ExecutorResult(
                success=False,
                retryable=False,
                message=f"adjustment_percent must be in (0, 100], got {pct}",
            )
        signed = pct * self.direction
        return ExecutorResult(
            success=True,
            message=f"Adjusted budget by {signed:+.1f}%",
            data={"campaign_id": context.campaign_id, "adjustment_percent": signed},
            rollback_data={"campaign_id": context.campaign_id, "adjustment_percent": -signed},
        )


class BudgetRedistributionExecutor(SimulatedExecutor):
    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        return ExecutorResult(
            success=True,
            message=f"Redistributed budget using '{config.redistribution_strategy}'",
            data={
                "strategy": config.redistribution_strategy,
                "source_campaigns": config.get("source_campaigns", []),
                "target_campaigns": config.get("target_campaigns", []),
            },
        )


class NotificationExecutor(SimulatedExecutor):
    """Notifications, escalations, alerts, reviews and reports."""

    def __init__(self, channel: str) -> None:
        super().__init__()
        self.channel = channel

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        payload = {
            key: value
            for key, value in config.to_dict().items()
            if key in ("message", "issue_type", "severity", "alert_type", "review_type", "report_type", "recipients")
        }
        payload["agent_kind"] = context.agent_kind
        payload["campaign_id"] = context.campaign_id
        return ExecutorResult(
            success=True,
            message=f"Dispatched {self.channel}",
            data={"channel": self.channel, "payload": payload},
        )


class AgentControlExecutor(SimulatedExecutor):
    """Changes how the target agent operates (mode, scale, strategy, backup)."""

    def __init__(self, operation: str, option: str | None = None) -> None:
        super().__init__()
        self.operation = operation
        self.option = option

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        value = config.get(self.option) if self.option else None
        data = {"operation": self.operation, "agent_kind": context.agent_kind}
        if self.option:
            data[self.option] = value
        if config.updates:
            data["updates"] = dict(config.updates)
        return ExecutorResult(
            success=True,
            message=f"Applied {self.operation} to {context.agent_kind} agent",
            data=data,
            rollback_data={"operation": self.operation, "previous": config.get("previous_value")},
        )


class EngagementBoostExecutor(SimulatedExecutor):
    """Asks a content-producing agent to raise engagement output."""

    def apply(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        factor = config.boost_factor or 1.2
        if factor <= 0:
            return ExecutorResult(
                success=False, retryable=False, message="boost_factor must be positive"
            )
        return ExecutorResult(
            success=True,
            message=f"Requested engagement boost x{factor:.2f}",
            data={"boost_factor": factor, "campaign_id": context.campaign_id},
            rollback_data={"boost_factor": 1.0},
        )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _policy(max_retries: int) -> RetryPolicy:
    base = RetryPolicy.from_settings()
    return RetryPolicy(
        max_retries=max_retries,
        retry_delay_seconds=base.retry_delay_seconds,
        backoff_multiplier=base.backoff_multiplier,
        timeout_seconds=base.timeout_seconds,
    )


def builtin_actions() -> list[tuple[ActionSpec, SimulatedExecutor]]:
    """Spec/executor pairs for every built-in action kind."""
    return [
        (
            ActionSpec(
                "pause_campaign", "Pause campaign due to performance issues", CAMPAIGN_AGENTS,
                optional_params=("reason", "duration"), retry_policy=_policy(3),
                fallback_action_kind="notify_team", priority=ActionPriority.HIGH,
                requires_campaign=True,
            ),
            CampaignStateExecutor("paused"),
        ),
        (
            ActionSpec(
                "resume_campaign", "Resume a paused campaign", CAMPAIGN_AGENTS,
                optional_params=("reason",), retry_policy=_policy(3), requires_campaign=True,
            ),
            CampaignStateExecutor("active"),
        ),
        (
            ActionSpec(
                "archive_campaign", "Archive a finished or failing campaign", CAMPAIGN_AGENTS,
                optional_params=("reason",), retry_policy=_policy(1),
                priority=ActionPriority.LOW, requires_campaign=True,
            ),
            CampaignStateExecutor("archived"),
        ),
        (
            ActionSpec(
                "emergency_stop", "Stop all agent activity immediately", ALL_AGENTS,
                required_params=("reason",), optional_params=("affected_campaigns",),
                retry_policy=_policy(1), fallback_action_kind="escalate_issue",
                priority=ActionPriority.EMERGENCY,
            ),
            CampaignStateExecutor("stopped"),
        ),
        (
            ActionSpec(
                "adjust_budget_up", "Increase campaign budget", BUDGET_AGENTS,
                required_params=("adjustment_percent",), optional_params=("max_budget", "reason"),
                retry_policy=_policy(2), requires_campaign=True,
            ),
            BudgetAdjustmentExecutor(+1),
        ),
        (
            ActionSpec(
                "adjust_budget_down", "Decrease campaign budget", BUDGET_AGENTS,
                required_params=("adjustment_percent",), optional_params=("min_budget", "reason"),
                retry_policy=_policy(2), priority=ActionPriority.HIGH, requires_campaign=True,
            ),
            BudgetAdjustmentExecutor(-1),
        ),
        (
            ActionSpec(
                "redistribute_budget", "Move budget between campaigns", BUDGET_AGENTS,
                required_params=("redistribution_strategy",),
                optional_params=("source_campaigns", "target_campaigns"), retry_policy=_policy(2),
            ),
            BudgetRedistributionExecutor(),
        ),
        (
            ActionSpec(
                "notify_team", "Send notification to the team", ALL_AGENTS,
                required_params=("message",), optional_params=("urgency", "recipients", "channels"),
                retry_policy=_policy(1),
            ),
            NotificationExecutor("team_notification"),
        ),
        (
            ActionSpec(
                "escalate_issue", "Escalate an issue to senior staff", ALL_AGENTS,
                required_params=("issue_type", "severity"),
                optional_params=("description", "recommended_actions"), retry_policy=_policy(2),
                fallback_action_kind="notify_team", priority=ActionPriority.HIGH,
            ),
            NotificationExecutor("escalation"),
        ),
        (
            ActionSpec(
                "create_alert", "Create a monitoring alert", ALL_AGENTS,
                required_params=("alert_type", "message"), optional_params=("severity", "recipients"),
                retry_policy=_policy(1),
            ),
            NotificationExecutor("alert"),
        ),
        (
            ActionSpec(
                "schedule_review", "Schedule a human review", ALL_AGENTS,
                required_params=("review_type",), optional_params=("scheduled_date", "reviewers"),
                retry_policy=_policy(1), priority=ActionPriority.LOW,
            ),
            NotificationExecutor("review_request"),
        ),
        (
            ActionSpec(
                "send_report", "Send a performance report", ALL_AGENTS,
                required_params=("report_type", "recipients"), retry_policy=_policy(1),
                priority=ActionPriority.LOW,
            ),
            NotificationExecutor("report"),
        ),
        (
            ActionSpec(
                "switch_agent_mode", "Switch the agent's operating mode", ALL_AGENTS,
                required_params=("new_mode",), optional_params=("reason", "duration"),
                retry_policy=_policy(2),
            ),
            AgentControlExecutor("switch_mode", "new_mode"),
        ),
        (
            ActionSpec(
                "optimize_targeting", "Re-optimize audience targeting", BUDGET_AGENTS,
                optional_params=("targeting_params", "optimization_type"), retry_policy=_policy(2),
                requires_campaign=True,
            ),
            AgentControlExecutor("optimize_targeting", "optimization_type"),
        ),
        (
            ActionSpec(
                "refresh_content", "Regenerate stale creative content", CREATIVE_AGENTS,
                optional_params=("content_type", "platforms"), retry_policy=_policy(2),
                requires_campaign=True,
            ),
            AgentControlExecutor("refresh_content", "content_type"),
        ),
        (
            ActionSpec(
                "rollback_changes", "Revert a previous change", ALL_AGENTS,
                required_params=("change_id",), optional_params=("reason",), retry_policy=_policy(2),
                priority=ActionPriority.HIGH,
            ),
            AgentControlExecutor("rollback_changes", "change_id"),
        ),
        (
            ActionSpec(
                "auto_scale_up", "Scale agent resources up", BUDGET_AGENTS,
                required_params=("resource_type",), optional_params=("scale_percent", "max_limit"),
                retry_policy=_policy(2),
            ),
            AgentControlExecutor("scale_up", "resource_type"),
        ),
        (
            ActionSpec(
                "auto_scale_down", "Scale agent resources down", BUDGET_AGENTS,
                required_params=("resource_type",), optional_params=("scale_percent", "min_limit"),
                retry_policy=_policy(2),
            ),
            AgentControlExecutor("scale_down", "resource_type"),
        ),
        (
            ActionSpec(
                "update_strategy", "Update the agent's strategy settings", ALL_AGENTS,
                required_params=("strategy_type", "updates"), optional_params=("reason",),
                retry_policy=_policy(2),
            ),
            AgentControlExecutor("update_strategy", "strategy_type"),
        ),
        (
            ActionSpec(
                "trigger_backup_agent", "Hand work over to a backup agent", ALL_AGENTS,
                required_params=("backup_agent_kind",), optional_params=("reason", "handover_data"),
                retry_policy=_policy(1), priority=ActionPriority.HIGH,
            ),
            AgentControlExecutor("trigger_backup", "backup_agent_kind"),
        ),
        (
            ActionSpec(
                "boost_engagement", "Increase engagement-oriented output", CREATIVE_AGENTS,
                optional_params=("boost_factor",), retry_policy=_policy(2),
                fallback_action_kind="refresh_content",
            ),
            EngagementBoostExecutor(),
        ),
    ]
