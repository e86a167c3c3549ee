"""Trigger evaluation: decides whether a rule fires for a metric context.

Every outcome, including "nothing to do", is a ``TriggerDecision`` value.
Evaluation is read-only and safe to run in parallel across (rule, context)
pairs.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Sequence

from action_engine.models import ActionPriority, ActionRule, TriggerCondition
from action_engine.services.metrics import MetricContext, MetricSnapshot, MetricSource, as_utc

EQUALS_EPSILON = 0.001

# Decision reasons
FIRED = "condition_met"
DISABLED = "disabled"
OUT_OF_SCOPE = "out_of_scope"
COOLDOWN = "cooldown"
NO_DATA = "no_data"
STALE_DATA = "stale_data"
CONDITION_NOT_MET = "condition_not_met"
AWAITING_CONSECUTIVE = "awaiting_consecutive"
COOLDOWN_EQUIVALENT = "cooldown-equivalent"


@dataclass(frozen=True)
class TriggerDecision:
    fire: bool
    reason: str
    rule_id: str | None = None
    context: MetricContext | None = None
    value: float | None = None
    threshold: float | None = None
    streak: int = 0
    priority: str = ActionPriority.MEDIUM.value
    sequence: int = 0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def context_key(self) -> str | None:
        return self.context.key if self.context else None


# ---------------------------------------------------------------------------
# Pure checks
# ---------------------------------------------------------------------------


def condition_met(
    condition: str, threshold: float, value: float, previous: float | None
) -> bool:
    """Apply a rule condition to one observation.

    ``change_percent`` is signed: a positive threshold fires on rises of at
    least that percentage, a negative one on drops of at least that much.
    A zero or missing previous value never qualifies.
    """
    if condition == TriggerCondition.GREATER_THAN.value:
        return value > threshold
    if condition == TriggerCondition.LESS_THAN.value:
        return value < threshold
    if condition == TriggerCondition.EQUALS.value:
        return abs(value - threshold) < EQUALS_EPSILON
    if condition == TriggerCondition.CHANGE_PERCENT.value:
        if previous is None or previous == 0:
            return False
        change = (value - previous) / previous * 100
        return change >= threshold if threshold > 0 else change <= threshold
    return False


def matches_scope(rule: ActionRule, context: MetricContext) -> bool:
    """Empty campaign/region/platform filters match everything."""
    if context.agent_kind != rule.agent_kind or context.metric_type != rule.metric_type:
        return False
    if rule.metric_subtype and context.metric_subtype != rule.metric_subtype:
        return False
    if rule.category and context.category != rule.category:
        return False
    for allowed, actual in (
        (rule.campaign_ids, context.campaign_id),
        (rule.regions, context.region),
        (rule.platforms, context.platform),
    ):
        if allowed and actual not in allowed:
            return False
    return True


def cooldown_remaining(
    last_triggered: datetime | None, cooldown_seconds: int, now: datetime
) -> float:
    """Seconds left in the cooldown, 0.0 when the rule may fire."""
    if last_triggered is None or cooldown_seconds <= 0:
        return 0.0
    elapsed = (now - as_utc(last_triggered)).total_seconds()
    return max(cooldown_seconds - elapsed, 0.0)


def _qualifying_flags(
    condition: str, threshold: float, samples: Sequence[MetricSnapshot]
) -> list[bool]:
    flags = []
    prior: float | None = None
    for sample in samples:
        previous = sample.previous_value if sample.previous_value is not None else prior
        flags.append(condition_met(condition, threshold, sample.value, previous))
        prior = sample.value
    return flags


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TriggerEvaluator:
    """Evaluates rules against snapshots, honouring cooldown and consecutive breaches."""

    def evaluate(
        self,
        rule: ActionRule,
        snapshot: MetricSnapshot | None,
        *,
        context: MetricContext | None = None,
        history: Iterable[MetricSnapshot] = (),
        now: datetime | None = None,
    ) -> TriggerDecision:
        """Decide whether *rule* fires on *snapshot*.

        Parameters
        ----------
        rule : ActionRule
            The rule under evaluation.
        snapshot : MetricSnapshot | None
            Latest observation for the context.
        context : MetricContext | None
            The stream the snapshot belongs to; checked against the rule scope.
        history : iterable of MetricSnapshot
            Recent observations, used for consecutive-breach counting.
        now : datetime | None
            Evaluation time (defaults to the current UTC time).

        Returns
        -------
        TriggerDecision
            ``fire=True`` only when every check passes.
        """
        now = as_utc(now) if now else datetime.now(tz=timezone.utc)
        base = dict(
            rule_id=str(rule.id) if rule.id else None,
            context=context,
            threshold=rule.threshold,
            priority=rule.priority,
        )

        if not rule.enabled:
            return TriggerDecision(fire=False, reason=DISABLED, **base)
        if context is not None and not matches_scope(rule, context):
            return TriggerDecision(fire=False, reason=OUT_OF_SCOPE, **base)

        remaining = cooldown_remaining(rule.last_triggered, rule.cooldown_seconds, now)
        if remaining > 0:
            return TriggerDecision(
                fire=False,
                reason=COOLDOWN,
                details={"remaining_seconds": remaining},
                **base,
            )

        if snapshot is None:
            return TriggerDecision(fire=False, reason=NO_DATA, **base)

        window_start = now - timedelta(seconds=rule.time_window_seconds)
        snapshot_ts = as_utc(snapshot.timestamp)
        if snapshot_ts < window_start:
            return TriggerDecision(fire=False, reason=STALE_DATA, value=snapshot.value, **base)

        ordered = sorted(history, key=lambda s: as_utc(s.timestamp))
        if not ordered or as_utc(ordered[-1].timestamp) < snapshot_ts:
            ordered.append(snapshot)
        flags = _qualifying_flags(rule.condition, rule.threshold, ordered)

        if not flags[-1]:
            return TriggerDecision(fire=False, reason=CONDITION_NOT_MET, value=snapshot.value, **base)

        last_fired = as_utc(rule.last_triggered) if rule.last_triggered else None
        streak = 0
        for sample, qualifies in zip(reversed(ordered), reversed(flags)):
            ts = as_utc(sample.timestamp)
            if ts < window_start or ts > now or (last_fired is not None and ts <= last_fired):
                break
            if not qualifies:
                break
            streak += 1

        required = max(rule.consecutive_count or 1, 1)
        if streak < required:
            return TriggerDecision(
                fire=False,
                reason=AWAITING_CONSECUTIVE,
                value=snapshot.value,
                streak=streak,
                details={"required": required},
                **base,
            )
        return TriggerDecision(fire=True, reason=FIRED, value=snapshot.value, streak=streak, **base)

    def evaluate_context(
        self,
        rule: ActionRule,
        context: MetricContext,
        source: MetricSource,
        *,
        now: datetime | None = None,
    ) -> TriggerDecision:
        """Fetch the snapshot and history for *context* from *source*, then evaluate."""
        now = as_utc(now) if now else datetime.now(tz=timezone.utc)
        snapshot = source.get_snapshot(context)
        history: list[MetricSnapshot] = []
        if snapshot is not None and (rule.consecutive_count or 1) > 1:
            history = source.get_history(
                context, timedelta(seconds=rule.time_window_seconds), now=now
            )
        return self.evaluate(rule, snapshot, context=context, history=history, now=now)

    @staticmethod
    def resolve_conflicts(
        decisions: Iterable[TriggerDecision],
    ) -> tuple[list[TriggerDecision], list[TriggerDecision]]:
        """Keep one fired decision per context: highest priority, then earliest rule.

        Returns ``(winners, skipped)``; skipped decisions carry the reason
        ``cooldown-equivalent``.
        """
        by_context: dict[str | None, list[TriggerDecision]] = {}
        for decision in decisions:
            if decision.fire:
                by_context.setdefault(decision.context_key, []).append(decision)

        winners: list[TriggerDecision] = []
        skipped: list[TriggerDecision] = []
        for fired in by_context.values():
            fired.sort(key=lambda d: (-ActionPriority(d.priority).rank, d.sequence))
            winners.append(fired[0])
            for loser in fired[1:]:
                skipped.append(
                    replace(
                        loser,
                        fire=False,
                        reason=COOLDOWN_EQUIVALENT,
                        details={**loser.details, "winning_rule_id": fired[0].rule_id},
                    )
                )
        winners.sort(key=lambda d: (-ActionPriority(d.priority).rank, d.sequence))
        return winners, skipped
