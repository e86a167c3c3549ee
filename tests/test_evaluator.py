"""Tests for trigger evaluation, cooldown, consecutive breaches and conflict resolution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from action_engine.services.evaluator import (
    AWAITING_CONSECUTIVE,
    CONDITION_NOT_MET,
    COOLDOWN,
    COOLDOWN_EQUIVALENT,
    DISABLED,
    FIRED,
    NO_DATA,
    OUT_OF_SCOPE,
    STALE_DATA,
    TriggerDecision,
    TriggerEvaluator,
    condition_met,
    cooldown_remaining,
)
from action_engine.services.metrics import InMemoryMetricSource, MetricSnapshot
from tests.conftest import build_rule, engagement_context

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _snap(value: float, at: datetime, previous: float | None = None) -> MetricSnapshot:
    return MetricSnapshot(value=value, timestamp=at, previous_value=previous)


class TestConditionMet:
    def test_greater_and_less_than(self):
        assert condition_met("greater_than", 5.0, 5.1, None)
        assert not condition_met("greater_than", 5.0, 5.0, None)
        assert condition_met("less_than", 0.02, 0.01, None)
        assert not condition_met("less_than", 0.02, 0.02, None)

    def test_equals_uses_epsilon(self):
        assert condition_met("equals", 1.0, 1.0005, None)
        assert not condition_met("equals", 1.0, 1.002, None)

    def test_change_percent_is_signed(self):
        # drop of 30% against a -25% threshold
        assert condition_met("change_percent", -25.0, 70.0, 100.0)
        assert not condition_met("change_percent", -25.0, 80.0, 100.0)
        # rise of 30% against a +25% threshold
        assert condition_met("change_percent", 25.0, 130.0, 100.0)
        assert not condition_met("change_percent", 25.0, 70.0, 100.0)

    def test_change_percent_needs_nonzero_previous(self):
        assert not condition_met("change_percent", -25.0, 10.0, None)
        assert not condition_met("change_percent", -25.0, 10.0, 0.0)


class TestCooldownRemaining:
    def test_never_fired(self):
        assert cooldown_remaining(None, 60, T0) == 0.0

    def test_active_and_elapsed(self):
        assert cooldown_remaining(T0, 60, T0 + timedelta(seconds=30)) == 30.0
        assert cooldown_remaining(T0, 60, T0 + timedelta(seconds=61)) == 0.0

    def test_naive_timestamps_are_utc(self):
        naive = T0.replace(tzinfo=None)
        assert cooldown_remaining(naive, 60, T0 + timedelta(seconds=45)) == 15.0


class TestTriggerEvaluator:
    def test_fires_on_breach(self):
        rule = build_rule()
        decision = TriggerEvaluator().evaluate(
            rule, _snap(1.2, T0), context=engagement_context(), now=T0 + timedelta(seconds=5)
        )
        assert decision.fire
        assert decision.reason == FIRED
        assert decision.value == 1.2
        assert decision.rule_id == str(rule.id)

    def test_condition_not_met(self):
        decision = TriggerEvaluator().evaluate(
            build_rule(), _snap(2.5, T0), context=engagement_context(), now=T0
        )
        assert not decision.fire
        assert decision.reason == CONDITION_NOT_MET

    def test_disabled_rule(self):
        decision = TriggerEvaluator().evaluate(build_rule(enabled=False), _snap(1.0, T0), now=T0)
        assert decision.reason == DISABLED

    def test_out_of_scope_campaign(self):
        rule = build_rule(campaign_ids=["camp-a"])
        decision = TriggerEvaluator().evaluate(
            rule, _snap(1.0, T0), context=engagement_context(campaign_id="camp-b"), now=T0
        )
        assert decision.reason == OUT_OF_SCOPE

    def test_no_data(self):
        decision = TriggerEvaluator().evaluate(build_rule(), None, now=T0)
        assert not decision.fire
        assert decision.reason == NO_DATA

    def test_stale_snapshot(self):
        rule = build_rule(time_window_seconds=600)
        decision = TriggerEvaluator().evaluate(rule, _snap(1.0, T0), now=T0 + timedelta(seconds=601))
        assert decision.reason == STALE_DATA

    def test_consecutive_breaches_must_be_unbroken(self):
        rule = build_rule(consecutive_count=3)
        evaluator = TriggerEvaluator()
        # breach, breach, ok, breach, breach, breach
        values = [1.0, 1.0, 3.0, 1.0, 1.0, 1.0]
        samples = [_snap(v, T0 + timedelta(minutes=i)) for i, v in enumerate(values)]

        fired = []
        for i, sample in enumerate(samples):
            decision = evaluator.evaluate(
                rule, sample, history=samples[: i + 1], now=sample.timestamp
            )
            fired.append(decision.fire)

        assert fired == [False, False, False, False, False, True]

    def test_awaiting_consecutive_reports_streak(self):
        rule = build_rule(consecutive_count=3)
        samples = [_snap(1.0, T0), _snap(1.0, T0 + timedelta(minutes=1))]
        decision = TriggerEvaluator().evaluate(
            rule, samples[-1], history=samples, now=samples[-1].timestamp
        )
        assert decision.reason == AWAITING_CONSECUTIVE
        assert decision.streak == 2
        assert decision.details["required"] == 3

    def test_cooldown_blocks_then_releases(self):
        rule = build_rule(cooldown_seconds=60, last_triggered=T0)
        snapshot = _snap(1.0, T0 + timedelta(seconds=10))
        evaluator = TriggerEvaluator()

        blocked = evaluator.evaluate(rule, snapshot, now=T0 + timedelta(seconds=30))
        assert not blocked.fire
        assert blocked.reason == COOLDOWN
        assert blocked.details["remaining_seconds"] == 30.0

        released = evaluator.evaluate(rule, snapshot, now=T0 + timedelta(seconds=61))
        assert released.fire

    def test_observations_before_last_trigger_do_not_count(self):
        rule = build_rule(consecutive_count=2, cooldown_seconds=0, last_triggered=T0 + timedelta(minutes=1))
        samples = [_snap(1.0, T0), _snap(1.0, T0 + timedelta(minutes=2))]
        decision = TriggerEvaluator().evaluate(
            rule, samples[-1], history=samples, now=T0 + timedelta(minutes=2)
        )
        assert not decision.fire
        assert decision.streak == 1

    def test_evaluate_context_reads_source(self):
        source = InMemoryMetricSource()
        context = engagement_context()
        now = datetime.now(tz=timezone.utc)
        for minutes, value in ((3, 1.1), (2, 1.0), (1, 0.9)):
            source.record(context, value, timestamp=now - timedelta(minutes=minutes))
        rule = build_rule(consecutive_count=3)

        decision = TriggerEvaluator().evaluate_context(rule, context, source, now=now)

        assert decision.fire
        assert decision.streak == 3
        assert decision.context_key == context.key


class TestResolveConflicts:
    def _fired(self, rule_id: str, priority: str, sequence: int, campaign: str = "c1") -> TriggerDecision:
        return TriggerDecision(
            fire=True,
            reason=FIRED,
            rule_id=rule_id,
            context=engagement_context(campaign_id=campaign),
            priority=priority,
            sequence=sequence,
        )

    def test_highest_priority_wins(self):
        winners, skipped = TriggerEvaluator.resolve_conflicts(
            [self._fired("a", "high", 0), self._fired("b", "critical", 1)]
        )
        assert [w.rule_id for w in winners] == ["b"]
        assert [s.rule_id for s in skipped] == ["a"]
        assert skipped[0].reason == COOLDOWN_EQUIVALENT
        assert not skipped[0].fire
        assert skipped[0].details["winning_rule_id"] == "b"

    def test_equal_priority_earliest_rule_wins(self):
        winners, _ = TriggerEvaluator.resolve_conflicts(
            [self._fired("late", "medium", 5), self._fired("early", "medium", 2)]
        )
        assert winners[0].rule_id == "early"

    def test_different_contexts_do_not_conflict(self):
        winners, skipped = TriggerEvaluator.resolve_conflicts(
            [self._fired("a", "low", 0, "c1"), self._fired("b", "low", 1, "c2")]
        )
        assert len(winners) == 2
        assert skipped == []

    def test_non_fired_decisions_ignored(self):
        quiet = TriggerDecision(fire=False, reason=CONDITION_NOT_MET, rule_id="x")
        winners, skipped = TriggerEvaluator.resolve_conflicts([quiet])
        assert winners == [] and skipped == []
