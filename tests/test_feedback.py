"""Tests for the feedback loop: scoring, weight versioning, rollback and batches."""

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from action_engine.exceptions import (
    ConfigurationError,
    MissingParameterError,
    WeightUpdateError,
    WeightVersionConflict,
)
from action_engine.models import ActionLog, LearningLog, MetricWeight, PerformanceLabel
from action_engine.services.actions import ActionConfig, ExecutorResult
from action_engine.services.feedback import (
    APPLIED,
    PENDING,
    REPLAYED,
    ROLLBACK_SKIPPED,
    ROLLED_BACK,
    SKIPPED,
    UNVALIDATED,
    FeedbackLoopEngine,
    LearningConfig,
    performance_label,
)
from action_engine.services.metrics import InMemoryMetricSource
from action_engine.services.repository import ActionRepository
from action_engine.services.runner import ActionRequest, ActionRunner
from tests.conftest import (
    ScriptedExecutor,
    add_action_log,
    engagement_context,
    make_registry,
    notify_spec,
    seed_history,
    setup_test_db,
)

STABLE_HISTORY = [1.2, 1.21, 1.19, 1.2, 1.2]


class TestScoring:
    def setup_method(self):
        self.engine = FeedbackLoopEngine(InMemoryMetricSource(), LearningConfig())

    def test_improvement_is_relative(self):
        assert self.engine.improvement(1.2, 2.4) == pytest.approx(1.0)
        assert self.engine.improvement(10.0, 8.0) == pytest.approx(-0.2)

    def test_improvement_inverted_when_lower_is_better(self):
        assert self.engine.improvement(10.0, 8.0, lower_is_better=True) == pytest.approx(0.2)

    def test_improvement_from_zero_baseline_is_finite(self):
        assert self.engine.improvement(0.0, 0.0) == 0.0

    def test_confidence_blends_reliability_and_stability(self):
        score, stats = self.engine.confidence([1.0] * 5)
        assert score == pytest.approx(1.0)
        assert stats["volatility"] == 0.0

        score, stats = self.engine.confidence([1.0, 1.0])
        assert stats["reliability"] == pytest.approx(0.4)
        assert score == pytest.approx(0.7)

    def test_confidence_of_nothing(self):
        assert self.engine.confidence([])[0] == 0.0

    def test_weight_is_clamped(self):
        assert self.engine.next_weight(9.99, 1000.0, 0) == 10.0
        assert self.engine.next_weight(0.2, -1000.0, 0) == 0.1

    def test_learning_rate_decays(self):
        assert self.engine.effective_learning_rate(0) == pytest.approx(0.1)
        assert self.engine.effective_learning_rate(1) == pytest.approx(0.099)

    def test_performance_labels(self):
        assert performance_label(0.5) is PerformanceLabel.EXCELLENT
        assert performance_label(0.1) is PerformanceLabel.GOOD
        assert performance_label(0.0) is PerformanceLabel.AVERAGE
        assert performance_label(-0.1) is PerformanceLabel.POOR
        assert performance_label(-0.5) is PerformanceLabel.CRITICAL
        assert performance_label(0.5, failed=True) is PerformanceLabel.CRITICAL


class TestLearningConfig:
    def test_update_returns_new_config(self):
        config = LearningConfig()
        updated = config.updated(learning_rate=0.2)
        assert updated.learning_rate == 0.2
        assert config.learning_rate == 0.1

    def test_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            LearningConfig().updated(learning_rate=2.0)
        assert exc.value.details["problems"]

    def test_inverted_weight_bounds_rejected(self):
        with pytest.raises(ConfigurationError):
            LearningConfig().updated(weight_min=5.0, weight_max=1.0)

    def test_unknown_option_rejected(self):
        with pytest.raises(ConfigurationError):
            LearningConfig().updated(warp_speed=9)

    def test_settle_delay_override(self):
        config = LearningConfig()
        assert config.settle_delay_for("conversion_rate") == timedelta(hours=1)
        assert config.settle_delay_for("engagement") == timedelta(seconds=900)


class TestProcessOutcome:
    def setup_method(self):
        self.engine, self.SessionLocal = setup_test_db()
        self.db = self.SessionLocal()
        self.source = InMemoryMetricSource()
        self.feedback = FeedbackLoopEngine(self.source, LearningConfig())
        self.context = engagement_context()
        self.repo = ActionRepository(self.db)
        self.repo.seed_weight(self.context, threshold=2.0)
        self.db.commit()

    def teardown_method(self):
        self.db.close()

    def _seed_stable_history(self, log: ActionLog) -> None:
        executed = log.executed_at
        if executed.tzinfo is None:
            executed = executed.replace(tzinfo=timezone.utc)
        seed_history(self.source, self.context, STABLE_HISTORY, end=executed - timedelta(minutes=1))

    def test_applies_new_weight_version(self):
        log = add_action_log(self.db, self.context)
        self._seed_stable_history(log)

        analysis = self.feedback.process_outcome(self.db, log.id)

        assert analysis.status == APPLIED
        assert analysis.validated
        assert analysis.improvement == pytest.approx(1.0)
        assert analysis.confidence > 0.95
        assert analysis.weight_version == 2
        assert analysis.previous_weight == 1.0
        assert analysis.new_weight == pytest.approx(1.02)

        active = self.repo.get_active_weight(self.context.key)
        assert active.version == 2
        assert active.threshold == pytest.approx(1.92)
        assert active.performance_score == pytest.approx(3.2)
        assert active.adjustment_count == 1

        kinds = {a["learning_type"] for a in analysis.adjustments}
        assert kinds == {"weight_adjustment", "threshold_calibration", "confidence_tuning"}
        self.db.expire_all()
        assert self.db.get(ActionLog, log.id).learned_at is not None

    def test_only_one_active_version(self):
        first = add_action_log(self.db, self.context, executed_at=datetime.now(tz=timezone.utc) - timedelta(minutes=3))
        self._seed_stable_history(first)
        self.feedback.process_outcome(self.db, first.id)
        second = add_action_log(self.db, self.context)
        third = self.feedback.process_outcome(self.db, second.id)

        assert third.weight_version == 3
        self.db.expire_all()
        history = self.repo.weight_history(self.context.key)
        assert [w.version for w in history] == [1, 2, 3]
        assert [w.is_active for w in history] == [False, False, True]
        assert history[2].previous_version_id == history[1].id

    def test_insufficient_samples_is_unvalidated(self):
        log = add_action_log(self.db, self.context)
        seed_history(self.source, self.context, [1.2, 1.3], end=log.executed_at - timedelta(minutes=1))

        analysis = self.feedback.process_outcome(self.db, log.id)

        assert analysis.status == UNVALIDATED
        assert not analysis.validated
        assert analysis.sample_size == 2
        assert analysis.weight_version == 1
        assert "Insufficient data" in analysis.recommendation
        assert self.repo.get_active_weight(self.context.key).version == 1

    def test_waits_for_post_action_observation(self):
        log = add_action_log(self.db, self.context, post_value=None)
        self._seed_stable_history(log)

        analysis = self.feedback.process_outcome(self.db, log.id)

        assert analysis.status == PENDING
        self.db.expire_all()
        assert self.db.get(ActionLog, log.id).learned_at is None

    def test_running_action_is_pending(self):
        log = add_action_log(self.db, self.context, status="running")
        analysis = self.feedback.process_outcome(self.db, log.id)
        assert analysis.status == PENDING

    def test_failure_rolls_back_and_replays(self):
        applied = add_action_log(self.db, self.context, executed_at=datetime.now(tz=timezone.utc) - timedelta(minutes=3))
        self._seed_stable_history(applied)
        self.feedback.process_outcome(self.db, applied.id)
        failed = add_action_log(self.db, self.context, status="failed", post_value=None, error="api down")

        analysis = self.feedback.process_outcome(self.db, failed.id)

        assert analysis.status == ROLLED_BACK
        assert analysis.rolled_back
        assert analysis.weight_version == 1
        self.db.expire_all()
        assert self.repo.get_active_weight(self.context.key).version == 1

        logs_before = self.db.query(LearningLog).count()
        replay = self.feedback.process_outcome(self.db, failed.id)
        assert replay.status == REPLAYED
        assert replay.rolled_back
        assert replay.weight_version == 1
        assert self.db.query(LearningLog).count() == logs_before
        assert self.repo.latest_version(self.context.key) == 2

    def test_failure_without_previous_version_skips_rollback(self):
        failed = add_action_log(self.db, self.context, status="failed", post_value=None)

        analysis = self.feedback.process_outcome(self.db, failed.id)

        assert analysis.status == ROLLBACK_SKIPPED
        assert not analysis.rolled_back
        assert self.repo.get_active_weight(self.context.key).version == 1

    def test_replay_of_applied_outcome(self):
        log = add_action_log(self.db, self.context)
        self._seed_stable_history(log)
        first = self.feedback.process_outcome(self.db, log.id)

        again = self.feedback.process_outcome(self.db, log.id)

        assert again.status == REPLAYED
        assert again.weight_version == first.weight_version
        assert again.new_weight == pytest.approx(first.new_weight)
        assert self.repo.latest_version(self.context.key) == 2

    def test_configuration_failure_is_not_learned_from(self):
        applied = add_action_log(self.db, self.context, executed_at=datetime.now(tz=timezone.utc) - timedelta(minutes=3))
        self._seed_stable_history(applied)
        self.feedback.process_outcome(self.db, applied.id)
        runner = ActionRunner(make_registry((notify_spec(), ScriptedExecutor([ExecutorResult(success=True)]))))
        request = ActionRequest(
            agent_kind="content",
            action_kind="notify_team",
            context=self.context,
            trigger_value=1.2,
            config=ActionConfig(),
        )
        with pytest.raises(MissingParameterError) as exc:
            runner.run(self.db, request)
        log_id = uuid.UUID(exc.value.details["action_log_id"])

        batch = self.feedback.process_batch(self.db, time_window_hours=24, force_run=True)

        assert batch.actions_processed == 0
        assert batch.rolled_back == 0
        self.db.expire_all()
        assert self.repo.get_active_weight(self.context.key).version == 2

        analysis = self.feedback.process_outcome(self.db, log_id)
        assert analysis.status == SKIPPED
        assert not analysis.rolled_back
        assert self.repo.get_active_weight(self.context.key).version == 2


class TestOptimisticVersioning:
    def setup_method(self):
        self.engine, self.SessionLocal = setup_test_db()
        self.db = self.SessionLocal()
        self.source = InMemoryMetricSource()
        self.feedback = FeedbackLoopEngine(self.source, LearningConfig().updated(max_cas_retries=2))
        self.context = engagement_context()
        self.repo = ActionRepository(self.db)
        self.repo.seed_weight(self.context, threshold=2.0)
        self.db.commit()

    def teardown_method(self):
        self.db.close()

    def _settled_log(self, context):
        log = add_action_log(self.db, context)
        executed = log.executed_at
        if executed.tzinfo is None:
            executed = executed.replace(tzinfo=timezone.utc)
        seed_history(self.source, context, STABLE_HISTORY, end=executed - timedelta(minutes=1))
        return log

    def _commit_competing_version(self, swap) -> None:
        other = self.SessionLocal()
        try:
            repo = ActionRepository(other)
            current = repo.get_active_weight(self.context.key)
            competing = MetricWeight(
                context_key=current.context_key,
                agent_kind=current.agent_kind,
                metric_type=current.metric_type,
                weight=1.5,
                baseline_weight=current.baseline_weight,
                threshold=current.threshold,
                version=current.version + 1,
                previous_version_id=current.id,
            )
            swap(repo, current, competing)
            other.commit()
        finally:
            other.close()

    def test_conflicting_writer_forces_retry(self, monkeypatch):
        log = self._settled_log(self.context)
        swap = ActionRepository.swap_active_weight
        attempted: list[int] = []

        def racing_swap(repo, expected, replacement):
            attempted.append(replacement.version)
            if len(attempted) == 1:
                self._commit_competing_version(swap)
            return swap(repo, expected, replacement)

        monkeypatch.setattr(ActionRepository, "swap_active_weight", racing_swap)

        analysis = self.feedback.process_outcome(self.db, log.id)

        assert attempted == [2, 3]
        assert analysis.status == APPLIED
        assert analysis.weight_version == 3
        assert analysis.previous_weight == 1.5
        self.db.expire_all()
        history = self.repo.weight_history(self.context.key)
        assert [w.version for w in history] == [1, 2, 3]
        assert [w.is_active for w in history] == [False, False, True]
        assert history[2].previous_version_id == history[1].id
        assert self.db.get(ActionLog, log.id).learned_at is not None

    def test_swap_rejects_stale_expected_version(self):
        stale = self.repo.get_active_weight(self.context.key)
        self._commit_competing_version(ActionRepository.swap_active_weight)

        replacement = MetricWeight(
            context_key=stale.context_key,
            agent_kind=stale.agent_kind,
            metric_type=stale.metric_type,
            version=2,
            previous_version_id=stale.id,
        )
        with pytest.raises(WeightVersionConflict) as exc:
            self.repo.swap_active_weight(stale, replacement)
        assert exc.value.details["expected_version"] == 1
        self.db.rollback()

    def test_exhausted_retries_raise(self, monkeypatch):
        log = self._settled_log(self.context)
        attempts: list[int] = []

        def always_conflict(repo, expected, replacement):
            attempts.append(replacement.version)
            raise WeightVersionConflict("moved", details={"context_key": replacement.context_key})

        monkeypatch.setattr(ActionRepository, "swap_active_weight", always_conflict)

        with pytest.raises(WeightUpdateError) as exc:
            self.feedback.process_outcome(self.db, log.id)

        assert len(attempts) == 2
        assert exc.value.details["context_key"] == self.context.key
        self.db.expire_all()
        assert self.db.get(ActionLog, log.id).learned_at is None
        assert self.repo.latest_version(self.context.key) == 1

    def test_batch_continues_past_failed_context(self, monkeypatch):
        stuck = engagement_context(campaign_id="stuck")
        healthy = engagement_context(campaign_id="healthy")
        stuck_log = self._settled_log(stuck)
        self._settled_log(healthy)
        swap = ActionRepository.swap_active_weight

        def selective_swap(repo, expected, replacement):
            if replacement.context_key == stuck.key:
                raise WeightVersionConflict("moved", details={"context_key": stuck.key})
            return swap(repo, expected, replacement)

        monkeypatch.setattr(ActionRepository, "swap_active_weight", selective_swap)

        result = self.feedback.process_batch(self.db, time_window_hours=24, force_run=True)

        assert result.contexts_failed == 1
        assert result.contexts_processed == 1
        assert result.applied == 1
        assert [e["context_key"] for e in result.errors] == [stuck.key]
        self.db.expire_all()
        assert self.db.get(ActionLog, stuck_log.id).learned_at is None
        assert self.repo.get_active_weight(healthy.key).version == 1
        assert self.repo.get_active_weight(stuck.key) is None


class TestProcessBatch:
    def setup_method(self):
        self.engine, self.SessionLocal = setup_test_db()
        self.db = self.SessionLocal()
        self.source = InMemoryMetricSource()
        self.feedback = FeedbackLoopEngine(self.source, LearningConfig())

    def teardown_method(self):
        self.db.close()

    def test_window_bounds(self):
        for hours in (0, 169):
            with pytest.raises(ConfigurationError):
                self.feedback.process_batch(self.db, time_window_hours=hours)

    def test_skips_contexts_without_fresh_data(self):
        fresh = engagement_context(campaign_id="fresh")
        quiet = engagement_context(campaign_id="quiet")
        fresh_log = add_action_log(self.db, fresh)
        add_action_log(self.db, quiet)
        executed = fresh_log.executed_at.replace(tzinfo=timezone.utc)
        seed_history(self.source, fresh, STABLE_HISTORY, end=executed - timedelta(minutes=1))

        result = self.feedback.process_batch(self.db, time_window_hours=24)

        assert result.contexts_processed == 1
        assert result.contexts_skipped == 1
        assert result.actions_processed == 1
        assert result.applied == 1
        assert result.average_improvement == pytest.approx(1.0)

    def test_force_run_processes_everything(self):
        add_action_log(self.db, engagement_context(campaign_id="a"))
        add_action_log(self.db, engagement_context(campaign_id="b"))

        result = self.feedback.process_batch(self.db, time_window_hours=24, force_run=True)

        assert result.contexts_processed == 2
        assert result.contexts_skipped == 0
        # no history recorded, so nothing can be validated
        assert result.unvalidated == 2

    def test_cancelled_before_first_context(self):
        add_action_log(self.db, engagement_context(campaign_id="a"))
        cancel = threading.Event()
        cancel.set()

        result = self.feedback.process_batch(
            self.db, time_window_hours=24, force_run=True, cancel_event=cancel
        )

        assert result.cancelled
        assert result.actions_processed == 0
