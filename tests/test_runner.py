"""Tests for the action runner: lifecycle, retries, timeout, cancellation and fallback."""

import threading
import uuid

import pytest

from action_engine.exceptions import (
    InvalidTransitionError,
    MissingParameterError,
    PermanentActionError,
    TransientActionError,
)
from action_engine.models import ActionLog, ActionStatus
from action_engine.services.actions import ActionConfig, ExecutorResult
from action_engine.services.actions.builtin import CampaignStateExecutor
from action_engine.services.runner import ActionRequest, ActionRunner, transition
from tests.conftest import (
    ScriptedExecutor,
    SlowExecutor,
    engagement_context,
    fast_policy,
    make_registry,
    make_spec,
    notify_spec,
    setup_test_db,
)


def _request(**overrides) -> ActionRequest:
    values = dict(
        agent_kind="content",
        action_kind="boost_engagement",
        context=engagement_context(),
        trigger_value=1.2,
        threshold=2.0,
    )
    values.update(overrides)
    return ActionRequest(**values)


class TestTransition:
    def _log(self, status: str, retry_count: int = 0, max_retries: int = 1) -> ActionLog:
        return ActionLog(
            id=uuid.uuid4(),
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
            executed_at=None,
            completed_at=None,
        )

    def test_running_sets_executed_at(self):
        log = self._log("pending")
        transition(log, ActionStatus.RUNNING)
        assert log.status == "running"
        assert log.executed_at is not None

    def test_retry_increments_count(self):
        log = self._log("running")
        transition(log, ActionStatus.PENDING)
        assert log.retry_count == 1

    def test_retry_beyond_budget_rejected(self):
        log = self._log("running", retry_count=1, max_retries=1)
        with pytest.raises(InvalidTransitionError):
            transition(log, ActionStatus.PENDING)

    def test_pending_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            transition(self._log("pending"), ActionStatus.COMPLETED)

    def test_terminal_states_are_final(self):
        for status in ("completed", "failed", "cancelled"):
            with pytest.raises(InvalidTransitionError):
                transition(self._log(status), ActionStatus.RUNNING)

    def test_terminal_sets_completed_at(self):
        log = self._log("running")
        transition(log, ActionStatus.FAILED)
        assert log.completed_at is not None


class TestActionRunner:
    def setup_method(self):
        self.engine, self.SessionLocal = setup_test_db()
        self.db = self.SessionLocal()

    def teardown_method(self):
        self.db.close()

    def _runner(self, *entries) -> ActionRunner:
        return ActionRunner(make_registry(*entries))

    def test_success_records_impact(self):
        executor = ScriptedExecutor([ExecutorResult(success=True, message="boosted", post_value=2.4)])
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request())

        assert result.success
        assert result.status == "completed"
        assert result.message == "boosted"
        log = self.db.get(ActionLog, uuid.UUID(result.action_log_id))
        assert log.retry_count == 0
        assert log.impact_metrics["pre_value"] == 1.2
        assert log.impact_metrics["post_value"] == 2.4
        assert log.impact_metrics["delta"] == pytest.approx(1.2)
        assert log.context_key == engagement_context().key
        assert log.executed_at is not None and log.completed_at is not None
        assert executor.calls[0].attempt == 1

    def test_transient_failure_retried_until_budget(self):
        executor = ScriptedExecutor([TransientActionError("platform busy")])
        spec = make_spec("boost_engagement", retry_policy=fast_policy(max_retries=2))
        runner = self._runner((spec, executor))

        result = runner.run(self.db, _request())

        assert not result.success
        assert result.status == "failed"
        assert result.retry_count == 2
        assert len(executor.calls) == 3
        assert [c.attempt for c in executor.calls] == [1, 2, 3]
        assert result.error == "platform busy"
        assert result.fallback is None

    def test_recovers_after_transient_failure(self):
        executor = ScriptedExecutor(
            [ExecutorResult(success=False, message="try again"), ExecutorResult(success=True)]
        )
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request())

        assert result.success
        assert result.retry_count == 1
        assert result.error is None

    def test_unexpected_exception_is_retryable(self):
        executor = ScriptedExecutor([RuntimeError("boom"), ExecutorResult(success=True)])
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request())

        assert result.success
        assert len(executor.calls) == 2

    def test_permanent_failure_not_retried(self):
        executor = ScriptedExecutor([PermanentActionError("campaign deleted")])
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request())

        assert result.status == "failed"
        assert len(executor.calls) == 1
        log = self.db.get(ActionLog, uuid.UUID(result.action_log_id))
        assert log.retry_count == 0
        assert log.max_retries == 0
        assert log.impact_metrics["configured_max_retries"] == 3

    def test_non_retryable_result_not_retried(self):
        executor = ScriptedExecutor([ExecutorResult(success=False, retryable=False, message="bad input")])
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request())

        assert result.status == "failed"
        assert len(executor.calls) == 1

    def test_timeout_counts_as_failed_attempt(self):
        executor = SlowExecutor(2.0)
        spec = make_spec("boost_engagement", retry_policy=fast_policy(max_retries=0, timeout_seconds=0.1))
        runner = self._runner((spec, executor))

        result = runner.run(self.db, _request())

        assert result.status == "failed"
        assert "timed out" in result.error

    def test_cancel_event_cancels_attempt(self):
        executor = SlowExecutor(2.0)
        runner = self._runner((make_spec("boost_engagement"), executor))
        cancel = threading.Event()
        cancel.set()

        result = runner.run(self.db, _request(), cancel_event=cancel)

        assert result.status == "cancelled"
        assert not result.success
        assert result.fallback is None

    def test_configuration_error_persists_failed_log(self):
        runner = self._runner((notify_spec(), ScriptedExecutor([ExecutorResult(success=True)])))

        with pytest.raises(MissingParameterError) as exc:
            runner.run(self.db, _request(action_kind="notify_team", config=ActionConfig()))

        log = self.db.get(ActionLog, uuid.UUID(exc.value.details["action_log_id"]))
        assert log.status == "failed"
        assert log.max_retries == 0
        assert log.error_message.startswith("Configuration error")
        assert log.impact_metrics["configuration_error"] is True
        assert log.learned_at is not None

    def test_rule_retry_override(self):
        executor = ScriptedExecutor([TransientActionError("flaky")])
        runner = self._runner((make_spec("boost_engagement"), executor))

        result = runner.run(self.db, _request(max_retries=1))

        assert result.retry_count == 1
        assert len(executor.calls) == 2

    def test_fallback_runs_after_failure(self):
        primary = ScriptedExecutor([ExecutorResult(success=False, retryable=False, message="api down")])
        fallback = ScriptedExecutor([ExecutorResult(success=True, message="team notified")])
        runner = self._runner(
            (make_spec("boost_engagement", fallback_action_kind="notify_team"), primary),
            (notify_spec(), fallback),
        )

        result = runner.run(self.db, _request())

        assert result.status == "failed"
        assert result.fallback is not None
        assert result.fallback.success
        assert result.fallback.action_kind == "notify_team"
        child = self.db.get(ActionLog, uuid.UUID(result.fallback.action_log_id))
        assert child.parent_action_id == uuid.UUID(result.action_log_id)
        assert child.triggered_by == "fallback"
        assert "api down" in child.action_config_json["message"]

    def test_failed_fallback_does_not_chain(self):
        primary = ScriptedExecutor([ExecutorResult(success=False, retryable=False)])
        fallback = ScriptedExecutor([ExecutorResult(success=False, retryable=False)])
        runner = self._runner(
            (make_spec("boost_engagement", fallback_action_kind="notify_team"), primary),
            (make_spec("notify_team", fallback_action_kind="boost_engagement"), fallback),
        )

        result = runner.run(self.db, _request())

        assert result.fallback is not None
        assert not result.fallback.success
        assert result.fallback.fallback is None
        assert len(primary.calls) == 1

    def test_builtin_result_cache_released_when_terminal(self):
        executor = CampaignStateExecutor("paused")
        runner = self._runner((make_spec("pause_campaign"), executor))

        result = runner.run(self.db, _request(action_kind="pause_campaign", campaign_id="spring"))

        assert result.success
        assert executor.cached_results == 0
