"""Tests for the action registry, typed action config and built-in executors."""

import asyncio

import pytest

from action_engine.exceptions import (
    ConfigurationError,
    IncompatibleAgentError,
    MissingParameterError,
    UnknownActionError,
)
from action_engine.services.actions import (
    ActionConfig,
    ActionContext,
    ActionRegistry,
    RetryPolicy,
    build_default_registry,
)
from action_engine.services.actions import builtin
from action_engine.services.actions.builtin import (
    BudgetAdjustmentExecutor,
    EngagementBoostExecutor,
    NotificationExecutor,
)
from tests.conftest import ScriptedExecutor, make_spec


def _context(**overrides) -> ActionContext:
    values = dict(action_log_id="log-1", agent_kind="ad", action_kind="adjust_budget_up", campaign_id="c1")
    values.update(overrides)
    return ActionContext(**values)


class TestRetryPolicy:
    def test_exponential_backoff(self):
        policy = RetryPolicy(max_retries=3, retry_delay_seconds=30, backoff_multiplier=2)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [30, 60, 120]

    def test_zero_delay(self):
        policy = RetryPolicy(retry_delay_seconds=0.0)
        assert policy.delay_for(5) == 0.0


class TestActionConfig:
    def test_unknown_options_go_to_extra(self):
        config = ActionConfig.from_dict({"message": "hi", "channel_id": "C42"})
        assert config.message == "hi"
        assert config.extra == {"channel_id": "C42"}
        assert config.get("channel_id") == "C42"
        assert config.has("message")
        assert not config.has("reason")

    def test_numeric_options_are_coerced(self):
        config = ActionConfig.from_dict({"adjustment_percent": 10})
        assert config.adjustment_percent == 10.0
        assert isinstance(config.adjustment_percent, float)

    def test_non_numeric_option_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            ActionConfig.from_dict({"boost_factor": "lots"})
        assert exc.value.details["option"] == "boost_factor"

    def test_bool_is_not_numeric(self):
        with pytest.raises(ConfigurationError):
            ActionConfig.from_dict({"adjustment_percent": True})

    def test_to_dict_skips_unset(self):
        config = ActionConfig.from_dict({"reason": "low ctr", "extra": {"a": 1}, "b": 2})
        assert config.to_dict() == {"reason": "low ctr", "extra": {"a": 1, "b": 2}}


class TestActionRegistry:
    def test_register_and_resolve(self):
        executor = ScriptedExecutor([])
        registry = ActionRegistry()
        registry.register(make_spec("ping"), executor)

        assert "ping" in registry
        assert registry.resolve("ping") is executor
        assert registry.get_spec("ping").action_kind == "ping"
        assert registry.get_spec("missing") is None

    def test_resolve_unknown_raises(self):
        with pytest.raises(UnknownActionError):
            ActionRegistry().resolve("nope")

    def test_self_fallback_rejected(self):
        with pytest.raises(ConfigurationError):
            ActionRegistry().register(make_spec("loop", fallback_action_kind="loop"), ScriptedExecutor([]))

    def test_compatible_actions_filters_by_agent(self):
        registry = ActionRegistry()
        registry.register(make_spec("a", agents=("email",)), ScriptedExecutor([]))
        registry.register(make_spec("b", agents=("ad",)), ScriptedExecutor([]))
        assert [s.action_kind for s in registry.compatible_actions("ad")] == ["b"]


class TestDefaultRegistryValidation:
    def setup_method(self):
        self.registry = build_default_registry()

    def test_builtin_catalog(self):
        kinds = [s.action_kind for s in self.registry.list_specs()]
        assert len(kinds) == 21
        assert kinds == sorted(kinds)
        assert self.registry.get_spec("boost_engagement").fallback_action_kind == "refresh_content"
        assert self.registry.get_spec("pause_campaign").fallback_action_kind == "notify_team"

    def test_every_fallback_is_registered(self):
        for spec in self.registry.list_specs():
            if spec.fallback_action_kind:
                assert spec.fallback_action_kind in self.registry

    def test_incompatible_agent(self):
        with pytest.raises(IncompatibleAgentError) as exc:
            self.registry.validate("email", "boost_engagement", ActionConfig())
        assert "email" not in exc.value.details["compatible_agents"]

    def test_missing_required_param(self):
        with pytest.raises(MissingParameterError) as exc:
            self.registry.validate("content", "notify_team", ActionConfig())
        assert exc.value.details["missing"] == ["message"]

    def test_campaign_required(self):
        with pytest.raises(MissingParameterError) as exc:
            self.registry.validate("ad", "pause_campaign", ActionConfig())
        assert exc.value.details["missing"] == ["campaign_id"]

    def test_campaign_check_can_be_skipped(self):
        spec = self.registry.validate("ad", "pause_campaign", ActionConfig(), check_campaign=False)
        assert spec.action_kind == "pause_campaign"

    def test_valid_request(self):
        spec = self.registry.validate(
            "ad", "adjust_budget_up", ActionConfig(adjustment_percent=15.0), campaign_id="c1"
        )
        assert spec.requires_campaign


class TestBuiltinExecutors:
    def test_budget_adjustment_out_of_range_is_permanent(self):
        result = asyncio.run(
            BudgetAdjustmentExecutor(+1).execute(ActionConfig(adjustment_percent=150.0), _context())
        )
        assert not result.success
        assert not result.retryable

    def test_budget_adjustment_records_rollback(self):
        result = asyncio.run(
            BudgetAdjustmentExecutor(-1).execute(ActionConfig(adjustment_percent=20.0), _context())
        )
        assert result.success
        assert result.data["adjustment_percent"] == -20.0
        assert result.rollback_data["adjustment_percent"] == 20.0

    def test_replay_returns_cached_result(self):
        executor = EngagementBoostExecutor()
        context = _context(agent_kind="content", action_kind="boost_engagement")
        first = asyncio.run(executor.execute(ActionConfig(boost_factor=1.5), context))
        second = asyncio.run(executor.execute(ActionConfig(boost_factor=3.0), context))
        assert second is first
        assert second.data["boost_factor"] == 1.5

    def test_release_drops_cached_result(self):
        executor = EngagementBoostExecutor()
        context = _context(agent_kind="content", action_kind="boost_engagement")
        first = asyncio.run(executor.execute(ActionConfig(boost_factor=1.5), context))
        assert executor.cached_results == 1

        executor.release(context.action_log_id)

        assert executor.cached_results == 0
        again = asyncio.run(executor.execute(ActionConfig(boost_factor=3.0), context))
        assert again is not first

    def test_cache_is_bounded(self, monkeypatch):
        monkeypatch.setattr(builtin, "MAX_CACHED_RESULTS", 2)
        executor = EngagementBoostExecutor()
        for n in range(3):
            asyncio.run(
                executor.execute(
                    ActionConfig(boost_factor=1.5),
                    _context(action_log_id=f"log-{n}", agent_kind="content", action_kind="boost_engagement"),
                )
            )
        assert executor.cached_results == 2

    def test_notification_payload(self):
        result = asyncio.run(
            NotificationExecutor("team_notification").execute(
                ActionConfig(message="CTR dropped", reason="ignored"),
                _context(action_kind="notify_team"),
            )
        )
        assert result.data["payload"]["message"] == "CTR dropped"
        assert "reason" not in result.data["payload"]
        assert result.data["simulated"] is True
