from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from action_engine import models  # noqa: F401  -- ensure all models are registered
from action_engine.db import Base
from action_engine.models import ActionLog, ActionRule
from action_engine.services.actions import (
    ActionConfig,
    ActionContext,
    ActionRegistry,
    ActionSpec,
    ExecutorResult,
    RetryPolicy,
)
from action_engine.services.metrics import InMemoryMetricSource, MetricContext
from action_engine.services.repository import ActionRepository


# ---------------------------------------------------------------------------
# Test DB
# ---------------------------------------------------------------------------


def setup_test_db():
    """Create an in-memory SQLite engine and session factory for sync tests."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(engine)
    return engine, TestingSessionLocal


def setup_file_db(path):
    """File-backed SQLite for tests where worker threads need their own connections."""
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(engine)
    return engine, TestingSessionLocal


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class ScriptedExecutor:
    """Returns (or raises) queued outcomes in order; the last one repeats."""

    def __init__(self, outcomes: list[ExecutorResult | Exception]):
        self.outcomes = list(outcomes)
        self.calls: list[ActionContext] = []

    async def execute(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        self.calls.append(context)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowExecutor:
    """Sleeps before succeeding; used for timeout and cancellation."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.calls = 0

    async def execute(self, config: ActionConfig, context: ActionContext) -> ExecutorResult:
        self.calls += 1
        await asyncio.sleep(self.seconds)
        return ExecutorResult(success=True, message="finally done")


def fast_policy(max_retries: int = 3, timeout_seconds: float = 5.0) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries,
        retry_delay_seconds=0.0,
        backoff_multiplier=1.0,
        timeout_seconds=timeout_seconds,
    )


def make_spec(action_kind: str, agents: tuple[str, ...] = ("content", "social", "ad"), **kwargs) -> ActionSpec:
    kwargs.setdefault("retry_policy", fast_policy())
    return ActionSpec(
        action_kind=action_kind,
        description=f"test action {action_kind}",
        compatible_agents=frozenset(agents),
        **kwargs,
    )


def notify_spec() -> ActionSpec:
    return make_spec(
        "notify_team",
        agents=("content", "email", "social", "support", "trend", "seo", "ad"),
        required_params=("message",),
        retry_policy=fast_policy(max_retries=0),
    )


def make_registry(*entries: tuple[ActionSpec, Any]) -> ActionRegistry:
    registry = ActionRegistry()
    for spec, executor in entries:
        registry.register(spec, executor)
    return registry


# ---------------------------------------------------------------------------
# Rules and metrics
# ---------------------------------------------------------------------------


RULE_DEFAULTS: dict[str, Any] = dict(
    name="Low engagement",
    description=None,
    agent_kind="content",
    action_kind="boost_engagement",
    metric_type="engagement",
    metric_subtype=None,
    category=None,
    condition="less_than",
    threshold=2.0,
    time_window_seconds=3600,
    consecutive_count=1,
    cooldown_seconds=3600,
    priority="medium",
    max_retries=None,
    enabled=True,
    campaign_ids=[],
    regions=[],
    platforms=[],
    fallback_action_kind=None,
    action_config_json={},
)


def build_rule(**overrides: Any) -> ActionRule:
    """Unsaved rule with every field set explicitly."""
    values = dict(RULE_DEFAULTS)
    values.update(overrides)
    values.setdefault("id", uuid.uuid4())
    values.setdefault("last_triggered", None)
    values.setdefault("trigger_count", 0)
    return ActionRule(**values)


def create_rule(db: Session, **overrides: Any) -> ActionRule:
    values = dict(RULE_DEFAULTS)
    values.update(overrides)
    return ActionRepository(db).create_rule(values)


def engagement_context(**overrides: Any) -> MetricContext:
    values: dict[str, Any] = dict(agent_kind="content", metric_type="engagement")
    values.update(overrides)
    return MetricContext(**values)


def add_action_log(
    db: Session,
    context: MetricContext,
    *,
    status: str = "completed",
    trigger_value: float | None = 1.2,
    post_value: float | None = 2.4,
    executed_at: datetime | None = None,
    error: str | None = None,
    action_kind: str = "boost_engagement",
) -> ActionLog:
    """Persist an action log as if the runner had already driven it to *status*."""
    executed_at = executed_at or datetime.now(tz=timezone.utc) - timedelta(minutes=2)
    impact: dict[str, Any] = {"pre_value": trigger_value}
    if post_value is not None:
        impact["post_value"] = post_value
    terminal = status in ("completed", "failed", "cancelled")
    log = ActionRepository(db).create_action_log(
        agent_kind=context.agent_kind,
        action_kind=action_kind,
        campaign_id=context.campaign_id,
        context_key=context.key,
        metric_type=context.metric_type,
        metric_context=context.to_dict(),
        trigger_value=trigger_value,
        threshold=2.0,
        status=status,
        retry_count=0,
        max_retries=0,
        executed_at=executed_at,
        completed_at=executed_at + timedelta(minutes=1) if terminal else None,
        impact_metrics=impact,
        error_message=error,
    )
    db.commit()
    return log


def seed_history(
    source: InMemoryMetricSource,
    context: MetricContext,
    values: list[float],
    *,
    end: datetime | None = None,
    step: timedelta = timedelta(minutes=5),
) -> datetime:
    """Record *values* ending at *end* (default one minute ago); returns the last timestamp."""
    end = end or datetime.now(tz=timezone.utc) - timedelta(minutes=1)
    start = end - step * (len(values) - 1)
    for index, value in enumerate(values):
        source.record(context, value, timestamp=start + step * index)
    return end
