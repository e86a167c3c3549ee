"""Metric snapshot providers.

The engine never collects metrics itself. It reads snapshots for a
``MetricContext`` through the ``MetricSource`` protocol; ``SqlMetricSource``
reads the externally populated ``agent_metrics`` table and
``InMemoryMetricSource`` is a push-based source for embedding callers and
tests.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from action_engine.models import AgentMetric

# Metric types where a lower value is the better outcome
LOWER_IS_BETTER: frozenset[str] = frozenset(
    {"cost_per_click", "cost_per_acquisition", "bounce_rate", "budget_usage", "response_time"}
)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricContext:
    """Identifies one metric stream."""

    agent_kind: str
    metric_type: str
    metric_subtype: str | None = None
    category: str | None = None
    campaign_id: str | None = None
    region: str | None = None
    platform: str | None = None

    @property
    def key(self) -> str:
        parts = (
            self.agent_kind,
            self.metric_type,
            self.metric_subtype,
            self.category,
            self.campaign_id,
            self.region,
            self.platform,
        )
        return ":".join(p if p is not None else "*" for p in parts)

    @property
    def lower_is_better(self) -> bool:
        return self.metric_type in LOWER_IS_BETTER

    def generic(self) -> MetricContext:
        """The same stream with campaign/region/platform scope removed."""
        return replace(self, campaign_id=None, region=None, platform=None)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricContext:
        return cls(
            agent_kind=data["agent_kind"],
            metric_type=data["metric_type"],
            metric_subtype=data.get("metric_subtype"),
            category=data.get("category"),
            campaign_id=data.get("campaign_id"),
            region=data.get("region"),
            platform=data.get("platform"),
        )


@dataclass(frozen=True)
class MetricSnapshot:
    """One observation of a metric stream."""

    value: float
    timestamp: datetime
    previous_value: float | None = None
    sample_count: int = 1
    performance: str | None = None


class MetricSource(Protocol):
    def get_snapshot(self, context: MetricContext) -> MetricSnapshot | None: ...

    def get_history(
        self, context: MetricContext, window: timedelta, *, now: datetime | None = None
    ) -> list[MetricSnapshot]: ...

    def list_contexts(
        self,
        agent_kind: str,
        metric_type: str,
        *,
        metric_subtype: str | None = None,
        category: str | None = None,
        since: datetime | None = None,
    ) -> list[MetricContext]: ...


def _stream_matches(
    context: MetricContext,
    agent_kind: str,
    metric_type: str,
    metric_subtype: str | None,
    category: str | None,
) -> bool:
    if context.agent_kind != agent_kind or context.metric_type != metric_type:
        return False
    if metric_subtype is not None and context.metric_subtype != metric_subtype:
        return False
    if category is not None and context.category != category:
        return False
    return True


# ---------------------------------------------------------------------------
# In-memory source
# ---------------------------------------------------------------------------


class InMemoryMetricSource:
    """Thread-safe push-based metric source."""

    def __init__(self) -> None:
        self._streams: dict[MetricContext, list[MetricSnapshot]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        context: MetricContext,
        value: float,
        *,
        timestamp: datetime | None = None,
        previous_value: float | None = None,
        sample_count: int = 1,
        performance: str | None = None,
    ) -> MetricSnapshot:
        """Append an observation; ``previous_value`` defaults to the stream's last value."""
        with self._lock:
            stream = self._streams.setdefault(context, [])
            if previous_value is None and stream:
                previous_value = stream[-1].value
            snapshot = MetricSnapshot(
                value=value,
                timestamp=as_utc(timestamp) if timestamp else datetime.now(tz=timezone.utc),
                previous_value=previous_value,
                sample_count=sample_count,
                performance=performance,
            )
            stream.append(snapshot)
            stream.sort(key=lambda s: s.timestamp)
            return snapshot

    def get_snapshot(self, context: MetricContext) -> MetricSnapshot | None:
        with self._lock:
            stream = self._streams.get(context)
            return stream[-1] if stream else None

    def get_history(
        self, context: MetricContext, window: timedelta, *, now: datetime | None = None
    ) -> list[MetricSnapshot]:
        now = as_utc(now) if now else datetime.now(tz=timezone.utc)
        cutoff = now - window
        with self._lock:
            stream = list(self._streams.get(context, []))
        return [s for s in stream if cutoff <= s.timestamp <= now]

    def list_contexts(
        self,
        agent_kind: str,
        metric_type: str,
        *,
        metric_subtype: str | None = None,
        category: str | None = None,
        since: datetime | None = None,
    ) -> list[MetricContext]:
        with self._lock:
            items = list(self._streams.items())
        contexts = []
        for context, stream in items:
            if not stream or not _stream_matches(
                context, agent_kind, metric_type, metric_subtype, category
            ):
                continue
            if since is not None and stream[-1].timestamp < as_utc(since):
                continue
            contexts.append(context)
        return sorted(contexts, key=lambda c: c.key)


# ---------------------------------------------------------------------------
# SQL source
# ---------------------------------------------------------------------------


class SqlMetricSource:
    """Reads ``AgentMetric`` rows. Each call opens its own short-lived session."""

    _CONTEXT_COLUMNS = (
        "agent_kind",
        "metric_type",
        "metric_subtype",
        "category",
        "campaign_id",
        "region",
        "platform",
    )

    def __init__(self, bind) -> None:
        self._bind = bind

    def _stream_filter(self, stmt, context: MetricContext):
        for name in self._CONTEXT_COLUMNS:
            column = getattr(AgentMetric, name)
            value = getattr(context, name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        return stmt

    @staticmethod
    def _to_snapshot(row: AgentMetric) -> MetricSnapshot:
        return MetricSnapshot(
            value=float(row.value),
            timestamp=as_utc(row.recorded_at),
            previous_value=float(row.previous_value) if row.previous_value is not None else None,
            sample_count=row.sample_count,
            performance=row.performance,
        )

    def get_snapshot(self, context: MetricContext) -> MetricSnapshot | None:
        stmt = self._stream_filter(select(AgentMetric), context)
        stmt = stmt.order_by(AgentMetric.recorded_at.desc()).limit(1)
        with Session(self._bind) as session:
            row = session.execute(stmt).scalars().first()
            return self._to_snapshot(row) if row is not None else None

    def get_history(
        self, context: MetricContext, window: timedelta, *, now: datetime | None = None
    ) -> list[MetricSnapshot]:
        now = as_utc(now) if now else datetime.now(tz=timezone.utc)
        stmt = self._stream_filter(select(AgentMetric), context).where(
            AgentMetric.recorded_at >= now - window,
            AgentMetric.recorded_at <= now,
        )
        stmt = stmt.order_by(AgentMetric.recorded_at.asc())
        with Session(self._bind) as session:
            return [self._to_snapshot(r) for r in session.execute(stmt).scalars().all()]

    def list_contexts(
        self,
        agent_kind: str,
        metric_type: str,
        *,
        metric_subtype: str | None = None,
        category: str | None = None,
        since: datetime | None = None,
    ) -> list[MetricContext]:
        columns = [getattr(AgentMetric, name) for name in self._CONTEXT_COLUMNS]
        stmt = select(*columns).distinct().where(
            AgentMetric.agent_kind == agent_kind,
            AgentMetric.metric_type == metric_type,
        )
        if metric_subtype is not None:
            stmt = stmt.where(AgentMetric.metric_subtype == metric_subtype)
        if category is not None:
            stmt = stmt.where(AgentMetric.category == category)
        if since is not None:
            stmt = stmt.where(AgentMetric.recorded_at >= since)
        with Session(self._bind) as session:
            rows = session.execute(stmt).all()
        contexts = [MetricContext(**dict(zip(self._CONTEXT_COLUMNS, row))) for row in rows]
        return sorted(contexts, key=lambda c: c.key)
