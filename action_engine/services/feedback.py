"""Feedback loop: learns from action outcomes by versioning ``MetricWeight``.

Once an action reaches COMPLETED or FAILED the metric is measured before and
after it, the improvement is scored and a new weight version is written (or
the previous version restored after a failure). Weights are never mutated in
place; each adjustment inserts a row pointing at its predecessor and moves
the active flag with a compare-and-swap.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from sqlalchemy.orm import Session

from action_engine.exceptions import (
    ConfigurationError,
    NotFoundError,
    WeightUpdateError,
    WeightVersionConflict,
)
from action_engine.models import (
    ActionLog,
    ActionStatus,
    AdjustmentType,
    LearningTriggerType,
    LearningType,
    MetricWeight,
    PerformanceLabel,
)
from action_engine.services.metrics import MetricContext, MetricSource, as_utc
from action_engine.services.repository import ActionRepository
from action_engine.services.runner import CONFIGURATION_ERROR_KEY
from action_engine.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMPROVEMENT_EPSILON = 1e-9
BATCH_WINDOW_HOURS = (1, 168)

# Analysis statuses
APPLIED = "applied"
UNVALIDATED = "unvalidated"
PENDING = "pending"
ROLLED_BACK = "rolled_back"
ROLLBACK_SKIPPED = "rollback_skipped"
REPLAYED = "replayed"
SKIPPED = "skipped"


def performance_label(improvement: float | None, *, failed: bool = False) -> PerformanceLabel:
    """Bucket an improvement score onto the five-level performance scale."""
    if failed:
        return PerformanceLabel.CRITICAL
    if improvement is None:
        return PerformanceLabel.AVERAGE
    if improvement >= 0.2:
        return PerformanceLabel.EXCELLENT
    if improvement >= 0.05:
        return PerformanceLabel.GOOD
    if improvement > -0.05:
        return PerformanceLabel.AVERAGE
    if improvement > -0.2:
        return PerformanceLabel.POOR
    return PerformanceLabel.CRITICAL


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LearningConfig:
    learning_rate: float = 0.1
    confidence_threshold: float = 0.6
    minimum_sample_size: int = 5
    max_adjustment_percent: float = 0.3
    decay_rate: float = 0.01
    stability_weight: float = 0.2
    weight_min: float = 0.1
    weight_max: float = 10.0
    rollback_on_failure: bool = True
    settle_delay_seconds: int = 900
    # Conversions lag clicks; wait longer before reading them back
    settle_delay_overrides: dict[str, int] = field(
        default_factory=lambda: {"conversion_rate": 3600, "cost_per_acquisition": 3600}
    )
    history_window_hours: int = 24
    max_cas_retries: int = 5
    threshold_calibration: bool = True
    confidence_tuning: bool = True

    @classmethod
    def from_settings(cls) -> LearningConfig:
        return cls(
            learning_rate=settings.LEARNING_RATE,
            confidence_threshold=settings.LEARNING_CONFIDENCE_THRESHOLD,
            minimum_sample_size=settings.LEARNING_MINIMUM_SAMPLE_SIZE,
            max_adjustment_percent=settings.LEARNING_MAX_ADJUSTMENT_PERCENT,
            decay_rate=settings.LEARNING_DECAY_RATE,
            stability_weight=settings.LEARNING_STABILITY_WEIGHT,
            weight_min=settings.LEARNING_WEIGHT_MIN,
            weight_max=settings.LEARNING_WEIGHT_MAX,
            rollback_on_failure=settings.LEARNING_ROLLBACK_ON_FAILURE,
            settle_delay_seconds=settings.LEARNING_SETTLE_DELAY_SECONDS,
            history_window_hours=settings.LEARNING_HISTORY_WINDOW_HOURS,
            max_cas_retries=settings.LEARNING_MAX_CAS_RETRIES,
        )

    def settle_delay_for(self, metric_type: str | None) -> timedelta:
        seconds = self.settle_delay_overrides.get(metric_type or "", self.settle_delay_seconds)
        return timedelta(seconds=seconds)

    def updated(self, **changes: Any) -> LearningConfig:
        """Return a copy with *changes* applied; raise ``ConfigurationError`` if out of range."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown learning options: {', '.join(unknown)}", details={"unknown": unknown}
            )
        candidate = replace(self, **changes)
        candidate.validate()
        return candidate

    def validate(self) -> None:
        problems = []
        if not 0.001 <= self.learning_rate <= 1.0:
            problems.append("learning_rate must be within [0.001, 1.0]")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            problems.append("confidence_threshold must be within [0, 1]")
        if self.minimum_sample_size < 1:
            problems.append("minimum_sample_size must be >= 1")
        if not 0.01 <= self.max_adjustment_percent <= 1.0:
            problems.append("max_adjustment_percent must be within [0.01, 1.0]")
        if not 0.0 <= self.decay_rate < 1.0:
            problems.append("decay_rate must be within [0, 1)")
        if not 0.0 <= self.stability_weight <= 1.0:
            problems.append("stability_weight must be within [0, 1]")
        if not 0 < self.weight_min < self.weight_max:
            problems.append("weight bounds must satisfy 0 < weight_min < weight_max")
        if self.settle_delay_seconds < 0:
            problems.append("settle_delay_seconds must be >= 0")
        if self.max_cas_retries < 1:
            problems.append("max_cas_retries must be >= 1")
        if problems:
            raise ConfigurationError("Invalid learning configuration", details={"problems": problems})

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class FeedbackAnalysis:
    """What the feedback loop concluded about one action outcome."""

    action_log_id: str
    status: str
    context_key: str | None = None
    success: bool = False
    improvement: float | None = None
    confidence: float = 0.0
    sample_size: int = 0
    validated: bool = False
    rolled_back: bool = False
    weight_version: int | None = None
    previous_weight: float | None = None
    new_weight: float | None = None
    recommendation: str = ""
    adjustments: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


@dataclass
class BatchLearningResult:
    batch_id: str
    analyses: list[FeedbackAnalysis] = field(default_factory=list)
    actions_processed: int = 0
    contexts_processed: int = 0
    contexts_skipped: int = 0
    contexts_failed: int = 0
    applied: int = 0
    unvalidated: int = 0
    rolled_back: int = 0
    pending: int = 0
    average_confidence: float = 0.0
    average_improvement: float = 0.0
    cancelled: bool = False
    errors: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class FeedbackLoopEngine:
    """Turns action outcomes into weight, threshold and confidence adjustments."""

    def __init__(self, metric_source: MetricSource, config: LearningConfig | None = None) -> None:
        self.metric_source = metric_source
        self.config = config or LearningConfig.from_settings()

    # ---- scoring --------------------------------------------------------------

    @staticmethod
    def improvement(pre: float, post: float, *, lower_is_better: bool = False) -> float:
        score = (post - pre) / max(abs(pre), IMPROVEMENT_EPSILON)
        return -score if lower_is_better else score

    def confidence(self, values: list[float]) -> tuple[float, dict[str, float]]:
        """Blend reliability (sample size) and stability (1 - coefficient of variation)."""
        n = len(values)
        if n == 0:
            return 0.0, {"reliability": 0.0, "stability": 0.0, "volatility": 0.0}
        mean = sum(values) / n
        std = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
        if mean != 0:
            volatility = std / abs(mean)
        else:
            volatility = 0.0 if std == 0 else 1.0
        stability = max(0.0, 1.0 - volatility)
        reliability = min(1.0, n / self.config.minimum_sample_size)
        score = 0.5 * reliability + 0.5 * stability
        return score, {"reliability": reliability, "stability": stability, "volatility": volatility}

    def effective_learning_rate(self, adjustment_count: int) -> float:
        return self.config.learning_rate * (1.0 - self.config.decay_rate) ** adjustment_count

    def next_weight(self, old_weight: float, improvement: float, adjustment_count: int) -> float:
        lr = self.effective_learning_rate(adjustment_count)
        raw = old_weight + lr * improvement * self.config.stability_weight
        return _clamp(raw, self.config.weight_min, self.config.weight_max)

    # ---- single outcome -------------------------------------------------------

    def process_outcome(
        self,
        db: Session,
        action_log_id: uuid.UUID,
        *,
        force_analysis: bool = False,
        trigger_type: LearningTriggerType = LearningTriggerType.ACTION_OUTCOME,
    ) -> FeedbackAnalysis:
        """Learn from one action log.

        Returns a ``pending`` analysis (and writes nothing) while the log is
        not terminal or no post-action observation is available yet.
        Reprocessing an already-learned log returns the recorded result
        without writing.

        Raises
        ------
        NotFoundError
            Unknown action log.
        WeightUpdateError
            Compare-and-swap retries exhausted.
        """
        log = ActionRepository(db).get_action_log(action_log_id)
        analyses = self._learn_context(
            db, [log], force=force_analysis, trigger_type=trigger_type, batch_id=None
        )
        return analyses[0]

    # ---- batch ----------------------------------------------------------------

    def process_batch(
        self,
        db: Session,
        *,
        agent_kind: str | None = None,
        metric_type: str | None = None,
        time_window_hours: int = 24,
        force_run: bool = False,
        cancel_event: threading.Event | None = None,
        trigger_type: LearningTriggerType = LearningTriggerType.SCHEDULED_ANALYSIS,
    ) -> BatchLearningResult:
        """Learn from every unprocessed terminal action log in the window.

        Logs are grouped by metric context; each context commits as one unit,
        so cancellation (checked between contexts) never leaves a context
        half-written. Without ``force_run`` contexts with no fresh metric
        observation in the window are skipped.
        """
        low, high = BATCH_WINDOW_HOURS
        if not low <= time_window_hours <= high:
            raise ConfigurationError(
                f"time_window_hours must be within [{low}, {high}]",
                details={"time_window_hours": time_window_hours},
            )

        batch_id = uuid.uuid4()
        result = BatchLearningResult(batch_id=str(batch_id))
        now = datetime.now(tz=timezone.utc)
        since = now - timedelta(hours=time_window_hours)

        logs = ActionRepository(db).unlearned_action_logs(
            since=since, agent_kind=agent_kind, metric_type=metric_type
        )
        groups: dict[str, list[ActionLog]] = {}
        for log in logs:
            groups.setdefault(log.context_key, []).append(log)

        for context_key, group in groups.items():
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info("Batch %s cancelled before context %s", batch_id, context_key)
                break

            context = MetricContext.from_dict(group[0].metric_context)
            if not force_run and not self._has_fresh_data(context, since):
                result.contexts_skipped += 1
                continue

            try:
                analyses = self._learn_context(
                    db, group, force=force_run, trigger_type=trigger_type, batch_id=batch_id
                )
            except WeightUpdateError as exc:
                result.contexts_failed += 1
                result.errors.append({"context_key": context_key, "error": exc.message})
                logger.warning("Learning update failed for %s: %s", context_key, exc.message)
                continue

            result.contexts_processed += 1
            result.analyses.extend(analyses)

        self._summarise(result)
        logger.info(
            "Batch learning %s: %d actions over %d contexts (%d applied, %d unvalidated, %d rolled back)",
            batch_id,
            result.actions_processed,
            result.contexts_processed,
            result.applied,
            result.unvalidated,
            result.rolled_back,
        )
        return result

    def run_scheduled(self, db: Session, *, cancel_event: threading.Event | None = None) -> BatchLearningResult:
        """Timer-driven batch: never forces analysis of unsettled outcomes."""
        return self.process_batch(
            db,
            time_window_hours=_clamp(self.config.history_window_hours, *BATCH_WINDOW_HOURS),
            force_run=False,
            cancel_event=cancel_event,
            trigger_type=LearningTriggerType.SCHEDULED_ANALYSIS,
        )

    # ---- manual override -------------------------------------------------------

    def override_weight(
        self,
        db: Session,
        context: MetricContext,
        *,
        weight: float | None = None,
        threshold: float | None = None,
        confidence: float | None = None,
        reason: str | None = None,
    ) -> MetricWeight:
        """Write an operator-chosen weight version for *context*.

        Fields left as ``None`` carry over from the active version. The weight
        is clamped to the configured bounds and confidence to [0, 1]; the
        adjustment count is kept so the learning rate does not decay.

        Raises
        ------
        ConfigurationError
            No field to change.
        NotFoundError
            The context has no active weight.
        WeightUpdateError
            Compare-and-swap retries exhausted.
        """
        if weight is None and threshold is None and confidence is None:
            raise ConfigurationError(
                "At least one of weight, threshold or confidence is required",
                details={"context_key": context.key},
            )

        def write() -> MetricWeight:
            repo = ActionRepository(db)
            current = repo.get_active_weight(context.key)
            if current is None:
                raise NotFoundError("No active weight for context", details={"context_key": context.key})
            old_weight, old_threshold, old_confidence = current.weight, current.threshold, current.confidence
            new_weight = old_weight if weight is None else _clamp(weight, self.config.weight_min, self.config.weight_max)
            new_threshold = old_threshold if threshold is None else threshold
            new_confidence = old_confidence if confidence is None else _clamp(confidence, 0.0, 1.0)

            replacement = MetricWeight(
                context_key=context.key,
                agent_kind=context.agent_kind,
                metric_type=context.metric_type,
                metric_subtype=context.metric_subtype,
                category=context.category,
                campaign_id=context.campaign_id,
                region=context.region,
                platform=context.platform,
                weight=new_weight,
                baseline_weight=current.baseline_weight,
                threshold=new_threshold,
                confidence=new_confidence,
                performance_score=current.performance_score,
                sample_size=current.sample_size,
                adjustment_count=current.adjustment_count,
                version=repo.latest_version(context.key) + 1,
                previous_version_id=current.id,
                last_adjustment=datetime.now(tz=timezone.utc),
            )
            repo.swap_active_weight(current, replacement)

            adjustments = [
                self._adjustment(LearningType.WEIGHT_ADJUSTMENT, old_weight, new_weight),
                self._adjustment(LearningType.THRESHOLD_CALIBRATION, old_threshold, new_threshold),
                self._adjustment(LearningType.CONFIDENCE_TUNING, old_confidence, new_confidence),
            ]
            for adjustment in adjustments:
                if adjustment is None:
                    continue
                repo.add_learning_log(
                    **self._log_context(context),
                    trigger_type=LearningTriggerType.MANUAL.value,
                    learning_type=adjustment["learning_type"],
                    adjustment_type=adjustment["adjustment_type"],
                    previous_value=adjustment["previous_value"],
                    new_value=adjustment["new_value"],
                    confidence=new_confidence,
                    sample_size=current.sample_size,
                    validated=True,
                    weight_id=replacement.id,
                    details_json={"version": replacement.version, "reason": reason},
                )
            return replacement

        replacement = self._commit_with_retries(db, write)
        logger.info(
            "Weight for %s manually set to v%d (weight=%.4f)",
            context.key,
            replacement.version,
            replacement.weight,
        )
        return replacement

    # ---- stats ----------------------------------------------------------------

    def learning_stats(
        self, db: Session, *, agent_kind: str | None = None, hours: int = 24
    ) -> dict[str, Any]:
        since = datetime.now(tz=timezone.utc) - timedelta(hours=hours)
        entries = ActionRepository(db).list_learning_logs(since=since, agent_kind=agent_kind)
        by_learning_type: dict[str, int] = {}
        by_trigger_type: dict[str, int] = {}
        for entry in entries:
            by_learning_type[entry.learning_type] = by_learning_type.get(entry.learning_type, 0) + 1
            by_trigger_type[entry.trigger_type] = by_trigger_type.get(entry.trigger_type, 0) + 1
        improvements = [e.actual_improvement for e in entries if e.actual_improvement is not None]
        return {
            "total": len(entries),
            "validated": sum(1 for e in entries if e.validated),
            "rolled_back": sum(1 for e in entries if e.rolled_back),
            "by_learning_type": by_learning_type,
            "by_trigger_type": by_trigger_type,
            "average_confidence": (
                sum(e.confidence for e in entries) / len(entries) if entries else 0.0
            ),
            "average_improvement": (
                sum(improvements) / len(improvements) if improvements else 0.0
            ),
            "window_hours": hours,
        }

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _has_fresh_data(self, context: MetricContext, since: datetime) -> bool:
        snapshot = self.metric_source.get_snapshot(context)
        return snapshot is not None and as_utc(snapshot.timestamp) >= since

    def _learn_context(
        self,
        db: Session,
        logs: list[ActionLog],
        *,
        force: bool,
        trigger_type: LearningTriggerType,
        batch_id: uuid.UUID | None,
    ) -> list[FeedbackAnalysis]:
        """Analyse *logs* (one context) in a single transaction, retrying on CAS conflict."""
        log_ids = [log.id for log in logs]
        return self._commit_with_retries(
            db,
            lambda: [
                self._analyse(db, db.get(ActionLog, log_id), force, trigger_type, batch_id)
                for log_id in log_ids
            ],
        )

    def _commit_with_retries(self, db: Session, work: Callable[[], T]) -> T:
        """Run *work* and commit; a version conflict rolls back and runs it again."""
        attempts = self.config.max_cas_retries
        last_conflict: WeightVersionConflict | None = None
        for attempt in range(1, attempts + 1):
            try:
                outcome = work()
                db.commit()
                return outcome
            except WeightVersionConflict as exc:
                db.rollback()
                last_conflict = exc
                logger.info(
                    "Weight version conflict (attempt %d/%d): %s", attempt, attempts, exc.details
                )
            except Exception:
                db.rollback()
                raise
        raise WeightUpdateError(
            f"Weight update failed after {attempts} attempts",
            details=dict(last_conflict.details) if last_conflict else {},
        )

    def _analyse(
        self,
        db: Session,
        log: ActionLog,
        force: bool,
        trigger_type: LearningTriggerType,
        batch_id: uuid.UUID | None,
    ) -> FeedbackAnalysis:
        repo = ActionRepository(db)
        status = ActionStatus(log.status)
        if status not in (ActionStatus.COMPLETED, ActionStatus.FAILED):
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=PENDING if not status.is_terminal else SKIPPED,
                context_key=log.context_key,
                recommendation=f"Action is {status.value}; nothing to learn yet",
            )
        if (log.impact_metrics or {}).get(CONFIGURATION_ERROR_KEY):
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=SKIPPED,
                context_key=log.context_key,
                recommendation="Action never ran because of a configuration error",
            )
        if log.learned_at is not None:
            return self._replay(repo, log)
        if not log.context_key:
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=SKIPPED,
                success=status is ActionStatus.COMPLETED,
                recommendation="Action has no metric context to learn from",
            )

        context = MetricContext.from_dict(log.metric_context)
        if status is ActionStatus.FAILED and self.config.rollback_on_failure:
            return self._rollback(repo, log, context, trigger_type, batch_id)

        measurement = self._measure(log, context, force)
        if measurement is None:
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=PENDING,
                context_key=context.key,
                success=status is ActionStatus.COMPLETED,
                recommendation="Waiting for a post-action observation after the settle delay",
            )
        pre, post, source = measurement
        improvement = self.improvement(pre, post, lower_is_better=context.lower_is_better)

        executed = as_utc(log.executed_at or log.created_at)
        history = self.metric_source.get_history(
            context, timedelta(hours=self.config.history_window_hours), now=executed
        )
        values = [s.value for s in history]
        confidence, stats = self.confidence(values)
        base_details = {
            "pre_value": pre,
            "post_value": post,
            "post_source": source,
            "action_status": status.value,
            **stats,
        }

        if len(values) < self.config.minimum_sample_size or confidence < self.config.confidence_threshold:
            if len(values) < self.config.minimum_sample_size:
                recommendation = (
                    f"Insufficient data: {len(values)} observations, "
                    f"need {self.config.minimum_sample_size}"
                )
            else:
                recommendation = (
                    f"Confidence {confidence:.2f} below threshold "
                    f"{self.config.confidence_threshold:.2f}; keep monitoring"
                )
            active = repo.get_active_weight(context.key)
            repo.add_learning_log(
                **self._log_context(context),
                trigger_type=trigger_type.value,
                learning_type=LearningType.WEIGHT_ADJUSTMENT.value,
                adjustment_type=AdjustmentType.NONE.value,
                previous_value=active.weight if active else None,
                new_value=active.weight if active else None,
                learning_rate=0.0,
                confidence=confidence,
                sample_size=len(values),
                validated=False,
                actual_improvement=improvement,
                action_log_id=log.id,
                weight_id=active.id if active else None,
                batch_id=batch_id,
                details_json={**base_details, "reason": recommendation},
            )
            log.learned_at = datetime.now(tz=timezone.utc)
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=UNVALIDATED,
                context_key=context.key,
                success=status is ActionStatus.COMPLETED,
                improvement=improvement,
                confidence=confidence,
                sample_size=len(values),
                weight_version=active.version if active else None,
                recommendation=recommendation,
            )

        return self._apply(
            repo, log, context, improvement, confidence, len(values), trigger_type, batch_id, base_details
        )

    def _measure(
        self, log: ActionLog, context: MetricContext, force: bool
    ) -> tuple[float, float, str] | None:
        pre = log.trigger_value
        if pre is None:
            executed = as_utc(log.executed_at or log.created_at)
            before = self.metric_source.get_history(
                context, timedelta(hours=self.config.history_window_hours), now=executed
            )
            if not before:
                return None
            pre = before[-1].value

        completed = as_utc(log.completed_at or log.created_at)
        settled_at = completed + self.config.settle_delay_for(context.metric_type)
        latest = self.metric_source.get_snapshot(context)
        if latest is not None and as_utc(latest.timestamp) >= settled_at:
            return pre, latest.value, "metric_source"

        reported = (log.impact_metrics or {}).get("post_value")
        if reported is not None:
            return pre, float(reported), "executor"

        if force and latest is not None and as_utc(latest.timestamp) >= completed:
            return pre, latest.value, "metric_source_unsettled"
        return None

    def _apply(
        self,
        repo: ActionRepository,
        log: ActionLog,
        context: MetricContext,
        improvement: float,
        confidence: float,
        sample_size: int,
        trigger_type: LearningTriggerType,
        batch_id: uuid.UUID | None,
        details: dict[str, Any],
    ) -> FeedbackAnalysis:
        now = datetime.now(tz=timezone.utc)
        current = repo.get_active_weight(context.key)
        base = current
        if base is None and context != context.generic():
            base = repo.get_active_weight(context.generic().key)

        old_weight = base.weight if base else 1.0
        old_threshold = base.threshold if base and base.threshold is not None else log.threshold
        old_confidence = base.confidence if base else 0.5
        old_performance = base.performance_score if base else 3.0
        adjustment_count = base.adjustment_count if base else 0
        lr = self.effective_learning_rate(adjustment_count)

        new_weight = self.next_weight(old_weight, improvement, adjustment_count)

        new_threshold = old_threshold
        if self.config.threshold_calibration and old_threshold is not None and log.trigger_value is not None:
            cap = self.config.max_adjustment_percent * (abs(old_threshold) or 1.0)
            shift = _clamp((log.trigger_value - old_threshold) * lr * improvement, -cap, cap)
            new_threshold = old_threshold + shift

        new_confidence = old_confidence
        if self.config.confidence_tuning:
            new_confidence = _clamp(old_confidence + lr * (confidence - old_confidence), 0.0, 1.0)

        label = performance_label(improvement, failed=log.status == ActionStatus.FAILED.value)
        new_performance = old_performance + lr * (label.score - old_performance)

        replacement = MetricWeight(
            context_key=context.key,
            agent_kind=context.agent_kind,
            metric_type=context.metric_type,
            metric_subtype=context.metric_subtype,
            category=context.category,
            campaign_id=context.campaign_id,
            region=context.region,
            platform=context.platform,
            weight=new_weight,
            baseline_weight=base.baseline_weight if base else 1.0,
            threshold=new_threshold,
            confidence=new_confidence,
            performance_score=new_performance,
            sample_size=(base.sample_size if base else 0) + 1,
            adjustment_count=adjustment_count + 1,
            version=repo.latest_version(context.key) + 1,
            previous_version_id=current.id if current else None,
            last_adjustment=now,
        )
        repo.swap_active_weight(current, replacement)

        adjustments = [
            self._adjustment(
                LearningType.WEIGHT_ADJUSTMENT, old_weight, new_weight, always=True
            ),
            self._adjustment(LearningType.THRESHOLD_CALIBRATION, old_threshold, new_threshold),
            self._adjustment(LearningType.CONFIDENCE_TUNING, old_confidence, new_confidence),
        ]
        adjustments = [a for a in adjustments if a is not None]
        for adjustment in adjustments:
            repo.add_learning_log(
                **self._log_context(context),
                trigger_type=trigger_type.value,
                learning_type=adjustment["learning_type"],
                adjustment_type=adjustment["adjustment_type"],
                previous_value=adjustment["previous_value"],
                new_value=adjustment["new_value"],
                learning_rate=lr,
                confidence=confidence,
                sample_size=sample_size,
                validated=True,
                actual_improvement=improvement,
                action_log_id=log.id,
                weight_id=replacement.id,
                batch_id=batch_id,
                details_json={**details, "version": replacement.version},
            )
        log.learned_at = now

        direction = "raised" if new_weight > old_weight else "lowered" if new_weight < old_weight else "kept"
        logger.info(
            "Weight for %s %s %.4f -> %.4f (v%d, improvement=%.3f, confidence=%.2f)",
            context.key,
            direction,
            old_weight,
            new_weight,
            replacement.version,
            improvement,
            confidence,
        )
        return FeedbackAnalysis(
            action_log_id=str(log.id),
            status=APPLIED,
            context_key=context.key,
            success=log.status == ActionStatus.COMPLETED.value,
            improvement=improvement,
            confidence=confidence,
            sample_size=sample_size,
            validated=True,
            weight_version=replacement.version,
            previous_weight=old_weight,
            new_weight=new_weight,
            recommendation=(
                f"{context.metric_type} moved {improvement:+.1%} after {log.action_kind}; "
                f"weight {direction} to {new_weight:.3f}"
            ),
            adjustments=adjustments,
        )

    def _rollback(
        self,
        repo: ActionRepository,
        log: ActionLog,
        context: MetricContext,
        trigger_type: LearningTriggerType,
        batch_id: uuid.UUID | None,
    ) -> FeedbackAnalysis:
        now = datetime.now(tz=timezone.utc)
        current = repo.get_active_weight(context.key)
        previous = (
            repo.db.get(MetricWeight, current.previous_version_id)
            if current is not None and current.previous_version_id is not None
            else None
        )

        if current is None or previous is None:
            repo.add_learning_log(
                **self._log_context(context),
                trigger_type=trigger_type.value,
                learning_type=LearningType.ROLLBACK.value,
                adjustment_type=AdjustmentType.NONE.value,
                previous_value=current.weight if current else None,
                new_value=current.weight if current else None,
                validated=False,
                rolled_back=False,
                action_log_id=log.id,
                weight_id=current.id if current else None,
                batch_id=batch_id,
                details_json={"reason": "no previous weight version to restore"},
            )
            log.learned_at = now
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=ROLLBACK_SKIPPED,
                context_key=context.key,
                weight_version=current.version if current else None,
                recommendation="Action failed; no earlier weight version to restore",
            )

        repo.reactivate_weight(current, previous)
        repo.add_learning_log(
            **self._log_context(context),
            trigger_type=trigger_type.value,
            learning_type=LearningType.ROLLBACK.value,
            adjustment_type=AdjustmentType.ROLLBACK.value,
            previous_value=current.weight,
            new_value=previous.weight,
            validated=True,
            rolled_back=True,
            action_log_id=log.id,
            weight_id=previous.id,
            batch_id=batch_id,
            details_json={
                "deactivated_version": current.version,
                "restored_version": previous.version,
                "error": log.error_message,
            },
        )
        log.learned_at = now
        logger.info(
            "Rolled back %s from v%d to v%d after failed action %s",
            context.key,
            current.version,
            previous.version,
            log.id,
        )
        return FeedbackAnalysis(
            action_log_id=str(log.id),
            status=ROLLED_BACK,
            context_key=context.key,
            rolled_back=True,
            validated=True,
            weight_version=previous.version,
            previous_weight=current.weight,
            new_weight=previous.weight,
            recommendation=f"Action failed; restored weight version {previous.version}",
            adjustments=[
                {
                    "learning_type": LearningType.ROLLBACK.value,
                    "adjustment_type": AdjustmentType.ROLLBACK.value,
                    "previous_value": current.weight,
                    "new_value": previous.weight,
                }
            ],
        )

    def _replay(self, repo: ActionRepository, log: ActionLog) -> FeedbackAnalysis:
        """Rebuild the analysis of an already-learned log from its learning logs."""
        entries = repo.learning_logs_for_action(log.id)
        rollback = next((e for e in entries if e.rolled_back), None)
        if rollback is not None:
            restored = repo.db.get(MetricWeight, rollback.weight_id)
            return FeedbackAnalysis(
                action_log_id=str(log.id),
                status=REPLAYED,
                context_key=log.context_key,
                rolled_back=True,
                validated=True,
                weight_version=restored.version if restored else None,
                previous_weight=rollback.previous_value,
                new_weight=rollback.new_value,
                recommendation="Already rolled back",
            )

        primary = next(
            (e for e in entries if e.learning_type in (LearningType.WEIGHT_ADJUSTMENT.value, LearningType.ROLLBACK.value)),
            None,
        )
        weight = repo.db.get(MetricWeight, primary.weight_id) if primary and primary.weight_id else None
        return FeedbackAnalysis(
            action_log_id=str(log.id),
            status=REPLAYED,
            context_key=log.context_key,
            success=log.status == ActionStatus.COMPLETED.value,
            improvement=primary.actual_improvement if primary else None,
            confidence=primary.confidence if primary else 0.0,
            sample_size=primary.sample_size if primary else 0,
            validated=bool(primary and primary.validated),
            weight_version=weight.version if weight else None,
            previous_weight=primary.previous_value if primary else None,
            new_weight=primary.new_value if primary else None,
            recommendation="Already processed",
        )

    @staticmethod
    def _adjustment(
        learning_type: LearningType,
        previous: float | None,
        new: float | None,
        *,
        always: bool = False,
    ) -> dict[str, Any] | None:
        if previous is None or new is None:
            return None
        if not always and math.isclose(previous, new, rel_tol=0.0, abs_tol=1e-9):
            return None
        if learning_type is LearningType.WEIGHT_ADJUSTMENT:
            if new > previous:
                kind = AdjustmentType.INCREASE
            elif new < previous:
                kind = AdjustmentType.DECREASE
            else:
                kind = AdjustmentType.NONE
        else:
            kind = AdjustmentType.CALIBRATE
        return {
            "learning_type": learning_type.value,
            "adjustment_type": kind.value,
            "previous_value": previous,
            "new_value": new,
        }

    @staticmethod
    def _log_context(context: MetricContext) -> dict[str, Any]:
        return {
            "context_key": context.key,
            "agent_kind": context.agent_kind,
            "metric_type": context.metric_type,
            "metric_context": context.to_dict(),
        }

    @staticmethod
    def _summarise(result: BatchLearningResult) -> None:
        result.actions_processed = len(result.analyses)
        counts = {APPLIED: 0, UNVALIDATED: 0, PENDING: 0}
        rolled_back = 0
        for analysis in result.analyses:
            if analysis.status in counts:
                counts[analysis.status] += 1
            if analysis.status == ROLLED_BACK:
                rolled_back += 1
        result.applied = counts[APPLIED]
        result.unvalidated = counts[UNVALIDATED]
        result.pending = counts[PENDING]
        result.rolled_back = rolled_back

        measured = [a for a in result.analyses if a.status in (APPLIED, UNVALIDATED)]
        if measured:
            result.average_confidence = sum(a.confidence for a in measured) / len(measured)
        improvements = [a.improvement for a in measured if a.improvement is not None]
        if improvements:
            result.average_improvement = sum(improvements) / len(improvements)
