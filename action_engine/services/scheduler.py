"""Batch scheduler: the periodic driver of the control loop.

One tick: load enabled rules, evaluate every (rule, context) pair in a
bounded worker pool, keep the highest-priority fired rule per context, then
dispatch each winner under its context lock with its own session. The
rule's cooldown is claimed with a conditional UPDATE before its action
runs. A tick that starts while another is still running is skipped.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Iterator

from sqlalchemy.orm import Session, sessionmaker

from action_engine.db import make_session_factory
from action_engine.exceptions import ConfigurationError, WeightUpdateError
from action_engine.models import ActionRule
from action_engine.services.evaluator import (
    COOLDOWN,
    DISABLED,
    TriggerDecision,
    matches_scope,
)
from action_engine.services.metrics import MetricContext
from action_engine.services.repository import ActionRepository
from action_engine.settings import settings

if TYPE_CHECKING:
    from action_engine.services.engine import ActionEngine

logger = logging.getLogger(__name__)


class ContextLocks:
    """Registry of per-context exclusive locks.

    A context's lock exists only while some dispatch holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def is_held(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if not self._waiters[key]:
                    del self._waiters[key]
                    del self._locks[key]


@dataclass
class ActionRunSummary:
    """Aggregated result of one scheduler tick."""

    started_at: datetime
    finished_at: datetime | None = None
    dry_run: bool = False
    skipped_tick: bool = False
    cancelled: bool = False
    rules_evaluated: int = 0
    contexts_evaluated: int = 0
    triggered: int = 0
    executed: int = 0
    succeeded: int = 0
    failed: int = 0
    decisions: list[dict[str, Any]] = field(default_factory=list)
    actions: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _decision_dict(decision: TriggerDecision) -> dict[str, Any]:
    return {
        "rule_id": decision.rule_id,
        "context_key": decision.context_key,
        "fire": decision.fire,
        "reason": decision.reason,
        "value": decision.value,
        "threshold": decision.threshold,
        "streak": decision.streak,
        "priority": decision.priority,
        "details": dict(decision.details),
    }


class BatchScheduler:
    """Runs ticks on demand or on a background thread."""

    def __init__(
        self,
        engine: ActionEngine,
        *,
        interval_seconds: float | None = None,
        learning_interval_seconds: float | None = None,
        evaluation_workers: int | None = None,
        max_concurrent_actions: int | None = None,
    ) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds or settings.ACTION_RUN_INTERVAL_SECONDS
        self.learning_interval_seconds = (
            learning_interval_seconds or settings.LEARNING_INTERVAL_SECONDS
        )
        self.evaluation_workers = evaluation_workers or settings.ACTION_EVALUATION_WORKERS
        self.max_concurrent_actions = max_concurrent_actions or settings.ACTION_MAX_CONCURRENT_ACTIONS
        self.locks = ContextLocks()

        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_run_at: datetime | None = None
        self.last_summary: ActionRunSummary | None = None

    @property
    def is_running(self) -> bool:
        return self._tick_lock.locked()

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------

    def run_tick(
        self,
        db: Session,
        *,
        agent_kinds: list[str] | None = None,
        campaign_ids: list[str] | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
        now: datetime | None = None,
    ) -> ActionRunSummary:
        now = now or datetime.now(tz=timezone.utc)
        summary = ActionRunSummary(started_at=now, dry_run=dry_run)
        if not self._tick_lock.acquire(blocking=False):
            logger.info("[SCHEDULER] Previous tick still running; skipping")
            summary.skipped_tick = True
            summary.finished_at = datetime.now(tz=timezone.utc)
            return summary

        try:
            self._tick(db, summary, agent_kinds, campaign_ids, dry_run, cancel_event, now)
        finally:
            self._tick_lock.release()

        summary.finished_at = datetime.now(tz=timezone.utc)
        self.last_run_at = summary.finished_at
        self.last_summary = summary
        logger.info(
            "[SCHEDULER] Tick done: %d rules, %d contexts, %d triggered, %d executed (%d ok, %d failed)%s",
            summary.rules_evaluated,
            summary.contexts_evaluated,
            summary.triggered,
            summary.executed,
            summary.succeeded,
            summary.failed,
            " [dry run]" if dry_run else "",
        )
        return summary

    def _tick(
        self,
        db: Session,
        summary: ActionRunSummary,
        agent_kinds: list[str] | None,
        campaign_ids: list[str] | None,
        dry_run: bool,
        cancel_event: threading.Event | None,
        now: datetime,
    ) -> None:
        source = self.engine.metric_source_for(db)
        rules = ActionRepository(db).list_enabled_rules(agent_kinds)
        summary.rules_evaluated = len(rules)

        since = now - timedelta(hours=settings.ACTION_METRIC_LOOKBACK_HOURS)
        pairs: list[tuple[int, ActionRule, MetricContext]] = []
        for sequence, rule in enumerate(rules):
            contexts = source.list_contexts(
                rule.agent_kind,
                rule.metric_type,
                metric_subtype=rule.metric_subtype,
                category=rule.category,
                since=since,
            )
            for context in contexts:
                if not matches_scope(rule, context):
                    continue
                if campaign_ids and context.campaign_id not in campaign_ids:
                    continue
                pairs.append((sequence, rule, context))
        summary.contexts_evaluated = len({c.key for _, _, c in pairs})

        decisions: list[TriggerDecision] = []
        with ThreadPoolExecutor(max_workers=self.evaluation_workers) as pool:
            futures = [
                (rule, context, sequence, pool.submit(self.engine.evaluator.evaluate_context, rule, context, source, now=now))
                for sequence, rule, context in pairs
            ]
            for rule, context, sequence, future in futures:
                try:
                    decisions.append(replace(future.result(), sequence=sequence))
                except Exception as exc:
                    logger.exception("[SCHEDULER] Evaluation failed for rule %s on %s", rule.id, context.key)
                    summary.errors.append(
                        {"rule_id": str(rule.id), "context_key": context.key, "error": str(exc)}
                    )

        winners, skipped = self.engine.evaluator.resolve_conflicts(decisions)
        summary.triggered = len(winners)
        fired_ids = {(d.rule_id, d.context_key) for d in winners + skipped}
        summary.decisions = [
            _decision_dict(d) for d in decisions if (d.rule_id, d.context_key) not in fired_ids
        ]
        summary.decisions += [_decision_dict(d) for d in winners + skipped]

        if dry_run or not winners:
            return

        session_factory = make_session_factory(db.get_bind())
        with ThreadPoolExecutor(max_workers=self.max_concurrent_actions) as pool:
            futures = [
                pool.submit(self._dispatch, session_factory, decision, cancel_event, now)
                for decision in winners
            ]
            for future in futures:
                outcome = future.result()
                if outcome.get("error"):
                    summary.errors.append(outcome)
                    continue
                if outcome.get("skipped"):
                    summary.decisions.append(outcome)
                    continue
                summary.executed += 1
                if outcome["success"]:
                    summary.succeeded += 1
                else:
                    summary.failed += 1
                summary.actions.append(outcome)
        if cancel_event is not None and cancel_event.is_set():
            summary.cancelled = True

    def _dispatch(
        self,
        session_factory: sessionmaker,
        decision: TriggerDecision,
        cancel_event: threading.Event | None,
        now: datetime,
    ) -> dict[str, Any]:
        base = {"rule_id": decision.rule_id, "context_key": decision.context_key}
        if cancel_event is not None and cancel_event.is_set():
            return {**base, "skipped": True, "reason": "cancelled"}

        with self.locks.hold(decision.context_key or decision.rule_id or ""):
            session = session_factory()
            try:
                repo = ActionRepository(session)
                rule = session.get(ActionRule, uuid.UUID(decision.rule_id))
                if rule is None or not rule.enabled:
                    return {**base, "skipped": True, "reason": DISABLED}
                # another dispatch may have fired this rule since evaluation
                if not repo.claim_trigger(rule, now):
                    session.rollback()
                    return {**base, "skipped": True, "reason": COOLDOWN}
                session.commit()

                result = self.engine.execute_rule(session, rule, decision, cancel_event=cancel_event)
                return {
                    **base,
                    "action_log_id": result.action_log_id,
                    "action_kind": result.action_kind,
                    "status": result.status,
                    "success": result.success,
                    "retry_count": result.retry_count,
                    "error": None,
                    "fallback_action_log_id": result.fallback.action_log_id if result.fallback else None,
                    "learning_status": result.analysis.status if result.analysis else None,
                }
            except ConfigurationError as exc:
                return {**base, "error": exc.message, "details": dict(exc.details)}
            except WeightUpdateError as exc:
                return {**base, "error": exc.message, "details": dict(exc.details)}
            finally:
                session.close()

    # ------------------------------------------------------------------
    # background loop
    # ------------------------------------------------------------------

    def start(self, session_factory: sessionmaker) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(session_factory,), name="action-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("[SCHEDULER] Started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[SCHEDULER] Stopped")

    def _loop(self, session_factory: sessionmaker) -> None:
        next_learning = time.monotonic() + self.learning_interval_seconds
        while not self._stop.is_set():
            db = session_factory()
            try:
                self.run_tick(db, cancel_event=self._stop)
                if time.monotonic() >= next_learning and not self._stop.is_set():
                    self.engine.run_scheduled_learning(db, cancel_event=self._stop)
                    next_learning = time.monotonic() + self.learning_interval_seconds
            except Exception:
                logger.exception("[SCHEDULER] Tick failed")
            finally:
                db.close()
            self._stop.wait(self.interval_seconds)

    def status(self) -> dict[str, Any]:
        last = self.last_summary
        return {
            "is_running": self.is_running,
            "background_active": self._thread is not None and self._thread.is_alive(),
            "last_run_at": self.last_run_at,
            "interval_seconds": self.interval_seconds,
            "learning_interval_seconds": self.learning_interval_seconds,
            "max_concurrent_actions": self.max_concurrent_actions,
            "evaluation_workers": self.evaluation_workers,
            "last_run": (
                {
                    "triggered": last.triggered,
                    "executed": last.executed,
                    "succeeded": last.succeeded,
                    "failed": last.failed,
                    "errors": len(last.errors),
                }
                if last is not None
                else None
            ),
        }
