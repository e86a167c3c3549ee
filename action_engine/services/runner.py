"""Action runner: executes an action and records its lifecycle in an ``ActionLog``.

Status lifecycle::

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED
    RUNNING -> PENDING            (retry, increments retry_count)
    PENDING -> CANCELLED

Configuration errors fail terminally before any attempt. Transient failures
are retried with exponential backoff until ``retry_count == max_retries``.
A failed action may issue one fallback action, recorded as a child log.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from action_engine.exceptions import (
    ActionCancelledError,
    ActionTimeoutError,
    ConfigurationError,
    InvalidTransitionError,
    PermanentActionError,
    TransientActionError,
)
from action_engine.models import ActionLog, ActionRule, ActionStatus
from action_engine.services.actions.base import (
    ActionConfig,
    ActionContext,
    ActionExecutor,
    ActionRegistry,
    ActionSpec,
    ExecutorResult,
)
from action_engine.services.metrics import MetricContext
from action_engine.services.repository import ActionRepository

if TYPE_CHECKING:
    from action_engine.services.feedback import FeedbackAnalysis

logger = logging.getLogger(__name__)

# How often a running attempt checks for cancellation
_CANCEL_POLL_SECONDS = 0.05

# Marks logs that failed validation before any attempt ran
CONFIGURATION_ERROR_KEY = "configuration_error"
CONFIGURED_MAX_RETRIES_KEY = "configured_max_retries"


def configured_max_retries(log: ActionLog) -> int:
    """The retry budget the log started with, before any early termination."""
    return int((log.impact_metrics or {}).get(CONFIGURED_MAX_RETRIES_KEY, log.max_retries))


_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING, ActionStatus.CANCELLED}),
    ActionStatus.RUNNING: frozenset(
        {
            ActionStatus.PENDING,
            ActionStatus.COMPLETED,
            ActionStatus.FAILED,
            ActionStatus.CANCELLED,
        }
    ),
    ActionStatus.COMPLETED: frozenset(),
    ActionStatus.FAILED: frozenset(),
    ActionStatus.CANCELLED: frozenset(),
}


def transition(log: ActionLog, new_status: ActionStatus, *, now: datetime | None = None) -> None:
    """Move *log* to *new_status*, enforcing the lifecycle and retry bound."""
    current = ActionStatus(log.status)
    if new_status not in _TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move action log from '{current.value}' to '{new_status.value}'",
            details={"action_log_id": str(log.id), "from": current.value, "to": new_status.value},
        )
    now = now or datetime.now(tz=timezone.utc)
    if current is ActionStatus.RUNNING and new_status is ActionStatus.PENDING:
        if log.retry_count >= log.max_retries:
            raise InvalidTransitionError(
                "Retry budget exhausted",
                details={"action_log_id": str(log.id), "retry_count": log.retry_count},
            )
        log.retry_count += 1
    if new_status is ActionStatus.RUNNING and log.executed_at is None:
        log.executed_at = now
    if new_status.is_terminal:
        log.completed_at = now
    log.status = new_status.value


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


@dataclass
class ActionRequest:
    """Everything needed to run one action."""

    agent_kind: str
    action_kind: str
    config: ActionConfig = field(default_factory=ActionConfig)
    campaign_id: str | None = None
    context: MetricContext | None = None
    rule: ActionRule | None = None
    trigger_value: float | None = None
    threshold: float | None = None
    priority: str | None = None
    triggered_by: str = "manual"
    parent_action_id: uuid.UUID | None = None
    max_retries: int | None = None
    allow_fallback: bool = True


@dataclass
class ActionResult:
    """Outcome of running an action, including any fallback."""

    success: bool
    action_log_id: str
    action_kind: str
    agent_kind: str
    status: str
    retry_count: int = 0
    message: str = ""
    error: str | None = None
    impact_metrics: dict[str, Any] = field(default_factory=dict)
    fallback: ActionResult | None = None
    analysis: FeedbackAnalysis | None = None

    @classmethod
    def from_log(cls, log: ActionLog, *, message: str = "") -> ActionResult:
        return cls(
            success=log.status == ActionStatus.COMPLETED.value,
            action_log_id=str(log.id),
            action_kind=log.action_kind,
            agent_kind=log.agent_kind,
            status=log.status,
            retry_count=log.retry_count,
            message=message,
            error=log.error_message,
            impact_metrics=dict(log.impact_metrics or {}),
        )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ActionRunner:
    """Runs actions through the registry with retry, timeout, cancellation and fallback."""

    def __init__(self, registry: ActionRegistry) -> None:
        self.registry = registry

    def run(
        self,
        db: Session,
        request: ActionRequest,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ActionResult:
        """Run *request* to a terminal state.

        Raises
        ------
        ConfigurationError
            When the action cannot run as configured. A FAILED log with no
            retry budget is persisted first; its id is in ``details``.
        """
        repo = ActionRepository(db)
        try:
            spec = self.registry.validate(
                request.agent_kind, request.action_kind, request.config, request.campaign_id
            )
        except ConfigurationError as exc:
            log = self._record_configuration_failure(repo, request, exc)
            exc.details["action_log_id"] = str(log.id)
            raise

        log = repo.create_action_log(**self._log_values(request, spec))
        db.commit()

        executor = self.registry.resolve(request.action_kind)
        message = self._drive(db, log, executor, request, spec, cancel_event)
        release = getattr(executor, "release", None)
        if release is not None:
            release(str(log.id))
        result = ActionResult.from_log(log, message=message)

        if (
            log.status == ActionStatus.FAILED.value
            and request.allow_fallback
            and request.parent_action_id is None
        ):
            result.fallback = self._run_fallback(db, log, request, spec, cancel_event)
        return result

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _log_values(self, request: ActionRequest, spec: ActionSpec | None) -> dict[str, Any]:
        if request.max_retries is not None:
            max_retries = request.max_retries
        elif request.rule is not None and request.rule.max_retries is not None:
            max_retries = request.rule.max_retries
        elif spec is not None:
            max_retries = spec.retry_policy.max_retries
        else:
            max_retries = 0

        priority = request.priority
        if priority is None and request.rule is not None:
            priority = request.rule.priority
        if priority is None and spec is not None:
            priority = spec.priority.value

        values: dict[str, Any] = dict(
            rule_id=request.rule.id if request.rule is not None else None,
            parent_action_id=request.parent_action_id,
            agent_kind=request.agent_kind,
            action_kind=request.action_kind,
            campaign_id=request.campaign_id,
            triggered_by=request.triggered_by,
            trigger_value=request.trigger_value,
            threshold=request.threshold,
            status=ActionStatus.PENDING.value,
            retry_count=0,
            max_retries=max_retries,
            action_config_json=request.config.to_dict(),
        )
        if priority is not None:
            values["priority"] = priority
        if request.context is not None:
            values["metric_context"] = request.context.to_dict()
            values["context_key"] = request.context.key
            values["metric_type"] = request.context.metric_type
        return values

    def _record_configuration_failure(
        self, repo: ActionRepository, request: ActionRequest, exc: ConfigurationError
    ) -> ActionLog:
        values = self._log_values(request, self.registry.get_spec(request.action_kind))
        now = datetime.now(tz=timezone.utc)
        values.update(
            status=ActionStatus.FAILED.value,
            max_retries=0,
            error_message=f"Configuration error: {exc.message}",
            impact_metrics={
                CONFIGURATION_ERROR_KEY: True,
                CONFIGURED_MAX_RETRIES_KEY: values["max_retries"],
            },
            executed_at=now,
            completed_at=now,
            # never executed, so there is no outcome to learn from
            learned_at=now,
        )
        log = repo.create_action_log(**values)
        repo.db.commit()
        logger.warning(
            "Configuration error running '%s' for agent '%s' (campaign=%s): %s",
            request.action_kind,
            request.agent_kind,
            request.campaign_id,
            exc.message,
        )
        return log

    def _drive(
        self,
        db: Session,
        log: ActionLog,
        executor: ActionExecutor,
        request: ActionRequest,
        spec: ActionSpec,
        cancel_event: threading.Event | None,
    ) -> str:
        policy = spec.retry_policy
        waiter = cancel_event or threading.Event()
        started = time.monotonic()

        while True:
            transition(log, ActionStatus.RUNNING)
            db.commit()
            context = ActionContext(
                action_log_id=str(log.id),
                agent_kind=log.agent_kind,
                action_kind=log.action_kind,
                attempt=log.retry_count + 1,
                campaign_id=log.campaign_id,
                rule_id=str(log.rule_id) if log.rule_id else None,
                metric_context=request.context,
                trigger_value=log.trigger_value,
            )

            retryable = True
            try:
                outcome = self._attempt(executor, request.config, context, policy.timeout_seconds, cancel_event)
                if outcome.success:
                    self._complete(log, outcome, started)
                    db.commit()
                    return outcome.message
                error = outcome.message or "Executor reported failure"
                retryable = outcome.retryable
            except ActionCancelledError as exc:
                log.error_message = exc.message
                transition(log, ActionStatus.CANCELLED)
                db.commit()
                return exc.message
            except TransientActionError as exc:
                error = exc.message
            except PermanentActionError as exc:
                error = exc.message
                retryable = False
            except Exception as exc:
                logger.exception(
                    "Executor for '%s' raised on attempt %d", log.action_kind, context.attempt
                )
                error = f"{type(exc).__name__}: {exc}"

            log.error_message = error
            if retryable and log.retry_count < log.max_retries:
                transition(log, ActionStatus.PENDING)
                db.commit()
                delay = policy.delay_for(log.retry_count)
                logger.info(
                    "Retrying '%s' (%d/%d) in %.1fs: %s",
                    log.action_kind,
                    log.retry_count,
                    log.max_retries,
                    delay,
                    error,
                )
                if waiter.wait(delay):
                    log.error_message = "Cancelled while waiting to retry"
                    transition(log, ActionStatus.CANCELLED)
                    db.commit()
                    return log.error_message
                continue

            if not retryable:
                # no further attempts will be made; keep the configured budget for audit
                log.impact_metrics = {
                    **(log.impact_metrics or {}),
                    CONFIGURED_MAX_RETRIES_KEY: log.max_retries,
                }
                log.max_retries = log.retry_count
            log.execution_time_ms = int((time.monotonic() - started) * 1000)
            transition(log, ActionStatus.FAILED)
            db.commit()
            logger.warning(
                "Action '%s' for agent '%s' failed after %d retries: %s",
                log.action_kind,
                log.agent_kind,
                log.retry_count,
                error,
            )
            return error

    def _attempt(
        self,
        executor: ActionExecutor,
        config: ActionConfig,
        context: ActionContext,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> ExecutorResult:
        return asyncio.run(self._bounded(executor, config, context, timeout, cancel_event))

    @staticmethod
    async def _bounded(
        executor: ActionExecutor,
        config: ActionConfig,
        context: ActionContext,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> ExecutorResult:
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(executor.execute(config, context))
        deadline = loop.time() + timeout
        try:
            while not task.done():
                if cancel_event is not None and cancel_event.is_set():
                    raise ActionCancelledError(
                        "Action cancelled during execution",
                        details={"action_log_id": context.action_log_id},
                    )
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ActionTimeoutError(
                        f"Attempt {context.attempt} timed out after {timeout:.1f}s",
                        details={"action_log_id": context.action_log_id, "timeout_seconds": timeout},
                    )
                await asyncio.wait({task}, timeout=min(remaining, _CANCEL_POLL_SECONDS))
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait({task}, timeout=1.0)
        return task.result()

    @staticmethod
    def _complete(log: ActionLog, outcome: ExecutorResult, started: float) -> None:
        impact: dict[str, Any] = {"pre_value": log.trigger_value, "executor": dict(outcome.data)}
        if outcome.post_value is not None:
            post = float(outcome.post_value)
            impact["post_value"] = post
            if log.trigger_value is not None:
                delta = post - log.trigger_value
                impact["delta"] = delta
                impact["delta_percent"] = (
                    delta / abs(log.trigger_value) * 100 if log.trigger_value else None
                )
        log.impact_metrics = impact
        log.rollback_data = dict(outcome.rollback_data)
        log.error_message = None
        log.execution_time_ms = int((time.monotonic() - started) * 1000)
        transition(log, ActionStatus.COMPLETED)

    def _run_fallback(
        self,
        db: Session,
        failed: ActionLog,
        request: ActionRequest,
        spec: ActionSpec,
        cancel_event: threading.Event | None,
    ) -> ActionResult | None:
        fallback_kind = None
        if request.rule is not None and request.rule.fallback_action_kind:
            fallback_kind = request.rule.fallback_action_kind
        elif spec.fallback_action_kind:
            fallback_kind = spec.fallback_action_kind
        if not fallback_kind or fallback_kind == failed.action_kind:
            return None

        summary = (
            f"Action '{failed.action_kind}' for {failed.agent_kind} agent failed after "
            f"{failed.retry_count} retries: {failed.error_message}"
        )
        values = request.config.to_dict()
        for key, default in (
            ("message", summary),
            ("reason", summary),
            ("issue_type", "action_failure"),
            ("severity", "high"),
            ("alert_type", "action_failure"),
        ):
            values.setdefault(key, default)

        fallback_request = ActionRequest(
            agent_kind=failed.agent_kind,
            action_kind=fallback_kind,
            config=ActionConfig.from_dict(values),
            campaign_id=failed.campaign_id,
            context=request.context,
            trigger_value=failed.trigger_value,
            threshold=failed.threshold,
            triggered_by="fallback",
            parent_action_id=failed.id,
            max_retries=0,
            allow_fallback=False,
        )
        logger.info("Issuing fallback '%s' for failed action %s", fallback_kind, failed.id)
        try:
            return self.run(db, fallback_request, cancel_event=cancel_event)
        except ConfigurationError as exc:
            return ActionResult(
                success=False,
                action_log_id=exc.details.get("action_log_id", ""),
                action_kind=fallback_kind,
                agent_kind=failed.agent_kind,
                status=ActionStatus.FAILED.value,
                error=exc.message,
            )
