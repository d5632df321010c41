"""Automatic winner scheduler.

Periodically evaluates every eligible running test: analyze, monitor,
and, when the criteria are met, conclude and hand the winner to the
implementation registry.

Concurrency model:
- an ``asyncio.Semaphore`` bounds evaluations in flight;
- a ``KeyedLock`` allows at most one evaluation per test; scheduled
  ticks skip a locked test, forced runs wait for it;
- a watchdog fails evaluations that exceed twice the check interval.

Example:
    scheduler = AutomaticWinnerScheduler(source, conclusions, monitor, registry)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from pydantic import ValidationError

from abpilot.conclusion.engine import TestConclusionEngine
from abpilot.conclusion.models import TestConclusion
from abpilot.core.exceptions import (
    AlreadyImplementingError,
    ConfigurationError,
    EvaluationTimeoutError,
    SchedulerTickError,
)
from abpilot.core.logging import bind_context, correlation_context
from abpilot.core.metrics import get_metrics
from abpilot.monitoring.models import AlertType
from abpilot.monitoring.monitor import PerformanceMonitor
from abpilot.rollout.registry import ImplementationRegistry
from abpilot.scheduler.locks import KeyedLock
from abpilot.scheduler.models import (
    ActiveTest,
    EvaluationOutcome,
    EvaluationRecord,
    ManualEvaluationRequest,
    SchedulerConfig,
    SchedulerMetrics,
    TickResult,
)
from abpilot.scheduler.sources import TestSource
from abpilot.statistics.models import RecommendedAction

logger = logging.getLogger(__name__)

_CRITERIA_FIELDS = frozenset(
    {"minimum_confidence", "minimum_improvement", "risk_tolerance"}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AutomaticWinnerScheduler:
    """Evaluates running tests on a timer and ships winners."""

    def __init__(
        self,
        source: TestSource,
        conclusion_engine: TestConclusionEngine,
        monitor: PerformanceMonitor,
        registry: ImplementationRegistry,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            source: Analytics collaborator listing tests and counters.
            conclusion_engine: Decides winners; its significance engine
                is used for the per-tick analysis.
            monitor: Receives each analysis and publishes alerts.
            registry: Receives conclusions for rollout.
            config: Initial configuration. Defaults apply if not provided.
            clock: Source of the current time (timezone-aware).
        """
        self.source = source
        self.conclusion_engine = conclusion_engine
        self.monitor = monitor
        self.registry = registry
        self._config = config or SchedulerConfig()
        self._clock = clock or _utcnow

        self._locks = KeyedLock()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_evaluations)
        self._semaphore_size = self._config.max_concurrent_evaluations
        self._metrics_lock = asyncio.Lock()
        self._metrics = SchedulerMetrics()
        self._day: date = self._local_date()

        self._conclusions: dict[str, TestConclusion] = {}
        self._evaluations: dict[str, EvaluationRecord] = {}
        self._tick_failures = 0

        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    # ----- lifecycle ------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the timer loop. No-op if already running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="winner-scheduler")
        logger.info(
            "Scheduler started (interval=%.1f min, max_concurrent=%d)",
            self._config.check_interval,
            self._config.max_concurrent_evaluations,
        )

    async def stop(self) -> None:
        """Stop the timer loop, waiting for an in-flight tick to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        await task
        logger.info("Scheduler stopped")

    def _backoff_seconds(self, failures: int) -> float:
        interval = self._config.check_interval_seconds
        cap = interval * self._config.max_backoff_multiplier
        return min(interval * 2**failures, cap)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            delay = self._config.check_interval_seconds
            if self._config.enabled:
                try:
                    await self.run_tick()
                except SchedulerTickError as e:
                    delay = e.retry_in_seconds or delay
                    logger.error(
                        "Scheduler tick failed (attempt %d), retrying in %.0fs: %s",
                        e.attempt,
                        delay,
                        e.cause,
                    )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass

    # ----- ticks ------------------------------------------------------------

    async def force_run(self) -> TickResult:
        """Run one pass now, regardless of ``enabled``, waiting on busy tests."""
        return await self.run_tick(force=True)

    async def run_tick(self, force: bool = False) -> TickResult:
        """Evaluate every eligible test once.

        Args:
            force: Wait for tests that are already being evaluated and
                reload their counters, instead of skipping them.

        Raises:
            SchedulerTickError: If the test source cannot be enumerated.
        """
        async with correlation_context() as correlation_id:
            started_at = self._clock()
            self._refresh_pool()
            self.conclusion_engine.criteria = self._config.selection_criteria()

            try:
                tests = await self.source.list_active_tests()
            except Exception as e:
                self._tick_failures += 1
                metrics = get_metrics()
                if metrics:
                    metrics.tick_failures_total.inc()
                raise SchedulerTickError(
                    "Failed to enumerate active tests",
                    attempt=self._tick_failures,
                    retry_in_seconds=self._backoff_seconds(self._tick_failures),
                    cause=e,
                ) from e
            self._tick_failures = 0

            eligible = [t for t in tests if t.is_eligible]
            async with self._metrics_lock:
                self._metrics.total_tests_monitored = len(eligible)

            records = await asyncio.gather(
                *(self._evaluate_guarded(t, blocking=force) for t in eligible)
            )
            result = TickResult(
                correlation_id=correlation_id,
                started_at=started_at,
                finished_at=self._clock(),
                forced=force,
                records=list(records),
            )
            async with self._metrics_lock:
                self._metrics.last_run_at = result.finished_at
            logger.info(
                "Tick complete: %d eligible, %d winners, %d failed, %d skipped",
                len(eligible),
                result.count(EvaluationOutcome.WINNER),
                result.count(EvaluationOutcome.FAILED)
                + result.count(EvaluationOutcome.TIMEOUT),
                result.count(EvaluationOutcome.SKIPPED),
            )
            return result

    def _refresh_pool(self) -> None:
        size = self._config.max_concurrent_evaluations
        if size != self._semaphore_size:
            self._semaphore = asyncio.Semaphore(size)
            self._semaphore_size = size

    def _skipped(self, test_id: str, reason: str) -> EvaluationRecord:
        return EvaluationRecord(
            test_id=test_id,
            evaluated_at=self._clock(),
            outcome=EvaluationOutcome.SKIPPED,
            skip_reason=reason,
        )

    async def _evaluate_guarded(
        self, test: ActiveTest, blocking: bool
    ) -> EvaluationRecord:
        test_id = test.test_id
        if test_id in self._conclusions:
            return self._skipped(test_id, "conclusion already recorded")

        if blocking:
            async with self._locks.acquire(test_id):
                return await self._evaluate_slot(test_id, None)

        async with self._locks.try_acquire(test_id) as acquired:
            if not acquired:
                logger.debug("Skipping test %s: evaluation in flight", test_id)
                return self._skipped(test_id, "evaluation in flight")
            return await self._evaluate_slot(test_id, test)

    async def _evaluate_slot(
        self, test_id: str, test: ActiveTest | None
    ) -> EvaluationRecord:
        """Evaluate under the test lock, holding a pool slot.

        ``test=None`` reloads fresh counters from the source first.
        """
        if test_id in self._conclusions:
            return self._skipped(test_id, "conclusion already recorded")

        timeout = 2 * self._config.check_interval_seconds
        metrics = get_metrics()
        async with self._semaphore:
            if metrics:
                metrics.evaluations_in_flight.inc()
            started = time.perf_counter()
            try:
                with bind_context(test_id=test_id):
                    record = await asyncio.wait_for(
                        self._evaluate(test_id, test), timeout=timeout
                    )
            except TimeoutError:
                error = EvaluationTimeoutError(
                    f"Evaluation exceeded {timeout:.0f}s",
                    test_id=test_id,
                    timeout_seconds=timeout,
                )
                record = await self._failed(
                    test_id, EvaluationOutcome.TIMEOUT, error, started
                )
            except Exception as e:
                record = await self._failed(
                    test_id, EvaluationOutcome.FAILED, e, started
                )
            finally:
                if metrics:
                    metrics.evaluations_in_flight.dec()
        return record

    async def _failed(
        self,
        test_id: str,
        outcome: EvaluationOutcome,
        error: Exception,
        started: float,
    ) -> EvaluationRecord:
        duration = time.perf_counter() - started
        previous = self._evaluations.get(test_id)
        failures = (previous.consecutive_failures if previous else 0) + 1
        logger.error("Evaluation of test %s failed: %s", test_id, error)
        record = EvaluationRecord(
            test_id=test_id,
            evaluated_at=self._clock(),
            outcome=outcome,
            duration_seconds=duration,
            consecutive_failures=failures,
            last_error=str(error),
        )
        self._evaluations[test_id] = record
        self.monitor.raise_alert(
            test_id,
            AlertType.EVALUATION_FAILED,
            f"Evaluation failed: {error}",
            data={"outcome": outcome.value, "consecutive_failures": failures},
        )
        await self._record(record)
        return record

    async def _evaluate(
        self, test_id: str, test: ActiveTest | None
    ) -> EvaluationRecord:
        if test is None:
            test = await self.source.get_test(test_id)
            if test is None:
                return self._skipped(test_id, "test no longer exists")

        started = time.perf_counter()
        now = self._clock()
        analysis = self.conclusion_engine.engine.analyze_test(
            test_id, test.variants, now=now
        )
        alerts = self.monitor.observe(analysis, now=now)

        conclusion = None
        if analysis.recommended_action == RecommendedAction.STOP:
            conclusion = self.conclusion_engine.evaluate_analysis(
                analysis, test.variants, context=test.context, now=now
            )

        winner_id = None
        if conclusion is not None and conclusion.selected_winner is not None:
            winner_id = conclusion.selected_winner.variant_id
            self._conclusions[test_id] = conclusion
            try:
                await self.registry.start_implementation(conclusion)
            except AlreadyImplementingError as e:
                logger.warning("Not starting rollout for test %s: %s", test_id, e)

        record = EvaluationRecord(
            test_id=test_id,
            evaluated_at=now,
            outcome=(
                EvaluationOutcome.WINNER if winner_id else EvaluationOutcome.NO_WINNER
            ),
            analysis_status=analysis.status,
            recommended_action=analysis.recommended_action,
            overall_significance=analysis.overall_significance,
            alerts_raised=len(alerts),
            winner_variant_id=winner_id,
            duration_seconds=time.perf_counter() - started,
        )
        self._evaluations[test_id] = record
        await self._record(record)
        if conclusion is not None:
            metrics = get_metrics()
            if metrics:
                metrics.record_winner(conclusion.implementation_plan.strategy.value)
        return record

    # ----- counters -------------------------------------------------------

    def _local_date(self) -> date:
        return self._clock().astimezone().date()

    def _roll_day(self) -> None:
        today = self._local_date()
        if today != self._day:
            self._day = today
            self._metrics.tests_evaluated_today = 0
            self._metrics.winners_selected_today = 0
            self._metrics.failed_evaluations_today = 0

    async def _record(self, record: EvaluationRecord) -> None:
        """Apply one evaluation to the counters. The only write path."""
        failed = record.outcome in (EvaluationOutcome.FAILED, EvaluationOutcome.TIMEOUT)
        async with self._metrics_lock:
            self._roll_day()
            m = self._metrics
            m.tests_evaluated_today += 1
            m.total_evaluations += 1
            if record.outcome == EvaluationOutcome.WINNER:
                m.winners_selected_today += 1
                m.total_winners += 1
            if failed:
                m.failed_evaluations_today += 1
                m.total_failures += 1
                m.last_evaluation_errors[record.test_id] = record.last_error or ""
            else:
                m.last_evaluation_errors.pop(record.test_id, None)
            m.success_rate = 1.0 - m.total_failures / m.total_evaluations

        metrics = get_metrics()
        if metrics:
            metrics.record_evaluation(record.outcome.value, record.duration_seconds)

    def get_metrics(self) -> SchedulerMetrics:
        """Snapshot of the scheduler counters."""
        self._roll_day()
        return self._metrics.model_copy(deep=True)

    # ----- configuration ----------------------------------------------------

    def get_config(self) -> SchedulerConfig:
        return self._config.model_copy(deep=True)

    def update_config(self, **partial: Any) -> SchedulerConfig:
        """Merge fields into the live config; applies from the next tick.

        Criteria fields may be passed flat or under ``default_criteria``.

        Raises:
            ConfigurationError: If the merged config is invalid.
        """
        merged = self._config.model_dump()
        criteria = dict(merged["default_criteria"])
        criteria.update(partial.pop("default_criteria", None) or {})
        for key in _CRITERIA_FIELDS & partial.keys():
            criteria[key] = partial.pop(key)
        unknown = partial.keys() - merged.keys()
        if unknown:
            raise ConfigurationError(
                f"Unknown scheduler config fields: {', '.join(sorted(unknown))}"
            )
        merged.update(partial)
        merged["default_criteria"] = criteria
        try:
            self._config = SchedulerConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid scheduler config: {e}") from e
        logger.info(
            "Scheduler config updated: %s", self._config.model_dump(mode="json")
        )
        return self.get_config()

    # ----- read models and manual requests ------------------------------------

    def get_conclusion(self, test_id: str) -> TestConclusion | None:
        return self._conclusions.get(test_id)

    def get_evaluation(self, test_id: str) -> EvaluationRecord | None:
        return self._evaluations.get(test_id)

    def reset_test(self, test_id: str) -> bool:
        """Forget a test's conclusion, evaluation and monitor snapshot.

        The rollout controller, if any, must be released separately.
        """
        had_conclusion = self._conclusions.pop(test_id, None) is not None
        self._evaluations.pop(test_id, None)
        self.monitor.reset(test_id)
        return had_conclusion

    async def evaluate_now(self, test_id: str) -> EvaluationRecord:
        """Evaluate one test immediately, waiting for any in-flight run."""
        async with correlation_context():
            self.conclusion_engine.criteria = self._config.selection_criteria()
            async with self._locks.acquire(test_id):
                return await self._evaluate_slot(test_id, None)

    async def handle_request(
        self, request: ManualEvaluationRequest
    ) -> EvaluationRecord:
        """Serve a manual evaluation request."""
        if request.force_evaluation:
            return await self.evaluate_now(request.test_id)
        test = await self.source.get_test(request.test_id)
        if test is None:
            return self._skipped(request.test_id, "test no longer exists")
        async with correlation_context():
            return await self._evaluate_guarded(test, blocking=False)
