"""Phased rollout state machine with automatic rollback.

A controller ramps winner traffic phase by phase, samples live metrics
and acts on rollback triggers. Transitions happen in ``step``; the
sampling loop simply calls ``step`` every ``sample_interval_seconds`` and
wakes early when a rollback or stop is requested.

Plan durations are in hours and trigger timeframes in minutes; both are
converted to wall-clock time through ``seconds_per_hour`` so rollouts
can be accelerated in tests and simulations.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from abpilot.conclusion.models import (
    ImplementationPhase,
    RollbackAction,
    RollbackTrigger,
    TestConclusion,
)
from abpilot.core.exceptions import ABPilotError, RollbackFailedError
from abpilot.core.metrics import get_metrics
from abpilot.core.settings import RolloutSettings
from abpilot.monitoring.models import AlertSeverity, AlertType
from abpilot.monitoring.monitor import PerformanceMonitor
from abpilot.rollout.models import (
    ImplementationStatus,
    LiveMetricsSample,
    RolloutState,
    TriggerBreach,
)
from abpilot.rollout.traffic import LiveMetricsSource, TrafficRouter

logger = logging.getLogger(__name__)

MAX_BREACHES = 50

RollbackHandler = Callable[[datetime], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def breach_value(trigger: RollbackTrigger, sample: LiveMetricsSample) -> float | None:
    """How far a sample is past the trigger's reference, or None if unknown.

    Error rate is an absolute increase over baseline; conversion rate and
    revenue are relative drops from baseline.
    """
    if trigger.metric == "error_rate":
        return sample.error_rate - sample.baseline_error_rate
    if trigger.metric == "conversion_rate":
        if sample.baseline_conversion_rate <= 0:
            return None
        return (
            sample.baseline_conversion_rate - sample.conversion_rate
        ) / sample.baseline_conversion_rate
    if trigger.metric == "revenue":
        if sample.baseline_revenue_per_visitor <= 0:
            return None
        return (
            sample.baseline_revenue_per_visitor - sample.revenue_per_visitor
        ) / sample.baseline_revenue_per_visitor
    return None


class ImplementationController:
    """Drives one winner rollout from PENDING to COMPLETED or ROLLED_BACK."""

    def __init__(
        self,
        conclusion: TestConclusion,
        router: TrafficRouter,
        metrics_source: LiveMetricsSource,
        monitor: PerformanceMonitor,
        settings: RolloutSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if conclusion.selected_winner is None:
            raise ABPilotError(
                "Cannot implement a conclusion without a winner",
                test_id=conclusion.test_id,
            )
        self.conclusion = conclusion
        self.router = router
        self.metrics_source = metrics_source
        self.monitor = monitor
        self.settings = settings or RolloutSettings()
        self._clock = clock or _utcnow

        self.test_id = conclusion.test_id
        self.winner_id = conclusion.selected_winner.variant_id
        self.control_id = conclusion.control_variant_id
        self.phases: list[ImplementationPhase] = conclusion.implementation_plan.phases

        self.state = RolloutState.PENDING
        self.phase_index: int | None = None
        self.winner_traffic = 0.0
        self._phase_floor = 0.0
        self.paused = False
        self.samples_taken = 0
        self.started_at: datetime | None = None
        self.phase_started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.rollback_reason: str | None = None
        self.last_error: str | None = None
        self.breaches: list[TriggerBreach] = []

        self._paused_seconds = 0.0
        self._paused_since: datetime | None = None
        self._window: deque[LiveMetricsSample] = deque()
        self._pending_pause: bool | None = None
        self._rollback_requested = asyncio.Event()
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        self._terminal = asyncio.Event()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._rollback_handlers: dict[str, RollbackHandler] = {
            "pause_traffic": self._pause_traffic,
            "restore_control": self._restore_control,
            "verify_restoration": self._verify_restoration,
        }

    # ----- read model -------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def current_phase(self) -> ImplementationPhase | None:
        if self.phase_index is None:
            return None
        return self.phases[self.phase_index]

    @property
    def status(self) -> ImplementationStatus:
        phase = self.current_phase if self.state == RolloutState.IN_PHASE else None
        return ImplementationStatus(
            test_id=self.test_id,
            winner_variant_id=self.winner_id,
            control_variant_id=self.control_id,
            state=self.state,
            phase_index=self.phase_index if phase else None,
            phase_id=phase.id if phase else None,
            phase_name=phase.name if phase else None,
            phase_count=len(self.phases),
            winner_traffic_percentage=self.winner_traffic,
            target_percentage=phase.rollout_percentage if phase else None,
            paused=self.paused,
            samples_taken=self.samples_taken,
            started_at=self.started_at,
            phase_started_at=self.phase_started_at,
            finished_at=self.finished_at,
            rollback_reason=self.rollback_reason,
            last_error=self.last_error,
            breaches=list(self.breaches),
        )

    # ----- time helpers -----------------------------------------------

    def _plan_hours(self, start: datetime, now: datetime) -> float:
        paused = self._paused_seconds
        if self._paused_since is not None:
            paused += (now - self._paused_since).total_seconds()
        seconds = (now - start).total_seconds() - paused
        return max(0.0, seconds) / self.settings.seconds_per_hour

    def _plan_minutes(self, minutes: float) -> timedelta:
        return timedelta(seconds=minutes * self.settings.seconds_per_hour / 60.0)

    # ----- commands ---------------------------------------------------

    async def start(
        self, run_loop: bool = True, now: datetime | None = None
    ) -> ImplementationStatus:
        """Move PENDING -> PHASE_1 and optionally start the sampling loop."""
        async with self._lock:
            if self.state != RolloutState.PENDING:
                return self.status
            now = now or self._clock()
            self.started_at = now
            self._enter_phase(0, now)
            await self._apply_split(0.0)
            metrics = get_metrics()
            if metrics:
                metrics.active_rollouts.inc()
            self.monitor.raise_alert(
                self.test_id,
                AlertType.IMPLEMENTATION_STARTED,
                f"Rolling out {self.winner_id} with "
                f"{self.conclusion.implementation_plan.strategy.value} strategy",
                data={"phases": len(self.phases), "winner": self.winner_id},
                deduplicate=False,
                now=now,
            )
            logger.info(
                "Rollout of %s for test %s started (%d phases)",
                self.winner_id,
                self.test_id,
                len(self.phases),
            )

        if run_loop and self._task is None:
            self._task = asyncio.create_task(
                self._run_loop(), name=f"rollout-{self.test_id}"
            )
        return self.status

    def pause(self) -> None:
        """Freeze ramp progression from the next step on."""
        self._pending_pause = True
        self._wake.set()

    def resume(self) -> None:
        """Unfreeze ramp progression from the next step on."""
        self._pending_pause = False
        self._wake.set()

    def request_rollback(self, reason: str = "manual") -> None:
        """Ask the controller to roll back at its next step."""
        if self.is_terminal:
            return
        if not self._rollback_requested.is_set():
            self.rollback_reason = reason
        self._rollback_requested.set()
        self._wake.set()

    async def rollback(self, reason: str = "manual") -> ImplementationStatus:
        """Roll back now. Idempotent; a terminal controller is unchanged.

        Raises:
            RollbackFailedError: If a remediation step fails.
        """
        self.request_rollback(reason)
        await self.step()
        return self.status

    async def stop(self) -> None:
        """Stop the sampling loop without changing state.

        Raises:
            RollbackFailedError: If the loop ended on a failed rollback.
        """
        self._stop.set()
        self._wake.set()
        if self._task is not None:
            task, self._task = self._task, None
            await task

    async def wait_terminal(self, timeout: float | None = None) -> ImplementationStatus:
        """Wait until the rollout completes or rolls back."""
        await asyncio.wait_for(self._terminal.wait(), timeout=timeout)
        return self.status

    # ----- state machine ------------------------------------------------

    def _enter_phase(self, index: int, now: datetime) -> None:
        self.state = RolloutState.IN_PHASE
        self.phase_index = index
        self.phase_started_at = now
        self._phase_floor = self.winner_traffic
        self._paused_seconds = 0.0

    def _set_paused(self, paused: bool, now: datetime) -> None:
        if paused == self.paused:
            return
        if paused:
            self._paused_since = now
        elif self._paused_since is not None:
            self._paused_seconds += (now - self._paused_since).total_seconds()
            self._paused_since = None
        self.paused = paused
        logger.info(
            "Rollout for test %s %s", self.test_id, "paused" if paused else "resumed"
        )

    async def _apply_split(self, winner_pct: float) -> None:
        winner_pct = min(100.0, max(0.0, winner_pct))
        await self.router.set_split(
            self.test_id,
            {self.control_id: 100.0 - winner_pct, self.winner_id: winner_pct},
        )
        self.winner_traffic = winner_pct

    def _finish(self, state: RolloutState, now: datetime) -> None:
        self.state = state
        self.finished_at = now
        self._terminal.set()
        self._wake.set()
        metrics = get_metrics()
        if metrics:
            metrics.active_rollouts.dec()

    async def step(self, now: datetime | None = None) -> ImplementationStatus:
        """Run one iteration: rollback, pause/resume, sample, ramp, advance."""
        async with self._lock:
            if self.is_terminal:
                return self.status
            now = now or self._clock()

            if self._rollback_requested.is_set():
                self._pending_pause = None
                await self._execute_rollback(
                    self.rollback_reason or "manual", now, trigger="manual"
                )
                return self.status

            if self._pending_pause is not None:
                pausing = self._pending_pause and not self.paused
                self._set_paused(self._pending_pause, now)
                self._pending_pause = None
                if pausing:
                    self.monitor.raise_alert(
                        self.test_id,
                        AlertType.IMPLEMENTATION_PAUSED,
                        f"Rollout of {self.winner_id} paused by operator",
                        data={"winner_traffic": self.winner_traffic},
                        deduplicate=False,
                        now=now,
                    )

            if self.state == RolloutState.PENDING:
                return self.status

            if await self._check_triggers(now):
                return self.status

            if not self.paused:
                await self._ramp_and_advance(now)
            return self.status

    async def _check_triggers(self, now: datetime) -> bool:
        """Sample and act on breaches. Returns True if rolled back."""
        try:
            sample = await self.metrics_source.sample(self.test_id)
        except Exception as e:
            self.last_error = f"Metrics sampling failed: {e}"
            logger.warning(
                "Live metrics sampling failed for test %s: %s", self.test_id, e
            )
            return False

        sample = sample.model_copy(update={"timestamp": now})
        self.samples_taken += 1
        self._window.append(sample)

        triggers = self.conclusion.rollback_plan.triggers
        horizon = max((t.timeframe for t in triggers), default=0.0)
        cutoff = now - self._plan_minutes(horizon)
        while self._window and self._window[0].timestamp < cutoff:
            self._window.popleft()

        for trigger in triggers:
            window_start = now - self._plan_minutes(trigger.timeframe)
            values = [
                v
                for s in self._window
                if s.timestamp >= window_start
                and (v := breach_value(trigger, s)) is not None
            ]
            if not values:
                continue
            value = sum(values) / len(values)
            if value <= trigger.threshold:
                continue

            breach = TriggerBreach(
                metric=trigger.metric,
                value=value,
                threshold=trigger.threshold,
                action=trigger.action,
                detected_at=now,
            )
            self.breaches.append(breach)
            del self.breaches[:-MAX_BREACHES]
            logger.warning(
                "Rollback trigger %s breached for test %s: %.4f > %.4f (%s)",
                trigger.metric,
                self.test_id,
                value,
                trigger.threshold,
                trigger.action.value,
            )

            if trigger.action == RollbackAction.ROLLBACK:
                self.rollback_reason = f"{trigger.metric} trigger breached"
                await self._execute_rollback(
                    self.rollback_reason, now, trigger=trigger.metric
                )
                return True
            if trigger.action == RollbackAction.PAUSE:
                self._set_paused(True, now)
            self.monitor.raise_alert(
                self.test_id,
                AlertType.TRIGGER_BREACHED,
                f"{trigger.metric} breached {trigger.threshold:.2%} "
                f"({value:.2%}); action: {trigger.action.value}",
                data=breach.model_dump(mode="json"),
                now=now,
            )
        return False

    async def _ramp_and_advance(self, now: datetime) -> None:
        phase = self.current_phase
        index = self.phase_index
        if phase is None or index is None or self.phase_started_at is None:
            return

        elapsed = self._plan_hours(self.phase_started_at, now)
        ramp_hours = phase.duration * self.settings.ramp_fraction
        progress = 1.0 if ramp_hours <= 0 else min(1.0, elapsed / ramp_hours)
        target = phase.rollout_percentage
        desired = self._phase_floor + (target - self._phase_floor) * progress
        desired = max(self.winner_traffic, desired)
        if desired != self.winner_traffic:
            await self._apply_split(desired)

        if self.winner_traffic < target or elapsed < phase.duration:
            return
        if self.monitor.stream.open_critical(self.test_id):
            logger.info(
                "Holding test %s in %s: critical alert open", self.test_id, phase.id
            )
            return

        if index + 1 < len(self.phases):
            self._enter_phase(index + 1, now)
            next_phase = self.phases[index + 1]
            self.monitor.raise_alert(
                self.test_id,
                AlertType.PHASE_ADVANCED,
                f"Advanced to {next_phase.name}",
                data={
                    "phase_id": next_phase.id,
                    "rollout_percentage": next_phase.rollout_percentage,
                },
                deduplicate=False,
                now=now,
            )
            return

        self._finish(RolloutState.COMPLETED, now)
        self.monitor.raise_alert(
            self.test_id,
            AlertType.IMPLEMENTATION_COMPLETED,
            f"{self.winner_id} serves 100% of traffic",
            deduplicate=False,
            now=now,
        )
        logger.info("Rollout for test %s completed", self.test_id)

    # ----- rollback -----------------------------------------------------

    async def _pause_traffic(self, now: datetime) -> None:
        self._set_paused(True, now)

    async def _restore_control(self, now: datetime) -> None:
        await self._apply_split(0.0)

    async def _verify_restoration(self, now: datetime) -> None:
        split = await self.router.get_split(self.test_id)
        if split.get(self.control_id) != 100.0:
            raise ABPilotError(
                f"Router reports {split} instead of 100% control",
                test_id=self.test_id,
            )

    async def _execute_rollback(
        self, reason: str, now: datetime, trigger: str
    ) -> None:
        self.rollback_reason = reason
        for step in self.conclusion.rollback_plan.procedure:
            handler = self._rollback_handlers.get(step.action)
            try:
                if handler is None:
                    raise ABPilotError(f"No handler for rollback step {step.action}")
                await handler(now)
            except Exception as e:
                error = RollbackFailedError(
                    f"Rollback step '{step.action}' failed: {e}",
                    test_id=self.test_id,
                    step=step.action,
                    cause=e,
                )
                self.last_error = error.message
                self._stop.set()
                self.monitor.raise_alert(
                    self.test_id,
                    AlertType.ROLLBACK_FAILED,
                    error.message,
                    data=error.to_dict(),
                    requires_manual_intervention=True,
                    deduplicate=False,
                    now=now,
                )
                logger.error(
                    "Rollback for test %s failed at %s: %s",
                    self.test_id,
                    step.action,
                    e,
                )
                raise error from e

        self._finish(RolloutState.ROLLED_BACK, now)
        metrics = get_metrics()
        if metrics:
            metrics.record_rollback(trigger)
        self.monitor.raise_alert(
            self.test_id,
            AlertType.ROLLBACK_TRIGGERED,
            f"Rolled back to {self.control_id}: {reason}",
            data={"reason": reason, "control_variant_id": self.control_id},
            severity=AlertSeverity.CRITICAL,
            now=now,
        )
        logger.warning("Rollout for test %s rolled back: %s", self.test_id, reason)

    # ----- sampling loop --------------------------------------------------

    async def _run_loop(self) -> None:
        interval = self.settings.sample_interval_seconds
        while not self.is_terminal and not self._stop.is_set():
            self._wake.clear()
            await self.step()
            if self.is_terminal or self._stop.is_set():
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.debug("Sampling loop for test %s exited", self.test_id)
