"""Tests for the automatic winner scheduler."""

import asyncio
from datetime import datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from abpilot.conclusion.engine import TestConclusionEngine
from abpilot.core.exceptions import ConfigurationError, SchedulerTickError
from abpilot.monitoring.models import AlertType
from abpilot.monitoring.monitor import PerformanceMonitor
from abpilot.rollout.registry import ImplementationRegistry
from abpilot.rollout.traffic import InMemoryLiveMetricsSource, InMemoryTrafficRouter
from abpilot.scheduler.models import (
    ActiveTest,
    EvaluationOutcome,
    ExperimentStatus,
    ManualEvaluationRequest,
    SchedulerConfig,
)
from abpilot.scheduler.scheduler import AutomaticWinnerScheduler
from abpilot.scheduler.sources import InMemoryTestSource
from abpilot.statistics.models import RecommendedAction, Variant
from tests.factories import NOW, make_variant


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class BrokenSource(InMemoryTestSource):
    """Source whose enumeration fails a set number of times."""

    def __init__(self, failures: int, tests: list[ActiveTest]) -> None:
        super().__init__(tests)
        self.failures = failures

    async def list_active_tests(self) -> list[ActiveTest]:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("analytics unavailable")
        return await super().list_active_tests()


class FreshCountersSource(InMemoryTestSource):
    """Source whose per-test reads are newer than its listing."""

    def __init__(self, listed: ActiveTest, fresh: ActiveTest) -> None:
        super().__init__([listed])
        self.fresh = fresh

    async def get_test(self, test_id: str) -> ActiveTest | None:
        return self.fresh.model_copy(deep=True)


class SlowSource(InMemoryTestSource):
    async def get_test(self, test_id: str) -> ActiveTest | None:
        await asyncio.sleep(5)
        return await super().get_test(test_id)


class ConcurrencyTrackingSource(InMemoryTestSource):
    """Source that records how many evaluations read counters at once."""

    def __init__(self, tests: list[ActiveTest]) -> None:
        super().__init__(tests)
        self.active = 0
        self.peak = 0

    async def get_test(self, test_id: str) -> ActiveTest | None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().get_test(test_id)
        finally:
            self.active -= 1


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def monitor(clock: Clock) -> PerformanceMonitor:
    return PerformanceMonitor(clock=clock)


@pytest.fixture
def registry(monitor: PerformanceMonitor, clock: Clock) -> ImplementationRegistry:
    return ImplementationRegistry(
        router=InMemoryTrafficRouter(),
        metrics_source=InMemoryLiveMetricsSource(),
        monitor=monitor,
        clock=clock,
        run_loops=False,
    )


@pytest.fixture
def source() -> InMemoryTestSource:
    return InMemoryTestSource()


@pytest.fixture
def make_scheduler(
    monitor: PerformanceMonitor,
    registry: ImplementationRegistry,
    clock: Clock,
):
    def factory(
        source: InMemoryTestSource, config: SchedulerConfig | None = None
    ) -> AutomaticWinnerScheduler:
        return AutomaticWinnerScheduler(
            source,
            TestConclusionEngine(),
            monitor,
            registry,
            config=config,
            clock=clock,
        )

    return factory


@pytest.fixture
def scheduler(make_scheduler, source: InMemoryTestSource) -> AutomaticWinnerScheduler:
    return make_scheduler(source)


def promising_test(example_variants: list[Variant]) -> ActiveTest:
    return ActiveTest(test_id="search", name="Search", variants=example_variants)


class TestTick:
    """Tests for a single scheduler pass."""

    @pytest.mark.anyio
    async def test_winner_is_concluded_and_rolled_out(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        registry: ImplementationRegistry,
        winning_test: ActiveTest,
        metrics_registry: CollectorRegistry,
    ) -> None:
        source.put(winning_test)

        result = await scheduler.run_tick()

        [record] = result.records
        assert record.outcome == EvaluationOutcome.WINNER
        assert record.winner_variant_id == "variant_b"
        assert record.recommended_action == RecommendedAction.STOP
        assert record.alerts_raised == 1
        conclusion = scheduler.get_conclusion("checkout")
        assert conclusion is not None
        status = registry.get_status("checkout")
        assert status is not None and status.label == "PHASE_1"

        metrics = scheduler.get_metrics()
        assert metrics.total_tests_monitored == 1
        assert metrics.tests_evaluated_today == 1
        assert metrics.winners_selected_today == 1
        assert metrics.success_rate == 1.0
        assert metrics.last_run_at == NOW
        assert (
            metrics_registry.get_sample_value(
                "abpilot_winners_total", {"strategy": "gradual"}
            )
            == 1.0
        )
        assert (
            metrics_registry.get_sample_value(
                "abpilot_evaluations_total", {"outcome": "winner"}
            )
            == 1.0
        )

    @pytest.mark.anyio
    async def test_concluded_test_is_skipped(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)
        await scheduler.run_tick()

        result = await scheduler.run_tick()

        [record] = result.records
        assert record.outcome == EvaluationOutcome.SKIPPED
        assert record.skip_reason == "conclusion already recorded"
        assert scheduler.get_metrics().total_evaluations == 1

    @pytest.mark.anyio
    async def test_promising_test_keeps_running(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        example_variants: list[Variant],
    ) -> None:
        source.put(promising_test(example_variants))

        result = await scheduler.run_tick()

        [record] = result.records
        assert record.outcome == EvaluationOutcome.NO_WINNER
        assert record.recommended_action == RecommendedAction.EXTEND
        assert scheduler.get_conclusion("search") is None
        evaluation = scheduler.get_evaluation("search")
        assert evaluation is not None
        assert evaluation.overall_significance == pytest.approx(0.967, abs=0.002)

    @pytest.mark.anyio
    async def test_ineligible_tests_are_ignored(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_variants: list[Variant],
        example_variants: list[Variant],
    ) -> None:
        source.put(
            ActiveTest(
                test_id="manual", variants=winning_variants, auto_winner_enabled=False
            )
        )
        source.put(
            ActiveTest(
                test_id="paused",
                variants=winning_variants,
                status=ExperimentStatus.PAUSED,
            )
        )
        source.put(promising_test(example_variants))

        result = await scheduler.run_tick()

        assert [r.test_id for r in result.records] == ["search"]
        assert scheduler.get_metrics().total_tests_monitored == 1

    @pytest.mark.anyio
    async def test_locked_test_is_skipped(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)

        async with scheduler._locks.acquire("checkout"):
            result = await scheduler.run_tick()

        [record] = result.records
        assert record.outcome == EvaluationOutcome.SKIPPED
        assert record.skip_reason == "evaluation in flight"

    @pytest.mark.anyio
    async def test_forced_run_waits_for_in_flight_evaluation(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_test: ActiveTest,
    ) -> None:
        """Test a forced pass blocks on a held test lock instead of racing."""
        source.put(winning_test)
        release = asyncio.Event()
        held = asyncio.Event()

        async def hold_lock() -> None:
            async with scheduler._locks.acquire("checkout"):
                held.set()
                await release.wait()

        holder = asyncio.create_task(hold_lock())
        await held.wait()
        forced = asyncio.create_task(scheduler.force_run())
        await asyncio.sleep(0.02)

        assert not forced.done()
        assert scheduler.get_conclusion("checkout") is None

        release.set()
        await holder
        result = await forced

        [record] = result.records
        assert record.outcome == EvaluationOutcome.WINNER
        assert scheduler.get_conclusion("checkout") is not None

    @pytest.mark.anyio
    async def test_pool_bounds_concurrent_evaluations(
        self, make_scheduler, example_variants: list[Variant]
    ) -> None:
        tests = [
            ActiveTest(test_id=f"t{i}", variants=example_variants) for i in range(10)
        ]
        tracking = ConcurrencyTrackingSource(tests)
        scheduler = make_scheduler(
            tracking, SchedulerConfig(max_concurrent_evaluations=2)
        )

        result = await scheduler.force_run()

        assert len(result.records) == 10
        assert tracking.peak == 2
        assert tracking.active == 0

    @pytest.mark.anyio
    async def test_forced_run_reloads_counters(
        self,
        make_scheduler,
        example_variants: list[Variant],
        winning_variants: list[Variant],
    ) -> None:
        listed = ActiveTest(test_id="checkout", variants=example_variants)
        fresh = ActiveTest(test_id="checkout", variants=winning_variants)
        scheduler = make_scheduler(FreshCountersSource(listed, fresh))

        result = await scheduler.force_run()

        assert result.forced
        assert result.records[0].outcome == EvaluationOutcome.WINNER

    @pytest.mark.anyio
    async def test_forced_run_ignores_enabled(
        self, make_scheduler, winning_test: ActiveTest
    ) -> None:
        scheduler = make_scheduler(
            InMemoryTestSource([winning_test]), SchedulerConfig(enabled=False)
        )
        result = await scheduler.force_run()
        assert result.count(EvaluationOutcome.WINNER) == 1


class TestFailures:
    """Tests for failed, timed out and unlistable evaluations."""

    @pytest.mark.anyio
    async def test_invalid_counters_fail_the_evaluation(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        monitor: PerformanceMonitor,
        example_variants: list[Variant],
        metrics_registry: CollectorRegistry,
    ) -> None:
        broken = ActiveTest(
            test_id="broken",
            variants=[
                make_variant("control", 100, 10, is_control=True),
                make_variant("variant_b", 100, 150),
            ],
        )
        source.put(broken)
        source.put(promising_test(example_variants))

        await scheduler.run_tick()
        result = await scheduler.run_tick()

        by_id = {r.test_id: r for r in result.records}
        assert by_id["broken"].outcome == EvaluationOutcome.FAILED
        assert by_id["broken"].consecutive_failures == 2
        assert "exceed impressions" in (by_id["broken"].last_error or "")
        assert by_id["search"].outcome == EvaluationOutcome.NO_WINNER

        metrics = scheduler.get_metrics()
        assert metrics.total_failures == 2
        assert metrics.failed_evaluations_today == 2
        assert metrics.success_rate == pytest.approx(0.5)
        assert "broken" in metrics.last_evaluation_errors
        # The second failure is inside the alert cool-down.
        failed = monitor.stream.get_alerts(alert_type=AlertType.EVALUATION_FAILED)
        assert len(failed) == 1
        assert (
            metrics_registry.get_sample_value(
                "abpilot_evaluations_total", {"outcome": "failed"}
            )
            == 2.0
        )

        source.put(
            ActiveTest(
                test_id="broken",
                variants=[
                    make_variant("control", 100, 10, is_control=True),
                    make_variant("variant_b", 100, 15),
                ],
            )
        )
        await scheduler.run_tick()
        assert "broken" not in scheduler.get_metrics().last_evaluation_errors

    @pytest.mark.anyio
    async def test_slow_evaluation_times_out(
        self, make_scheduler, winning_test: ActiveTest
    ) -> None:
        scheduler = make_scheduler(
            SlowSource([winning_test]), SchedulerConfig(check_interval=0.001)
        )

        result = await scheduler.force_run()

        [record] = result.records
        assert record.outcome == EvaluationOutcome.TIMEOUT
        assert record.last_error is not None
        assert "exceeded" in record.last_error
        assert scheduler.get_metrics().total_failures == 1

    @pytest.mark.anyio
    async def test_listing_failure_backs_off(
        self,
        make_scheduler,
        winning_test: ActiveTest,
        metrics_registry: CollectorRegistry,
    ) -> None:
        scheduler = make_scheduler(BrokenSource(3, [winning_test]))
        retries = []
        for attempt in (1, 2, 3):
            with pytest.raises(SchedulerTickError) as exc_info:
                await scheduler.run_tick()
            assert exc_info.value.attempt == attempt
            assert isinstance(exc_info.value.cause, ConnectionError)
            retries.append(exc_info.value.retry_in_seconds)

        # 30 minute interval doubling, capped at five intervals.
        assert retries == [3600.0, 7200.0, 9000.0]
        assert metrics_registry.get_sample_value("abpilot_tick_failures_total") == 3.0

        result = await scheduler.run_tick()
        assert result.count(EvaluationOutcome.WINNER) == 1
        assert scheduler._tick_failures == 0


class TestConfig:
    """Tests for live configuration updates."""

    def test_flat_and_nested_criteria(
        self, scheduler: AutomaticWinnerScheduler
    ) -> None:
        config = scheduler.update_config(
            check_interval=5, minimum_confidence=99, risk_tolerance="aggressive"
        )
        assert config.check_interval == 5
        assert config.default_criteria.minimum_confidence == 99
        assert config.default_criteria.risk_tolerance == "aggressive"

        config = scheduler.update_config(
            default_criteria={"minimum_improvement": 10}
        )
        assert config.default_criteria.minimum_improvement == 10
        assert config.default_criteria.minimum_confidence == 99

    def test_unknown_field_rejected(self, scheduler: AutomaticWinnerScheduler) -> None:
        with pytest.raises(ConfigurationError, match="Unknown scheduler config"):
            scheduler.update_config(interval_seconds=5)

    def test_invalid_value_keeps_old_config(
        self, scheduler: AutomaticWinnerScheduler
    ) -> None:
        with pytest.raises(ConfigurationError, match="Invalid scheduler config"):
            scheduler.update_config(max_concurrent_evaluations=0)
        assert scheduler.get_config().max_concurrent_evaluations == 5

    @pytest.mark.anyio
    async def test_criteria_apply_on_next_tick(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)
        scheduler.update_config(minimum_improvement=25, max_concurrent_evaluations=2)

        result = await scheduler.run_tick()

        assert result.records[0].outcome == EvaluationOutcome.NO_WINNER
        assert scheduler._semaphore_size == 2


class TestCounters:
    @pytest.mark.anyio
    async def test_daily_counters_reset(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        clock: Clock,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)
        await scheduler.run_tick()

        clock.now = NOW + timedelta(days=2)
        metrics = scheduler.get_metrics()

        assert metrics.tests_evaluated_today == 0
        assert metrics.winners_selected_today == 0
        assert metrics.total_evaluations == 1
        assert metrics.total_winners == 1


class TestManualRequests:
    """Tests for manual evaluation and reset."""

    @pytest.mark.anyio
    async def test_forced_request(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)
        record = await scheduler.handle_request(
            ManualEvaluationRequest(test_id="checkout")
        )
        assert record.outcome == EvaluationOutcome.WINNER

    @pytest.mark.anyio
    @pytest.mark.parametrize("force", [True, False])
    async def test_unknown_test_is_skipped(
        self, scheduler: AutomaticWinnerScheduler, force: bool
    ) -> None:
        record = await scheduler.handle_request(
            ManualEvaluationRequest(test_id="missing", force_evaluation=force)
        )
        assert record.outcome == EvaluationOutcome.SKIPPED
        assert record.skip_reason == "test no longer exists"

    @pytest.mark.anyio
    async def test_unforced_request_evaluates_listed_counters(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        example_variants: list[Variant],
    ) -> None:
        source.put(promising_test(example_variants))
        record = await scheduler.handle_request(
            ManualEvaluationRequest(test_id="search", force_evaluation=False)
        )
        assert record.outcome == EvaluationOutcome.NO_WINNER

    @pytest.mark.anyio
    async def test_reset_allows_reevaluation(
        self,
        scheduler: AutomaticWinnerScheduler,
        source: InMemoryTestSource,
        registry: ImplementationRegistry,
        winning_test: ActiveTest,
    ) -> None:
        source.put(winning_test)
        await scheduler.run_tick()

        assert scheduler.reset_test("checkout") is True
        assert scheduler.get_conclusion("checkout") is None
        assert scheduler.get_evaluation("checkout") is None
        assert scheduler.reset_test("checkout") is False

        # The existing rollout is kept; the new conclusion is recorded.
        record = await scheduler.evaluate_now("checkout")
        assert record.outcome == EvaluationOutcome.WINNER
        assert len(registry) == 1


class TestLoop:
    @pytest.mark.anyio
    async def test_start_and_stop(
        self, make_scheduler, winning_test: ActiveTest
    ) -> None:
        scheduler = make_scheduler(
            InMemoryTestSource([winning_test]),
            SchedulerConfig(check_interval=0.0005),
        )

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(200):
            if scheduler.get_metrics().total_evaluations:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.get_metrics().total_winners == 1

    @pytest.mark.anyio
    async def test_disabled_loop_does_not_evaluate(
        self, make_scheduler, winning_test: ActiveTest
    ) -> None:
        scheduler = make_scheduler(
            InMemoryTestSource([winning_test]),
            SchedulerConfig(enabled=False, check_interval=0.0005),
        )

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.get_metrics().total_evaluations == 0
