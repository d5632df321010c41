"""Registry enforcing one rollout controller per test."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from abpilot.conclusion.models import TestConclusion
from abpilot.core.exceptions import AlreadyImplementingError
from abpilot.core.settings import RolloutSettings
from abpilot.monitoring.monitor import PerformanceMonitor
from abpilot.rollout.controller import ImplementationController
from abpilot.rollout.models import ImplementationStatus
from abpilot.rollout.traffic import LiveMetricsSource, TrafficRouter

logger = logging.getLogger(__name__)


class ImplementationRegistry:
    """Creates, tracks and releases implementation controllers.

    A test keeps its controller after it completes or rolls back, so a
    second conclusion for the same test is rejected until ``release`` is
    called.
    """

    def __init__(
        self,
        router: TrafficRouter,
        metrics_source: LiveMetricsSource,
        monitor: PerformanceMonitor,
        settings: RolloutSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        run_loops: bool = True,
    ) -> None:
        """Initialize the registry.

        Args:
            router: Traffic router shared by all controllers.
            metrics_source: Live metrics shared by all controllers.
            monitor: Monitor used to raise rollout alerts.
            settings: Rollout settings for new controllers.
            clock: Clock injected into new controllers.
            run_loops: Start each controller's sampling loop. Disable to
                drive controllers with ``step`` only.
        """
        self.router = router
        self.metrics_source = metrics_source
        self.monitor = monitor
        self.settings = settings or RolloutSettings()
        self._clock = clock
        self._run_loops = run_loops
        self._controllers: dict[str, ImplementationController] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, test_id: object) -> bool:
        return test_id in self._controllers

    def __len__(self) -> int:
        return len(self._controllers)

    async def start_implementation(
        self, conclusion: TestConclusion
    ) -> ImplementationController:
        """Create and start the controller for a conclusion.

        Raises:
            AlreadyImplementingError: If the test already has a controller.
        """
        async with self._lock:
            existing = self._controllers.get(conclusion.test_id)
            if existing is not None:
                raise AlreadyImplementingError(
                    conclusion.test_id, state=existing.status.label
                )
            controller = ImplementationController(
                conclusion,
                router=self.router,
                metrics_source=self.metrics_source,
                monitor=self.monitor,
                settings=self.settings,
                clock=self._clock,
            )
            self._controllers[conclusion.test_id] = controller

        await controller.start(run_loop=self._run_loops)
        return controller

    def get(self, test_id: str) -> ImplementationController | None:
        return self._controllers.get(test_id)

    def get_status(self, test_id: str) -> ImplementationStatus | None:
        """Status read model for a test's rollout, if any."""
        controller = self._controllers.get(test_id)
        return controller.status if controller else None

    def list_statuses(self) -> list[ImplementationStatus]:
        return [c.status for c in self._controllers.values()]

    async def release(self, test_id: str) -> bool:
        """Forget a terminal controller so the test can be implemented again.

        Returns:
            True if released, False if there is no controller.

        Raises:
            AlreadyImplementingError: If the controller is still active.
        """
        async with self._lock:
            controller = self._controllers.get(test_id)
            if controller is None:
                return False
            if not controller.is_terminal:
                raise AlreadyImplementingError(test_id, state=controller.status.label)
            await controller.stop()
            del self._controllers[test_id]
            logger.info("Released rollout controller for test %s", test_id)
            return True

    async def shutdown(self) -> None:
        """Stop every sampling loop. Controller state is kept."""
        for controller in list(self._controllers.values()):
            await controller.stop()
