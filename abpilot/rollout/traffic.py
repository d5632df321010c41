"""Traffic routing and live metric collaborators for rollouts."""

import logging
from collections import defaultdict, deque
from typing import Protocol, runtime_checkable

from abpilot.core.exceptions import InvalidInputError
from abpilot.rollout.models import LiveMetricsSample

logger = logging.getLogger(__name__)


@runtime_checkable
class TrafficRouter(Protocol):
    """Applies traffic splits (variant id -> percent) for a test."""

    async def set_split(self, test_id: str, split: dict[str, float]) -> None:
        """Route traffic for a test. Percentages sum to 100."""
        ...

    async def get_split(self, test_id: str) -> dict[str, float]:
        """Return the split currently in effect."""
        ...


@runtime_checkable
class LiveMetricsSource(Protocol):
    """Provides live metric samples for a rolling-out test."""

    async def sample(self, test_id: str) -> LiveMetricsSample:
        """Take one sample of live metrics."""
        ...


class InMemoryTrafficRouter:
    """Traffic router that keeps splits in memory and records history."""

    def __init__(self, tolerance: float = 0.01) -> None:
        self._splits: dict[str, dict[str, float]] = {}
        self._history: dict[str, list[dict[str, float]]] = defaultdict(list)
        self._tolerance = tolerance

    async def set_split(self, test_id: str, split: dict[str, float]) -> None:
        total = sum(split.values())
        if abs(total - 100.0) > self._tolerance:
            raise InvalidInputError(
                f"Traffic split sums to {total:.2f}%, expected 100%",
                test_id=test_id,
            )
        if any(value < 0 for value in split.values()):
            raise InvalidInputError("Negative traffic share", test_id=test_id)
        self._splits[test_id] = dict(split)
        self._history[test_id].append(dict(split))
        logger.debug("Traffic split for %s set to %s", test_id, split)

    async def get_split(self, test_id: str) -> dict[str, float]:
        return dict(self._splits.get(test_id, {}))

    def history(self, test_id: str) -> list[dict[str, float]]:
        """All splits applied to a test, oldest first."""
        return [dict(s) for s in self._history.get(test_id, [])]


class InMemoryLiveMetricsSource:
    """Serves queued samples per test, then repeats the last one.

    Tests with nothing queued get a healthy sample equal to the baseline.
    """

    def __init__(self) -> None:
        self._queued: dict[str, deque[LiveMetricsSample]] = defaultdict(deque)
        self._last: dict[str, LiveMetricsSample] = {}

    def push(self, test_id: str, *samples: LiveMetricsSample) -> None:
        self._queued[test_id].extend(samples)

    async def sample(self, test_id: str) -> LiveMetricsSample:
        queue = self._queued.get(test_id)
        if queue:
            self._last[test_id] = queue.popleft()
        return self._last.get(test_id, LiveMetricsSample()).model_copy()
