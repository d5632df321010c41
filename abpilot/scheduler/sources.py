"""Sources of active tests for the scheduler."""

from typing import Protocol, runtime_checkable

from abpilot.scheduler.models import ActiveTest


@runtime_checkable
class TestSource(Protocol):
    """Read model over running experiments and their current counters."""

    async def list_active_tests(self) -> list[ActiveTest]:
        """Return all tests the scheduler may consider."""
        ...

    async def get_test(self, test_id: str) -> ActiveTest | None:
        """Return fresh counters for one test, or None if unknown."""
        ...


class InMemoryTestSource:
    """Test source backed by a dict, for embedding and tests."""

    __test__ = False

    def __init__(self, tests: list[ActiveTest] | None = None) -> None:
        self._tests: dict[str, ActiveTest] = {t.test_id: t for t in tests or []}

    def put(self, test: ActiveTest) -> None:
        """Add or replace a test."""
        self._tests[test.test_id] = test

    def remove(self, test_id: str) -> bool:
        return self._tests.pop(test_id, None) is not None

    async def list_active_tests(self) -> list[ActiveTest]:
        return [t.model_copy(deep=True) for t in self._tests.values()]

    async def get_test(self, test_id: str) -> ActiveTest | None:
        test = self._tests.get(test_id)
        return test.model_copy(deep=True) if test else None
