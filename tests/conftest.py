"""Shared pytest fixtures for abpilot tests."""

from collections.abc import Iterator
from datetime import datetime, timedelta

import pytest
from prometheus_client import CollectorRegistry

from abpilot.conclusion.engine import TestConclusionEngine
from abpilot.conclusion.models import TestConclusion
from abpilot.core.logging import reset_logging
from abpilot.core.metrics import configure_metrics, reset_metrics
from abpilot.scheduler.models import ActiveTest
from abpilot.statistics.models import Variant
from tests.factories import NOW, make_variant


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def metrics_registry() -> Iterator[CollectorRegistry]:
    """Route metrics into an isolated registry for each test."""
    reset_metrics()
    registry = CollectorRegistry()
    configure_metrics(enabled=True, registry=registry)
    yield registry
    reset_metrics()


@pytest.fixture(autouse=True)
def reset_logging_state() -> Iterator[None]:
    yield
    reset_logging()


@pytest.fixture
def now() -> datetime:
    return NOW


# =============================================================================
# Variant fixtures
# =============================================================================


@pytest.fixture
def example_variants() -> list[Variant]:
    """Promising but not yet significant: 2450 visitors, 96.7% confidence."""
    return [
        make_variant("control", 1200, 125, is_control=True),
        make_variant("variant_b", 1250, 165),
    ]


@pytest.fixture
def winning_variants() -> list[Variant]:
    """A clear winner: 10% vs 12% over 10,000 visitors, a week old."""
    started = NOW - timedelta(days=7)
    return [
        make_variant(
            "control",
            5000,
            500,
            is_control=True,
            revenue=25000.0,
            started_at=started,
        ),
        make_variant("variant_b", 5000, 600, revenue=30000.0, started_at=started),
    ]


@pytest.fixture
def empty_variants() -> list[Variant]:
    return [
        make_variant("control", 0, 0, is_control=True),
        make_variant("variant_b", 0, 0),
    ]


@pytest.fixture
def winning_test(winning_variants: list[Variant]) -> ActiveTest:
    return ActiveTest(test_id="checkout", name="Checkout", variants=winning_variants)


@pytest.fixture
def winning_conclusion(winning_variants: list[Variant]) -> TestConclusion:
    conclusion = TestConclusionEngine().evaluate_test_conclusion(
        "checkout", winning_variants, now=NOW
    )
    assert conclusion is not None
    return conclusion
