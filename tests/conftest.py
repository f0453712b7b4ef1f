"""Shared pytest fixtures for model-rollout-controller tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src directory to path for imports without installation
_src_path = str(Path(__file__).parent.parent / "src")
if _src_path not in sys.path:
    sys.path.insert(0, _src_path)

from model_rollout.adapters.simulated import (  # noqa: E402
    MetricProfile,
    RecordingTrafficRouter,
    SimulatedClock,
    SimulatedMetricsGateway,
)
from model_rollout.config.schema import (  # noqa: E402
    ControllerSettings,
    MetricName,
    RetrySettings,
    RolloutPlan,
)
from model_rollout.rollout.controller import RolloutController  # noqa: E402
from model_rollout.rollout.models import MetricSample  # noqa: E402
from model_rollout.rollout.store import InMemoryRunStore  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


async def no_sleep(_: float) -> None:
    """Backoff replacement that returns immediately."""
    return None


def make_samples(
    metric: MetricName,
    baseline: float,
    candidate: float,
    count: int,
    start: datetime = T0,
    spacing_seconds: float = 1.0,
) -> list[MetricSample]:
    """Evenly spaced samples of one metric starting after ``start``."""
    return [
        MetricSample(
            timestamp=start + timedelta(seconds=spacing_seconds * (i + 1)),
            metric=metric,
            baseline_value=baseline,
            candidate_value=candidate,
        )
        for i in range(count)
    ]


@pytest.fixture
def plan_data():
    """Three-step plan gated on absolute error-rate delta."""
    return {
        "plan_id": "plan-test",
        "candidate_version": "model-v2",
        "baseline_version": "model-v1",
        "steps": [10, 50, 100],
        "default_min_observation_seconds": 60,
        "default_min_samples": 5,
        "thresholds": {"max_error_rate_delta": 0.02},
        "max_total_duration_seconds": 3600,
    }


@pytest.fixture
def plan(plan_data):
    """Validated three-step plan."""
    return RolloutPlan.model_validate(plan_data)


@pytest.fixture
def clock():
    """Manually advanced clock starting at T0."""
    return SimulatedClock(T0)


@pytest.fixture
def router():
    """Recording traffic router."""
    return RecordingTrafficRouter()


@pytest.fixture
def gateway(clock, router):
    """Healthy simulated gateway (10 samples per metric per fetch)."""
    return SimulatedMetricsGateway(clock, router=router, samples_per_fetch=10)


@pytest.fixture
def degraded_profile():
    """Candidate profile breaching a 0.02 error-rate threshold."""
    return MetricProfile(error_rate=0.05)


@pytest.fixture
def store():
    """In-memory run store."""
    return InMemoryRunStore()


@pytest.fixture
def settings():
    """Fast controller settings for tests."""
    return ControllerSettings(
        tick_interval_seconds=0.01,
        adapter_timeout_seconds=1.0,
        store_timeout_seconds=1.0,
        retry=RetrySettings(max_attempts=2, initial_delay_seconds=0.0, jitter=False),
    )


@pytest.fixture
def controller(store, gateway, router, settings, clock):
    """Controller wired to simulated adapters and the simulated clock."""
    return RolloutController(
        store,
        gateway,
        router,
        settings,
        clock=clock,
        sleep=no_sleep,
    )
