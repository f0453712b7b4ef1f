"""
Simulated adapters for dry runs and tests.

SimulatedMetricsGateway fabricates evenly spaced samples from fixed metric
profiles and can switch the candidate to a degraded profile once the
router has moved a given share of traffic to it. RecordingTrafficRouter
keeps every split it was asked to apply. Both support failure injection.

Example:
    >>> clock = SimulatedClock()
    >>> router = RecordingTrafficRouter()
    >>> gateway = SimulatedMetricsGateway(
    ...     clock,
    ...     router=router,
    ...     degraded=MetricProfile(error_rate=0.2),
    ...     degrade_at_weight=50,
    ... )
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from model_rollout.adapters.base import MetricsGateway, RouterAck, TrafficRouter
from model_rollout.config.schema import MetricName
from model_rollout.rollout.errors import AdapterError
from model_rollout.rollout.models import MetricSample, TrafficSplit

logger = logging.getLogger(__name__)


class SimulatedClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now += timedelta(seconds=seconds)
        return self._now


@dataclass(frozen=True)
class MetricProfile:
    """Constant metric values reported for one model version."""

    error_rate: float = 0.01
    latency_p99: float = 120.0
    drift_score: float = 0.0

    def value(self, metric: MetricName) -> float:
        return {
            MetricName.ERROR_RATE: self.error_rate,
            MetricName.LATENCY_P99: self.latency_p99,
            MetricName.DRIFT_SCORE: self.drift_score,
        }[metric]


class RecordingTrafficRouter(TrafficRouter):
    """Router that records splits instead of moving traffic."""

    def __init__(self, delay_seconds: float = 0.0):
        self.splits: list[TrafficSplit] = []
        self.calls = 0
        self.delay_seconds = delay_seconds
        self._failures_left = 0
        self.fail_always = False

    def fail_next(self, count: int) -> None:
        """Make the next ``count`` calls raise AdapterError."""
        self._failures_left = count

    @property
    def current_candidate_pct(self) -> int:
        return self.splits[-1].candidate_pct if self.splits else 0

    @property
    def candidate_weights(self) -> list[int]:
        return [split.candidate_pct for split in self.splits]

    async def set_weights(self, split: TrafficSplit) -> RouterAck:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_always or self._failures_left > 0:
            self._failures_left = max(self._failures_left - 1, 0)
            raise AdapterError("simulated router outage", adapter=self.name)
        self.splits.append(split)
        logger.debug(f"Router applied {split.baseline_pct}/{split.candidate_pct}")
        return RouterAck(baseline_pct=split.baseline_pct, candidate_pct=split.candidate_pct)


class SimulatedMetricsGateway(MetricsGateway):
    """Gateway producing synthetic samples from metric profiles."""

    def __init__(
        self,
        clock: SimulatedClock,
        baseline: MetricProfile | None = None,
        candidate: MetricProfile | None = None,
        degraded: MetricProfile | None = None,
        degrade_at_weight: int | None = None,
        router: RecordingTrafficRouter | None = None,
        samples_per_fetch: int = 10,
    ):
        """
        Initialize simulated gateway.

        Args:
            clock: Clock defining the end of every fetched window
            baseline: Profile reported for the baseline
            candidate: Profile reported for a healthy candidate
            degraded: Profile reported once the candidate degrades
            degrade_at_weight: Candidate weight from which ``degraded`` applies
            router: Router whose current split drives degradation
            samples_per_fetch: Samples generated per metric per fetch
        """
        self.clock = clock
        self.baseline = baseline or MetricProfile()
        self.candidate = candidate or MetricProfile()
        self.degraded = degraded
        self.degrade_at_weight = degrade_at_weight
        self.router = router
        self.samples_per_fetch = samples_per_fetch
        self.calls = 0
        self._failures_left = 0
        self.fail_always = False

    def fail_next(self, count: int) -> None:
        """Make the next ``count`` calls raise AdapterError."""
        self._failures_left = count

    def _candidate_profile(self) -> MetricProfile:
        if (
            self.degraded is not None
            and self.degrade_at_weight is not None
            and self.router is not None
            and self.router.current_candidate_pct >= self.degrade_at_weight
        ):
            return self.degraded
        return self.candidate

    async def fetch_samples(
        self, version_id: str, segment: str, since: datetime
    ) -> list[MetricSample]:
        self.calls += 1
        if self.fail_always or self._failures_left > 0:
            self._failures_left = max(self._failures_left - 1, 0)
            raise AdapterError("simulated gateway outage", adapter=self.name)

        end = self.clock()
        if end <= since or self.samples_per_fetch == 0:
            return []
        candidate = self._candidate_profile()
        step = (end - since) / self.samples_per_fetch
        samples = []
        for i in range(1, self.samples_per_fetch + 1):
            timestamp = since + step * i
            for metric in MetricName:
                samples.append(
                    MetricSample(
                        timestamp=timestamp,
                        metric=metric,
                        baseline_value=self.baseline.value(metric),
                        candidate_value=candidate.value(metric),
                    )
                )
        return samples
