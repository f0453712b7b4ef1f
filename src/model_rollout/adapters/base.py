"""
Adapter interfaces for the systems the controller talks to.

The controller only depends on these two narrow contracts:
- MetricsGateway: reports (baseline, candidate) samples for a segment
- TrafficRouter: applies a baseline/candidate weight split

Implementations raise AdapterError (or any exception, which the retry
policy converts) for transient failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from model_rollout.rollout.models import MetricSample, TrafficSplit


@dataclass(frozen=True)
class RouterAck:
    """Confirmation returned by the traffic router."""

    baseline_pct: int
    candidate_pct: int
    applied_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def matches(self, split: TrafficSplit) -> bool:
        """Whether the router applied exactly ``split``."""
        return (self.baseline_pct, self.candidate_pct) == (
            split.baseline_pct,
            split.candidate_pct,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "baseline_pct": self.baseline_pct,
            "candidate_pct": self.candidate_pct,
            "applied_at": self.applied_at.isoformat(),
        }


class MetricsGateway(ABC):
    """Source of live metric samples for baseline and candidate."""

    name = "metrics_gateway"

    @abstractmethod
    async def fetch_samples(
        self, version_id: str, segment: str, since: datetime
    ) -> list[MetricSample]:
        """Return samples for ``version_id`` in ``segment`` observed since ``since``."""

    async def close(self) -> None:
        """Release resources held by the gateway."""


class TrafficRouter(ABC):
    """Applies traffic splits between baseline and candidate."""

    name = "traffic_router"

    @abstractmethod
    async def set_weights(self, split: TrafficSplit) -> RouterAck:
        """Apply ``split`` and return the router's confirmation."""

    async def close(self) -> None:
        """Release resources held by the router."""
