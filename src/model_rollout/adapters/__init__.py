"""Adapters for the metrics gateway and the traffic router."""

from model_rollout.adapters.base import MetricsGateway, RouterAck, TrafficRouter
from model_rollout.adapters.http import HttpMetricsGateway, HttpTrafficRouter
from model_rollout.adapters.simulated import (
    MetricProfile,
    RecordingTrafficRouter,
    SimulatedClock,
    SimulatedMetricsGateway,
)

__all__ = [
    "MetricsGateway",
    "TrafficRouter",
    "RouterAck",
    "HttpMetricsGateway",
    "HttpTrafficRouter",
    "MetricProfile",
    "RecordingTrafficRouter",
    "SimulatedClock",
    "SimulatedMetricsGateway",
]
