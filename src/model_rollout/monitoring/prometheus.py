"""
Prometheus Metrics Exporter for Model Rollouts.

Provides metrics export for:
- Phase transitions per target phase
- Verdicts per outcome and reason
- Adapter failures per operation
- Current candidate weight and step index per run

Compatible with the Prometheus text exposition format.

Example:
    >>> exporter = RolloutMetricsExporter()
    >>> exporter.record_transition("run-1", "model-v2", "advancing", "holding")
    >>> exporter.record_weight("run-1", "model-v2", 25)
    >>> print(exporter.export())
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class _ExportSample:
    """Individual exported sample."""

    name: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class _Family:
    name: str
    kind: str
    help: str


FAMILIES = (
    _Family("transitions_total", "counter", "Phase transitions by target phase"),
    _Family("verdicts_total", "counter", "Health verdicts by outcome and reason"),
    _Family("adapter_failures_total", "counter", "Failed adapter attempts by operation"),
    _Family("runs_finished_total", "counter", "Runs that reached a terminal phase"),
    _Family("candidate_weight_percent", "gauge", "Traffic share confirmed for the candidate"),
    _Family("step_index", "gauge", "Current step index of the run"),
)


def _escape_label(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class RolloutMetricsExporter:
    """
    Prometheus metrics exporter fed by the rollout controller.

    Example:
        >>> exporter = RolloutMetricsExporter(namespace="model_rollout")
        >>> exporter.record_verdict("model-v2", "fail", "error_rate_delta")
        >>> exporter.export("json")
    """

    TERMINAL_PHASES = ("completed", "rolled_back")

    def __init__(
        self,
        namespace: str = "model_rollout",
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Initialize metrics exporter.

        Args:
            namespace: Prometheus metric namespace prefix
            labels: Additional labels to add to all metrics
        """
        self.namespace = namespace
        self.base_labels = labels or {}
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}

    def record_transition(
        self, run_id: str, candidate: str, from_phase: str, to_phase: str
    ) -> None:
        """Count a phase transition of a run."""
        self.increment_counter(
            "transitions_total",
            labels={"candidate": candidate, "from_phase": from_phase, "to_phase": to_phase},
        )
        if to_phase in self.TERMINAL_PHASES:
            self.increment_counter(
                "runs_finished_total", labels={"candidate": candidate, "outcome": to_phase}
            )

    def record_verdict(self, candidate: str, outcome: str, reason: str) -> None:
        """Count a verdict."""
        self.increment_counter(
            "verdicts_total",
            labels={"candidate": candidate, "outcome": outcome, "reason": reason},
        )

    def record_adapter_failure(self, operation: str) -> None:
        """Count a failed adapter attempt."""
        self.increment_counter("adapter_failures_total", labels={"operation": operation})

    def record_weight(self, run_id: str, candidate: str, candidate_pct: int) -> None:
        """Record the candidate weight the router confirmed."""
        self.set_gauge(
            "candidate_weight_percent",
            float(candidate_pct),
            labels={"run_id": run_id, "candidate": candidate},
        )

    def record_step(self, run_id: str, candidate: str, step_index: int) -> None:
        """Record the current step index of a run."""
        self.set_gauge(
            "step_index", float(step_index), labels={"run_id": run_id, "candidate": candidate}
        )

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """
        Set a gauge metric.

        Args:
            name: Metric name
            value: Metric value
            labels: Additional labels
        """
        label_str = json.dumps(labels or {}, sort_keys=True)
        self._gauges[f"{name}:{label_str}"] = value

    def increment_counter(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name
            value: Increment value
            labels: Additional labels
        """
        label_str = json.dumps(labels or {}, sort_keys=True)
        key = f"{name}:{label_str}"
        self._counters[key] = self._counters.get(key, 0) + value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a counter (0 if never incremented)."""
        return self._counters.get(f"{name}:{json.dumps(labels or {}, sort_keys=True)}", 0.0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of a gauge, if set."""
        return self._gauges.get(f"{name}:{json.dumps(labels or {}, sort_keys=True)}")

    def export(self, format: str = "prometheus") -> str:
        """
        Export all metrics in specified format.

        Args:
            format: Export format ("prometheus" or "json")

        Returns:
            Formatted metrics string
        """
        if format == "json":
            return self._export_json()
        return self._export_prometheus()

    def _samples(self, family: str) -> list[_ExportSample]:
        samples = []
        for store in (self._counters, self._gauges):
            for key, value in store.items():
                name, label_str = key.split(":", 1)
                if name == family:
                    samples.append(_ExportSample(name=name, value=value, labels=json.loads(label_str)))
        return samples

    def _export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        def format_metric(sample: _ExportSample) -> str:
            name = f"{self.namespace}_{sample.name}"
            labels = {**self.base_labels, **sample.labels}
            if labels:
                label_str = ",".join(
                    f'{k}="{_escape_label(v)}"' for k, v in sorted(labels.items())
                )
                return f"{name}{{{label_str}}} {sample.value}"
            return f"{name} {sample.value}"

        for family in FAMILIES:
            samples = self._samples(family.name)
            if not samples:
                continue
            if lines:
                lines.append("")
            lines.append(f"# HELP {self.namespace}_{family.name} {family.help}")
            lines.append(f"# TYPE {self.namespace}_{family.name} {family.kind}")
            lines.extend(format_metric(sample) for sample in samples)

        return "\n".join(lines) + "\n" if lines else ""

    def _export_json(self) -> str:
        """Export metrics in JSON format."""
        data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
        }
        return json.dumps(data, indent=2)

    def forget_run(self, run_id: str) -> None:
        """Drop the per-run gauges of a finished run."""
        for key in list(self._gauges):
            if json.loads(key.split(":", 1)[1]).get("run_id") == run_id:
                del self._gauges[key]

    def reset(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        self._gauges.clear()
