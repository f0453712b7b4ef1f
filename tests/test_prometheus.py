"""
Tests for the Prometheus metrics exporter.
"""

import json

import pytest

from model_rollout.monitoring import RolloutMetricsExporter


@pytest.fixture
def exporter():
    """Create exporter."""
    return RolloutMetricsExporter()


class TestRolloutMetricsExporter:
    """Tests for RolloutMetricsExporter."""

    def test_empty_export(self, exporter):
        """Nothing recorded exports nothing."""
        assert exporter.export() == ""

    def test_transition_counter(self, exporter):
        """Transitions are counted per phase pair."""
        exporter.record_transition("run-1", "model-v2", "advancing", "holding")
        exporter.record_transition("run-1", "model-v2", "advancing", "holding")
        labels = {"candidate": "model-v2", "from_phase": "advancing", "to_phase": "holding"}
        assert exporter.get_counter("transitions_total", labels) == 2
        assert exporter.get_counter("runs_finished_total", {"candidate": "model-v2", "outcome": "holding"}) == 0

    def test_terminal_transition_finishes_run(self, exporter):
        """Terminal transitions count finished runs."""
        exporter.record_transition("run-1", "model-v2", "rolling_back", "rolled_back")
        labels = {"candidate": "model-v2", "outcome": "rolled_back"}
        assert exporter.get_counter("runs_finished_total", labels) == 1

    def test_gauges(self, exporter):
        """Weights and steps are gauges holding the last value."""
        exporter.record_weight("run-1", "model-v2", 10)
        exporter.record_weight("run-1", "model-v2", 50)
        exporter.record_step("run-1", "model-v2", 1)
        labels = {"run_id": "run-1", "candidate": "model-v2"}
        assert exporter.get_gauge("candidate_weight_percent", labels) == 50.0
        assert exporter.get_gauge("step_index", labels) == 1.0
        assert exporter.get_gauge("step_index", {"run_id": "run-2"}) is None

    def test_prometheus_format(self, exporter):
        """Families carry HELP and TYPE lines."""
        exporter.record_verdict("model-v2", "fail", "error_rate_delta")
        exporter.record_adapter_failure("set_weights")
        output = exporter.export("prometheus")
        assert "# TYPE model_rollout_verdicts_total counter" in output
        assert "# HELP model_rollout_adapter_failures_total" in output
        assert (
            'model_rollout_verdicts_total{candidate="model-v2",outcome="fail",'
            'reason="error_rate_delta"} 1.0'
        ) in output
        assert 'model_rollout_adapter_failures_total{operation="set_weights"} 1.0' in output
        assert output.endswith("\n")

    def test_base_labels_and_namespace(self):
        """Base labels and namespace apply to every sample."""
        exporter = RolloutMetricsExporter(namespace="canary", labels={"cluster": "eu-1"})
        exporter.record_adapter_failure("fetch_samples")
        output = exporter.export()
        assert 'canary_adapter_failures_total{cluster="eu-1",operation="fetch_samples"} 1.0' in output

    def test_label_values_escaped(self, exporter):
        """Quotes, backslashes and newlines in label values are escaped."""
        exporter.record_weight('run-"1"', "model\\v2\n", 10)
        output = exporter.export()
        assert (
            'model_rollout_candidate_weight_percent{candidate="model\\\\v2\\n",'
            'run_id="run-\\"1\\""} 10.0'
        ) in output

    def test_forget_run(self, exporter):
        """Forgetting a run drops its gauges and keeps counters and other runs."""
        exporter.record_weight("run-1", "model-v2", 100)
        exporter.record_step("run-1", "model-v2", 2)
        exporter.record_weight("run-2", "model-v3", 10)
        exporter.record_transition("run-1", "model-v2", "holding", "completed")

        exporter.forget_run("run-1")

        labels = {"run_id": "run-1", "candidate": "model-v2"}
        assert exporter.get_gauge("candidate_weight_percent", labels) is None
        assert exporter.get_gauge("step_index", labels) is None
        assert exporter.get_gauge(
            "candidate_weight_percent", {"run_id": "run-2", "candidate": "model-v3"}
        ) == 10.0
        assert exporter.get_counter(
            "runs_finished_total", {"candidate": "model-v2", "outcome": "completed"}
        ) == 1

    def test_json_export(self, exporter):
        """JSON export lists counters and gauges."""
        exporter.record_weight("run-1", "model-v2", 25)
        data = json.loads(exporter.export("json"))
        assert "timestamp" in data
        assert data["counters"] == {}
        assert list(data["gauges"].values()) == [25.0]

    def test_reset(self, exporter):
        """reset clears everything."""
        exporter.record_adapter_failure("set_weights")
        exporter.reset()
        assert exporter.export() == ""
