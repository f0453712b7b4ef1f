"""
Tests for the HTTP metrics gateway and traffic router.

Uses a mocked requests.Session; no network access.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from model_rollout.adapters.http import HttpMetricsGateway, HttpTrafficRouter
from model_rollout.config.schema import GatewaySettings, MetricName
from model_rollout.rollout.errors import AdapterError
from model_rollout.rollout.models import TrafficSplit

SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _session(payload=None, error=None):
    session = MagicMock()
    session.headers = {}
    response = MagicMock()
    response.json.return_value = payload
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response
    return session, response


# =============================================================================
# Metrics Gateway
# =============================================================================


class TestHttpMetricsGateway:
    """Tests for HttpMetricsGateway."""

    @pytest.mark.asyncio
    async def test_fetch_samples(self):
        """Samples are requested with the version, segment and window start."""
        session, _ = _session(
            {
                "samples": [
                    {
                        "timestamp": "2024-01-01T00:00:30+00:00",
                        "metric": "error_rate",
                        "baseline_value": 0.01,
                        "candidate_value": 0.02,
                    }
                ]
            }
        )
        gateway = HttpMetricsGateway("http://gw/", api_key="secret", session=session)
        samples = await gateway.fetch_samples("model-v2", "eu", SINCE)

        assert len(samples) == 1
        assert samples[0].metric == MetricName.ERROR_RATE
        assert samples[0].candidate_value == 0.02
        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "http://gw/samples"
        assert kwargs["params"] == {
            "version_id": "model-v2",
            "segment": "eu",
            "since": SINCE.isoformat(),
        }
        assert session.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_naive_timestamps_are_utc(self):
        """Timestamps without an offset are read as UTC."""
        session, _ = _session(
            {
                "samples": [
                    {
                        "timestamp": "2024-01-01T00:00:30",
                        "metric": "latency_p99",
                        "baseline_value": 100,
                        "candidate_value": 110,
                    }
                ]
            }
        )
        gateway = HttpMetricsGateway("http://gw", session=session)
        samples = await gateway.fetch_samples("model-v2", "default", SINCE)
        assert samples[0].timestamp.tzinfo == timezone.utc

    @pytest.mark.asyncio
    async def test_empty_payload(self):
        """A payload without samples yields no samples."""
        session, _ = _session({})
        gateway = HttpMetricsGateway("http://gw", session=session)
        assert await gateway.fetch_samples("model-v2", "default", SINCE) == []

    @pytest.mark.asyncio
    async def test_malformed_sample(self):
        """Unknown metrics are adapter errors."""
        session, _ = _session(
            {"samples": [{"timestamp": "2024-01-01T00:00:30", "metric": "accuracy"}]}
        )
        gateway = HttpMetricsGateway("http://gw", session=session)
        with pytest.raises(AdapterError, match="Malformed sample"):
            await gateway.fetch_samples("model-v2", "default", SINCE)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Connection failures are adapter errors."""
        session, _ = _session(error=requests.exceptions.ConnectionError("refused"))
        gateway = HttpMetricsGateway("http://gw", session=session)
        with pytest.raises(AdapterError) as exc_info:
            await gateway.fetch_samples("model-v2", "default", SINCE)
        assert exc_info.value.adapter == "metrics_gateway"

    @pytest.mark.asyncio
    async def test_http_error(self):
        """HTTP errors include the status code."""
        session, response = _session({})
        response.status_code = 503
        response.text = "unavailable"
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            "503 Server Error", response=response
        )
        gateway = HttpMetricsGateway("http://gw", session=session)
        with pytest.raises(AdapterError, match="503: unavailable"):
            await gateway.fetch_samples("model-v2", "default", SINCE)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Undecodable bodies are adapter errors."""
        session, response = _session()
        response.json.side_effect = ValueError("Expecting value")
        gateway = HttpMetricsGateway("http://gw", session=session)
        with pytest.raises(AdapterError, match="invalid JSON"):
            await gateway.fetch_samples("model-v2", "default", SINCE)

    @pytest.mark.asyncio
    async def test_close(self):
        """close releases the session."""
        session, _ = _session({})
        gateway = HttpMetricsGateway("http://gw", session=session)
        await gateway.close()
        session.close.assert_called_once()

    def test_from_settings(self):
        """Settings configure URL, key and SSL verification."""
        gateway = HttpMetricsGateway.from_settings(
            GatewaySettings(url="https://gw.example.com/", api_key="k", verify_ssl=False),
            timeout=2.0,
        )
        assert gateway.client.base_url == "https://gw.example.com"
        assert gateway.client.verify_ssl is False
        assert gateway.client.timeout == 2.0


# =============================================================================
# Traffic Router
# =============================================================================


class TestHttpTrafficRouter:
    """Tests for HttpTrafficRouter."""

    @pytest.mark.asyncio
    async def test_set_weights(self):
        """Splits are PUT and the acknowledgement is parsed."""
        session, _ = _session(
            {"baseline_pct": 75, "candidate_pct": 25, "applied_at": "2024-01-01T00:00:05+00:00"}
        )
        router = HttpTrafficRouter("http://router", session=session)
        split = TrafficSplit("model-v1", "model-v2", 75, 25)

        ack = await router.set_weights(split)

        assert ack.matches(split)
        assert ack.applied_at == datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "PUT"
        assert kwargs["url"] == "http://router/weights"
        assert kwargs["json"] == split.to_dict()

    @pytest.mark.asyncio
    async def test_mismatched_ack(self):
        """Acknowledgements are returned as reported."""
        session, _ = _session({"baseline_pct": 100, "candidate_pct": 0})
        router = HttpTrafficRouter("http://router", session=session)
        ack = await router.set_weights(TrafficSplit("model-v1", "model-v2", 50, 50))
        assert not ack.matches(TrafficSplit("model-v1", "model-v2", 50, 50))

    @pytest.mark.asyncio
    async def test_malformed_ack(self):
        """Responses without weights are adapter errors."""
        session, _ = _session({"status": "ok"})
        router = HttpTrafficRouter("http://router", session=session)
        with pytest.raises(AdapterError, match="Malformed router response") as exc_info:
            await router.set_weights(TrafficSplit("model-v1", "model-v2", 50, 50))
        assert exc_info.value.adapter == "traffic_router"

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Request timeouts are adapter errors."""
        session, _ = _session(error=requests.exceptions.Timeout("read timed out"))
        router = HttpTrafficRouter("http://router", session=session)
        with pytest.raises(AdapterError, match="timed out"):
            await router.set_weights(TrafficSplit("model-v1", "model-v2", 50, 50))
