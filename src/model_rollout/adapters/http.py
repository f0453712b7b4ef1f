"""
HTTP Adapters

Talks to a metrics gateway and a traffic router over JSON/HTTP:

- GET  {gateway}/samples?version_id=...&segment=...&since=...
  -> {"samples": [{"timestamp", "metric", "baseline_value", "candidate_value"}]}
- PUT  {router}/weights  {"baseline_version", "candidate_version",
  "baseline_pct", "candidate_pct"}
  -> {"baseline_pct", "candidate_pct", "applied_at"}

Requests are made with a blocking requests.Session inside a worker thread so
the event loop keeps serving other runs.

Usage:
    from model_rollout.adapters.http import HttpMetricsGateway, HttpTrafficRouter

    gateway = HttpMetricsGateway(url="https://metrics.example.com", api_key="token")
    samples = await gateway.fetch_samples("model-v2", "default", since)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import requests

from model_rollout.adapters.base import MetricsGateway, RouterAck, TrafficRouter
from model_rollout.config.schema import GatewaySettings, RouterSettings
from model_rollout.rollout.errors import AdapterError
from model_rollout.rollout.models import MetricSample, TrafficSplit

logger = logging.getLogger(__name__)


class _JsonClient:
    """Thin requests.Session wrapper shared by both adapters."""

    def __init__(
        self,
        url: str,
        adapter: str,
        api_key: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.base_url = url.rstrip("/")
        self.adapter = adapter
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        """
        Make a request and decode the JSON body.

        Raises:
            AdapterError: On connection errors, HTTP errors or invalid JSON
        """
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=data,
                params=params,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            detail = ""
            if getattr(e, "response", None) is not None:
                detail = f" ({e.response.status_code}: {e.response.text[:200]})"
            raise AdapterError(f"{method} {url} failed: {e}{detail}", adapter=self.adapter) from e
        except ValueError as e:
            raise AdapterError(f"{method} {url} returned invalid JSON: {e}", adapter=self.adapter) from e

    def close(self) -> None:
        self.session.close()


class HttpMetricsGateway(MetricsGateway):
    """Metrics gateway reached over HTTP."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        """
        Initialize HTTP metrics gateway.

        Args:
            url: Gateway base URL
            api_key: Optional bearer token
            verify_ssl: Verify SSL certificates
            timeout: Request timeout in seconds
            session: Optional pre-configured session
        """
        self.client = _JsonClient(url, self.name, api_key, verify_ssl, timeout, session)

    @classmethod
    def from_settings(cls, settings: GatewaySettings, timeout: float = 5.0) -> "HttpMetricsGateway":
        return cls(settings.url, settings.api_key, settings.verify_ssl, timeout)

    async def fetch_samples(
        self, version_id: str, segment: str, since: datetime
    ) -> list[MetricSample]:
        params = {"version_id": version_id, "segment": segment, "since": since.isoformat()}
        payload = await asyncio.to_thread(self.client.request, "GET", "/samples", None, params)
        return self._parse_samples(payload)

    def _parse_samples(self, payload: dict[str, Any]) -> list[MetricSample]:
        samples = []
        for raw in payload.get("samples", []):
            try:
                sample = MetricSample.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise AdapterError(f"Malformed sample {raw!r}: {e}", adapter=self.name) from e
            if sample.timestamp.tzinfo is None:
                sample = MetricSample(
                    timestamp=sample.timestamp.replace(tzinfo=timezone.utc),
                    metric=sample.metric,
                    baseline_value=sample.baseline_value,
                    candidate_value=sample.candidate_value,
                )
            samples.append(sample)
        logger.debug(f"Fetched {len(samples)} samples from {self.client.base_url}")
        return samples

    async def close(self) -> None:
        self.client.close()


class HttpTrafficRouter(TrafficRouter):
    """Traffic router reached over HTTP."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.client = _JsonClient(url, self.name, api_key, verify_ssl, timeout, session)

    @classmethod
    def from_settings(cls, settings: RouterSettings, timeout: float = 5.0) -> "HttpTrafficRouter":
        return cls(settings.url, settings.api_key, settings.verify_ssl, timeout)

    async def set_weights(self, split: TrafficSplit) -> RouterAck:
        payload = await asyncio.to_thread(
            self.client.request, "PUT", "/weights", split.to_dict(), None
        )
        try:
            applied_at = payload.get("applied_at")
            return RouterAck(
                baseline_pct=int(payload["baseline_pct"]),
                candidate_pct=int(payload["candidate_pct"]),
                applied_at=(
                    datetime.fromisoformat(applied_at)
                    if applied_at
                    else datetime.now(timezone.utc)
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AdapterError(f"Malformed router response {payload!r}: {e}", adapter=self.name) from e

    async def close(self) -> None:
        self.client.close()
