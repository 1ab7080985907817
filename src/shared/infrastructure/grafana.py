"""
Grafana OTLP Metrics Exporter
==============================

Pushes SLA sweep metrics to Grafana Cloud via OTLP.

Metrics exported (gauges, one data point per sweep):
- sla_clocks_scanned: Running clocks visited by the sweep
- sla_clocks_flushed: Clocks flushed and persisted
- sla_clocks_skipped: Clocks skipped (lock timeout, conflict, missing calendar, failure)
- sla_alerts_raised: At-risk and breach alerts created
- sla_sweep_latency_ms: Wall time of the sweep in milliseconds
"""

import base64
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import settings
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class GrafanaOTLPExporter:
    """
    Export SLA metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-0.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            http_client: Client to reuse; a short-lived one is opened per export otherwise
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._http_client = http_client
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info(
                "Grafana OTLP exporter not configured - metrics will not be exported",
                extra={
                    "host_configured": bool(self._host),
                    "api_key_configured": bool(self._api_key),
                    "instance_id_configured": bool(self._instance_id)
                }
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    @staticmethod
    def build_payload(
        gauges: List[Tuple[str, str, str, float]],
        attributes: Optional[Dict[str, Any]] = None,
        timestamp_ns: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Build an OTLP metrics payload of gauges.

        Args:
            gauges: (name, unit, description, value) per metric
            attributes: Data point attributes shared by every gauge
        """
        timestamp_ns = timestamp_ns or int(time.time() * 1_000_000_000)

        metric_attributes = [{"key": "service", "value": {"stringValue": settings.app_name}}]
        for key, value in (attributes or {}).items():
            metric_attributes.append({"key": key, "value": {"stringValue": str(value)}})

        metrics = []
        for name, unit, description, value in gauges:
            point: Dict[str, Any] = {"timeUnixNano": timestamp_ns, "attributes": metric_attributes}
            if isinstance(value, int):
                point["asInt"] = value
            else:
                point["asDouble"] = float(value)
            metrics.append({
                "name": name,
                "unit": unit,
                "description": description,
                "gauge": {"dataPoints": [point]}
            })

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }

    async def export_sweep_metrics(self, report: Any) -> bool:
        """
        Export the outcome of one SLA sweep.

        Args:
            report: SweepReport returned by the clock engine

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            return False

        payload = self.build_payload(
            [
                ("sla_clocks_scanned", "1", "Running clocks visited by the sweep", report.scanned),
                ("sla_clocks_flushed", "1", "Clocks flushed and persisted", report.flushed),
                ("sla_clocks_skipped", "1", "Clocks skipped during the sweep", report.skipped),
                ("sla_alerts_raised", "1", "At-risk and breach alerts created", report.alerts_created),
                ("sla_sweep_latency_ms", "ms", "SLA sweep wall time", int(report.duration_ms)),
            ],
            attributes={"shard_index": settings.sla_shard_index}
        )
        return await self._send(payload)

    async def _send(self, payload: Dict[str, Any]) -> bool:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                "Error exporting metrics to Grafana",
                extra={"error": str(e)}
            )
            return False

        if response.status_code in (200, 202):
            logger.debug("SLA metrics exported to Grafana")
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter
