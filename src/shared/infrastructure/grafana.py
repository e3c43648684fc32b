"""
Grafana OTLP Metrics Exporter
==============================

Pushes orchestration tick metrics to Grafana Cloud via OTLP.

Metrics exported (gauges, one data point per phase where applicable):
- assignment_tick_duration_ms: wall time of a tick
- assignment_phase_selected: records selected by a phase
- assignment_phase_changed: records a phase changed
- assignment_phase_stale: conditional writes that lost a race
- assignment_phase_skipped: records skipped after a store error
- assignment_phase_failed: 1 when the phase hit its failure boundary
"""

import base64
import time
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_PHASE_COUNTERS = ("selected", "changed", "stale", "skipped")


def _attributes(values: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"key": key, "value": {"stringValue": str(value)}}
        for key, value in values.items()
    ]


def _gauge(name: str, unit: str, description: str, points: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "name": name,
        "unit": unit,
        "description": description,
        "gauge": {"dataPoints": points},
    }


class GrafanaOTLPExporter:
    """
    Export orchestrator metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-2.grafana.net)
            api_key: Grafana API key
            instance_id: Instance ID for authentication
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
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

    def build_tick_payload(self, tick: Dict[str, Any]) -> Dict[str, Any]:
        """
        OTLP payload for one tick report (as produced by TickReport.to_dict()).
        """
        timestamp_ns = int(time.time() * 1_000_000_000)
        base = {"service": settings.app_name, "tick_id": tick["tick_id"]}

        metrics = [
            _gauge(
                "assignment_tick_duration_ms",
                "ms",
                "Orchestration tick wall time",
                [{
                    "asDouble": float(tick["duration_ms"]),
                    "timeUnixNano": timestamp_ns,
                    "attributes": _attributes({**base, "aborted": tick["aborted"]}),
                }],
            )
        ]

        for counter in _PHASE_COUNTERS:
            metrics.append(_gauge(
                f"assignment_phase_{counter}",
                "1",
                f"Records {counter} per phase",
                [
                    {
                        "asInt": phase[counter],
                        "timeUnixNano": timestamp_ns,
                        "attributes": _attributes({**base, "phase": phase["name"]}),
                    }
                    for phase in tick["phases"]
                ],
            ))

        metrics.append(_gauge(
            "assignment_phase_failed",
            "1",
            "1 when the phase failed",
            [
                {
                    "asInt": int(phase["failed"]),
                    "timeUnixNano": timestamp_ns,
                    "attributes": _attributes({**base, "phase": phase["name"]}),
                }
                for phase in tick["phases"]
            ],
        ))

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
                    "scopeMetrics": [{"metrics": metrics}],
                }
            ]
        }

    async def export_tick_metrics(self, tick: Dict[str, Any]) -> bool:
        """
        Export tick metrics to Grafana.

        Args:
            tick: TickReport.to_dict() output

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            logger.debug("Grafana exporter not enabled - skipping metrics export")
            return False

        payload = self.build_tick_payload(tick)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                "Error exporting metrics to Grafana",
                extra={"error": str(e), "tick_id": tick["tick_id"]}
            )
            return False

        if response.status_code in (200, 202):
            logger.debug(
                "Tick metrics exported to Grafana",
                extra={"tick_id": tick["tick_id"], "status_code": response.status_code}
            )
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


def get_grafana_exporter() -> Optional[GrafanaOTLPExporter]:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter


def init_grafana_exporter(
    host: str,
    api_key: str,
    instance_id: str
) -> GrafanaOTLPExporter:
    """Initialize Grafana exporter with credentials."""
    global _grafana_exporter
    _grafana_exporter = GrafanaOTLPExporter(
        host=host,
        api_key=api_key,
        instance_id=instance_id
    )
    return _grafana_exporter
