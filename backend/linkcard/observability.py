from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("linkcard")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, str, int], int] = {}
        self._events_by_type: dict[str, int] = {}
        self._deliveries_by_state: dict[str, int] = {}

    def record(self, *, method: str, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (method, route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_event(self, event_type: str) -> None:
        with self._lock:
            self._events_by_type[event_type] = self._events_by_type.get(event_type, 0) + 1

    def record_delivery(self, state: str) -> None:
        with self._lock:
            self._deliveries_by_state[state] = self._deliveries_by_state.get(state, 0) + 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP linkcard_requests_total Total HTTP requests",
            "# TYPE linkcard_requests_total counter",
            f"linkcard_requests_total {snap.requests_total}",
            "# HELP linkcard_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE linkcard_requests_5xx_total counter",
            f"linkcard_requests_5xx_total {snap.requests_5xx}",
            "# HELP linkcard_request_avg_latency_ms Average request latency ms",
            "# TYPE linkcard_request_avg_latency_ms gauge",
            f"linkcard_request_avg_latency_ms {avg_latency:.2f}",
        ]
        with self._lock:
            lines.append("# TYPE linkcard_route_requests_total counter")
            for (method, route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    "linkcard_route_requests_total"
                    f'{{method="{method}",route="{route}",status="{status_code}"}} {count}'
                )
            lines.append("# HELP linkcard_events_recorded_total Interaction events stored")
            lines.append("# TYPE linkcard_events_recorded_total counter")
            for event_type, count in sorted(self._events_by_type.items()):
                lines.append(f'linkcard_events_recorded_total{{type="{event_type}"}} {count}')
            lines.append("# HELP linkcard_webhook_deliveries_total Webhook delivery attempts")
            lines.append("# TYPE linkcard_webhook_deliveries_total counter")
            for state, count in sorted(self._deliveries_by_state.items()):
                lines.append(f'linkcard_webhook_deliveries_total{{state="{state}"}} {count}')
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_template(request: Request) -> str:
    # Label by route template so per-username paths don't explode the series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = _route_template(request)
        metrics.record(
            method=request.method,
            route=route,
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(
            method=request.method,
            route=_route_template(request),
            status_code=500,
            latency_ms=latency_ms,
        )
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            latency_ms,
        )
        raise
