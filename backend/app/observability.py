from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("followup_engine")


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
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._webhook_outcomes: dict[tuple[str, str], int] = {}
        self._sms_outcomes: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_webhook(self, *, kind: str, outcome: str) -> None:
        with self._lock:
            key = (kind, outcome)
            self._webhook_outcomes[key] = self._webhook_outcomes.get(key, 0) + 1

    def record_sms(self, *, outcome: str) -> None:
        with self._lock:
            self._sms_outcomes[outcome] = self._sms_outcomes.get(outcome, 0) + 1

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
            "# HELP followup_engine_requests_total Total HTTP requests",
            "# TYPE followup_engine_requests_total counter",
            f"followup_engine_requests_total {snap.requests_total}",
            "# HELP followup_engine_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE followup_engine_requests_5xx_total counter",
            f"followup_engine_requests_5xx_total {snap.requests_5xx}",
            "# HELP followup_engine_request_avg_latency_ms Average request latency ms",
            "# TYPE followup_engine_request_avg_latency_ms gauge",
            f"followup_engine_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP followup_engine_route_requests_total HTTP requests by route and status",
            "# TYPE followup_engine_route_requests_total counter",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'followup_engine_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
            lines.append("# HELP followup_engine_webhooks_total Webhook deliveries by outcome")
            lines.append("# TYPE followup_engine_webhooks_total counter")
            for (kind, outcome), count in sorted(self._webhook_outcomes.items()):
                lines.append(
                    f'followup_engine_webhooks_total{{kind="{kind}",outcome="{outcome}"}} {count}'
                )
            lines.append("# HELP followup_engine_sms_total SMS dispatch attempts by outcome")
            lines.append("# TYPE followup_engine_sms_total counter")
            for outcome, count in sorted(self._sms_outcomes.items()):
                lines.append(f'followup_engine_sms_total{{outcome="{outcome}"}} {count}')
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _route_label(request: Request) -> str:
    # Webhook paths embed routing keys; label by template to keep cardinality bounded.
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or request.url.path


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
        route = _route_label(request)
        metrics.record(route=route, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s route=%s status=%s latency_ms=%.2f",
            request.method,
            route,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        route = _route_label(request)
        metrics.record(route=route, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s route=%s latency_ms=%.2f",
            request.method,
            route,
            latency_ms,
        )
        raise
