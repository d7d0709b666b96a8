from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("pipeline_crm")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    transitions: dict[str, int]
    sub_status_updates: dict[str, int]


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._transitions: dict[str, int] = {}
        self._sub_status_updates: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_transition(self, outcome: str) -> None:
        with self._lock:
            self._transitions[outcome] = self._transitions.get(outcome, 0) + 1

    def record_sub_status_update(self, outcome: str) -> None:
        with self._lock:
            self._sub_status_updates[outcome] = self._sub_status_updates.get(outcome, 0) + 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                transitions=dict(self._transitions),
                sub_status_updates=dict(self._sub_status_updates),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP pipeline_crm_requests_total Total HTTP requests",
            "# TYPE pipeline_crm_requests_total counter",
            f"pipeline_crm_requests_total {snap.requests_total}",
            "# HELP pipeline_crm_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE pipeline_crm_requests_5xx_total counter",
            f"pipeline_crm_requests_5xx_total {snap.requests_5xx}",
            "# HELP pipeline_crm_request_avg_latency_ms Average request latency ms",
            "# TYPE pipeline_crm_request_avg_latency_ms gauge",
            f"pipeline_crm_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP pipeline_crm_stage_transitions_total Stage transition attempts by outcome",
            "# TYPE pipeline_crm_stage_transitions_total counter",
        ]
        for outcome, count in sorted(snap.transitions.items()):
            lines.append(f'pipeline_crm_stage_transitions_total{{outcome="{outcome}"}} {count}')
        lines.extend(
            [
                "# HELP pipeline_crm_sub_status_updates_total Sub-status update attempts by outcome",
                "# TYPE pipeline_crm_sub_status_updates_total counter",
            ]
        )
        for outcome, count in sorted(snap.sub_status_updates.items()):
            lines.append(f'pipeline_crm_sub_status_updates_total{{outcome="{outcome}"}} {count}')
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'pipeline_crm_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
