from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

dispatch_attempts_total = Counter(
    "dispatch_attempts_total",
    "Upstream call attempts made by the dispatcher",
    labelnames=["strategy", "outcome"],
)

dispatch_fallbacks_total = Counter(
    "dispatch_fallbacks_total",
    "Times the dispatcher advanced past a failed strategy or model candidate",
    labelnames=["kind", "reason"],
)

dispatch_exhausted_total = Counter(
    "dispatch_exhausted_total",
    "Dispatches that failed after every candidate model",
    labelnames=["tier"],
)

dispatch_latency_seconds = Histogram(
    "dispatch_latency_seconds",
    "End-to-end dispatch latency per capability",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 240],
    labelnames=["capability"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
