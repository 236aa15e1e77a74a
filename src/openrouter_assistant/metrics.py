from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "assistant_server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "assistant_server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "assistant_server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

completion_attempts_total = Counter(
    "assistant_completion_attempts_total",
    "Upstream completion attempts by model and outcome",
    labelnames=["model", "outcome"],
)

completion_latency_seconds = Histogram(
    "assistant_completion_latency_seconds",
    "Latency of a single upstream completion attempt",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["model"],
)

fallbacks_total = Counter(
    "assistant_fallbacks_total",
    "Requests answered by a model other than the first candidate",
    labelnames=["reason"],
)

quota_blocks_total = Counter(
    "assistant_quota_blocks_total",
    "Models blocked by the quota guard",
    labelnames=["model"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
