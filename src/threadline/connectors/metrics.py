"""Prometheus metrics instrumentation for channel adapters.

Metrics exported:
- adapter_inbound_events_total: Counter of inbound events by kind and result
- adapter_outbound_sends_total: Counter of outbound send attempts by status
- adapter_send_latency_seconds: Histogram of logical message send latency
- adapter_outbound_queue_depth: Gauge of items waiting in the outbound queue
- adapter_catchup_recovered_total: Counter of messages recovered by catch-up
- adapter_attachment_downloads_total: Counter of attachment downloads by result
- adapter_attachment_skipped_oversized_total: Counter of attachments over the size cap
- adapter_source_api_calls_total: Counter of platform API calls
- adapter_errors_total: Counter of errors by type

All metrics include standard labels:
- connector_type: slack, ...
- endpoint_identity: workspace/bot identity
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

inbound_events_total = Counter(
    "adapter_inbound_events_total",
    "Total number of inbound platform events by kind and result",
    labelnames=["connector_type", "endpoint_identity", "kind", "result"],
)

outbound_sends_total = Counter(
    "adapter_outbound_sends_total",
    "Total number of outbound logical message sends by status",
    labelnames=["connector_type", "endpoint_identity", "status"],
)

send_latency_seconds = Histogram(
    "adapter_send_latency_seconds",
    "Latency of logical outbound message sends (all chunks) in seconds",
    labelnames=["connector_type", "endpoint_identity", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

outbound_queue_depth = Gauge(
    "adapter_outbound_queue_depth",
    "Number of outbound items waiting for delivery",
    labelnames=["connector_type", "endpoint_identity"],
)

catchup_recovered_total = Counter(
    "adapter_catchup_recovered_total",
    "Total number of messages recovered by catch-up reconciliation",
    labelnames=["connector_type", "endpoint_identity"],
)

attachment_downloads_total = Counter(
    "adapter_attachment_downloads_total",
    "Total number of attachment downloads by result",
    labelnames=["connector_type", "endpoint_identity", "result"],
)

attachment_skipped_oversized_total = Counter(
    "adapter_attachment_skipped_oversized_total",
    "Total number of attachments skipped because they exceed the size cap",
    labelnames=["connector_type", "endpoint_identity"],
)

source_api_calls_total = Counter(
    "adapter_source_api_calls_total",
    "Total number of platform API calls",
    labelnames=["connector_type", "endpoint_identity", "api_method", "status"],
)

errors_total = Counter(
    "adapter_errors_total",
    "Total number of errors by type",
    labelnames=["connector_type", "endpoint_identity", "error_type", "operation"],
)


class AdapterMetrics:
    """Metrics collector for a specific adapter instance.

    Provides convenient methods to record metrics with consistent labels.
    """

    def __init__(self, connector_type: str, endpoint_identity: str) -> None:
        self._connector_type = connector_type
        self._endpoint_identity = endpoint_identity

    @property
    def endpoint_identity(self) -> str:
        return self._endpoint_identity

    def set_endpoint_identity(self, endpoint_identity: str) -> None:
        """Rebind the identity label once the bot user id is known."""
        self._endpoint_identity = endpoint_identity

    def _labels(self) -> dict[str, str]:
        return {
            "connector_type": self._connector_type,
            "endpoint_identity": self._endpoint_identity,
        }

    def record_inbound_event(self, kind: str, result: str) -> None:
        """Record an inbound event.

        Args:
            kind: Event kind ("message", "edit", "delete", "reaction")
            result: Outcome ("delivered", "dropped", "unregistered", "error")
        """
        inbound_events_total.labels(**self._labels(), kind=kind, result=result).inc()

    def record_outbound_send(self, status: str, latency: float | None = None) -> None:
        """Record an outbound logical message send.

        Args:
            status: "sent", "queued" or "failed"
            latency: Optional wall time for the whole chunk sequence
        """
        outbound_sends_total.labels(**self._labels(), status=status).inc()
        if latency is not None:
            send_latency_seconds.labels(**self._labels(), status=status).observe(latency)

    def set_queue_depth(self, depth: int) -> None:
        outbound_queue_depth.labels(**self._labels()).set(depth)

    def record_catchup_recovered(self, count: int) -> None:
        if count:
            catchup_recovered_total.labels(**self._labels()).inc(count)

    def record_attachment_download(self, result: str) -> None:
        """Record an attachment download attempt ("success", "error", "no_url")."""
        attachment_downloads_total.labels(**self._labels(), result=result).inc()

    def record_attachment_skipped_oversized(self) -> None:
        attachment_skipped_oversized_total.labels(**self._labels()).inc()

    def record_source_api_call(self, api_method: str, status: str) -> None:
        """Record a platform API call.

        Args:
            api_method: API method name (e.g., "conversations.history")
            status: Call status ("success", "error", "rate_limited")
        """
        source_api_calls_total.labels(**self._labels(), api_method=api_method, status=status).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record an error occurrence.

        Args:
            error_type: Type of error (e.g., "slack_api_error", "timeout")
            operation: Operation that failed (e.g., "send", "catch_up")
        """
        errors_total.labels(**self._labels(), error_type=error_type, operation=operation).inc()


def get_error_type(exc: Exception) -> str:
    """Extract error type from exception.

    Args:
        exc: Exception instance

    Returns:
        Error type string for metrics labeling
    """
    exc_type = type(exc).__name__

    if exc_type == "SlackApiError":
        return "slack_api_error"
    if "HTTPStatus" in exc_type or "HTTP" in exc_type:
        return "http_error"
    if "Timeout" in exc_type:
        return "timeout"
    if "ConnectionError" in exc_type or "ConnectError" in exc_type:
        return "connection_error"
    if "JSON" in exc_type or "Parse" in exc_type:
        return "parse_error"
    if "ValueError" in exc_type or "ValidationError" in exc_type:
        return "validation_error"
    if exc_type in ("OSError", "PermissionError", "FileNotFoundError"):
        return "io_error"

    return exc_type.lower()
