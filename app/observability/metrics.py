"""
Metrics Collection with Prometheus.

Exposes ledger, payment, session and pipeline metrics for monitoring.
"""

import time
from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    MODE = "mode"
    STAGE = "stage"
    SOURCE = "source"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the gateway.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Credit consumption by mode and denials
    - Purchases credited and reconciliation rejections
    - Conversation sessions and stage authorizations
    - Pipeline stage latency, upstream failures and evidence fallbacks
    """

    def __init__(self) -> None:
        self.service_info = Info("gateway_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "gateway_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "gateway_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "gateway_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.credits_consumed_total = Counter(
            "gateway_credits_consumed_total",
            "Credits consumed by mode",
            [MetricLabels.MODE],
        )

        self.consume_denied_total = Counter(
            "gateway_consume_denied_total",
            "Consumption attempts rejected for lack of credit",
        )

        self.ledger_retries_total = Counter(
            "gateway_ledger_retries_total",
            "Ledger transactions retried after a serialization conflict",
            [MetricLabels.OPERATION],
        )

        self.db_write_verifications_total = Counter(
            "gateway_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.purchases_credited_total = Counter(
            "gateway_purchases_credited_total",
            "Payment reconciliations by source and whether they were duplicates",
            [MetricLabels.SOURCE, "duplicate"],
        )

        self.credits_purchased_total = Counter(
            "gateway_credits_purchased_total",
            "Paid credits added to device balances",
        )

        self.reconciliation_rejected_total = Counter(
            "gateway_reconciliation_rejected_total",
            "Payments rejected during reconciliation",
            ["reason"],
        )

        # ====================================================================
        # Session Metrics
        # ====================================================================
        self.sessions_started_total = Counter(
            "gateway_sessions_started_total",
            "Conversation sessions minted",
            [MetricLabels.MODE],
        )

        self.stage_calls_total = Counter(
            "gateway_stage_calls_total",
            "Stage calls by whether they consumed a credit",
            [MetricLabels.STAGE, "charged"],
        )

        # ====================================================================
        # Pipeline Metrics
        # ====================================================================
        self.pipeline_stage_duration_seconds = Histogram(
            "gateway_pipeline_stage_duration_seconds",
            "Pipeline stage duration in seconds",
            [MetricLabels.STAGE],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        self.upstream_errors_total = Counter(
            "gateway_upstream_errors_total",
            "Upstream provider failures by kind",
            [MetricLabels.STAGE, MetricLabels.ERROR_TYPE],
        )

        self.evidence_fallbacks_total = Counter(
            "gateway_evidence_fallbacks_total",
            "Evidence lookups that degraded to an empty result",
            ["reason"],
        )

        self.conversations_total = Counter(
            "gateway_conversations_total",
            "Streamed conversations by outcome",
            ["outcome"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "gateway_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_consumption(self, mode: str | None) -> None:
        """Record a consume_one outcome; None means denied."""
        if mode is None:
            self.consume_denied_total.inc()
        else:
            self.credits_consumed_total.labels(mode=mode).inc()

    def record_purchase(self, source: str, duplicate: bool, quantity: int) -> None:
        self.purchases_credited_total.labels(source=source, duplicate=str(duplicate)).inc()
        if not duplicate:
            self.credits_purchased_total.inc(quantity)

    def record_stage_call(self, stage: str, charged: bool) -> None:
        self.stage_calls_total.labels(stage=stage, charged=str(charged)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()


class track_stage:
    """
    Context manager timing a pipeline stage.

    Usage:
        with track_stage("conflict"):
            await orchestrator.run_conflict(...)
    """

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self.start_time = 0.0

    def __enter__(self) -> "track_stage":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        metrics.pipeline_stage_duration_seconds.labels(stage=self.stage).observe(duration)
        if exc_val is not None:
            metrics.upstream_errors_total.labels(
                stage=self.stage, error_type=type(exc_val).__name__
            ).inc()
