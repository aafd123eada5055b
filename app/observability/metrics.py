"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    FEATURE = "feature"
    CATEGORY = "category"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    ERROR_TYPE = "error_type"


class CreditsMetrics:
    """
    Centralized metrics for the credits service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Entitlement decisions (allowed/denied per feature)
    - Ledger debits (applied/rejected/error, credits consumed)
    - Payment events (applied/duplicate/unmatched)
    - Ledger anomalies and external dependency calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "credits_service",
            "Service information",
        )
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
            "credits_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "credits_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "credits_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_decisions_total = Counter(
            "credits_entitlement_decisions_total",
            "Entitlement decisions by feature and outcome",
            [MetricLabels.FEATURE.value, MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.debits_total = Counter(
            "credits_debits_total",
            "Ledger debit attempts",
            [MetricLabels.CATEGORY.value, MetricLabels.OUTCOME.value],
        )

        self.credits_debited = Histogram(
            "credits_debited_units",
            "Credits consumed per applied debit",
            [MetricLabels.CATEGORY.value],
            buckets=(1, 2, 3, 5, 10, 25, 50),
        )

        self.ledger_anomalies_total = Counter(
            "credits_ledger_anomalies_total",
            "Delivered work that could not be billed",
            ["kind"],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payment_events_total = Counter(
            "credits_payment_events_total",
            "Payment events processed",
            [MetricLabels.EVENT_TYPE.value, MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # External Dependency Metrics
        # ====================================================================
        self.external_calls_total = Counter(
            "credits_external_calls_total",
            "Calls to paid external services",
            ["service", MetricLabels.OUTCOME.value],
        )

        self.external_call_duration_seconds = Histogram(
            "credits_external_call_duration_seconds",
            "External call duration in seconds",
            ["service"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "credits_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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

    def record_entitlement(self, feature: str, allowed: bool, tier_allowed: bool) -> None:
        """Record an entitlement decision."""
        if allowed:
            outcome = "allowed"
        elif not tier_allowed:
            outcome = "denied_tier"
        else:
            outcome = "denied_credits"
        self.entitlement_decisions_total.labels(feature=feature, outcome=outcome).inc()

    def record_debit(self, category: str, outcome: str, amount: int) -> None:
        """Record a ledger debit attempt."""
        self.debits_total.labels(category=category, outcome=outcome).inc()
        if outcome == "applied":
            self.credits_debited.labels(category=category).observe(amount)

    def record_ledger_anomaly(self, kind: str) -> None:
        """Record delivered-but-unbilled work."""
        self.ledger_anomalies_total.labels(kind=kind).inc()

    def record_payment_event(self, event_type: str, outcome: str) -> None:
        """Record a processed payment event."""
        self.payment_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_external_call(self, service: str, outcome: str, duration: float) -> None:
        """Record a call to a paid external service."""
        self.external_calls_total.labels(service=service, outcome=outcome).inc()
        self.external_call_duration_seconds.labels(service=service).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CreditsMetrics()

