"""
Prometheus Metrics

Defines all metrics exposed by the payment integrity service.
Metrics are critical for:
- Authority health (verification latency, sandbox retries, failures)
- Abuse monitoring (fraud attempts, flagged transactions, score mix)
- Admin surface protection (rate-limit rejections)
- Webhook trust (verified vs. ignored notifications)
"""

from prometheus_client import Counter, Histogram


class IntegrityMetrics:
    """
    Container for all Prometheus metrics.

    Organized by category:
    - Request metrics
    - Receipt validation metrics
    - Fraud metrics
    - Rate limit metrics
    - Webhook metrics
    - System metrics
    """

    def __init__(self):
        """Initialize all metrics."""

        # =====================================================================
        # Request Metrics
        # =====================================================================
        self.requests_total = Counter(
            "payguard_requests_total",
            "Total number of API requests",
            labelnames=["endpoint"],
        )

        self.errors_total = Counter(
            "payguard_errors_total",
            "Total number of errors",
            labelnames=["error_type"],
        )

        # =====================================================================
        # Receipt Validation Metrics
        # =====================================================================
        self.validations_total = Counter(
            "payguard_receipt_validations_total",
            "Receipt validations by outcome",
            labelnames=["outcome"],
        )

        self.authority_latency = Histogram(
            "payguard_authority_latency_ms",
            "Verification authority call latency in milliseconds",
            labelnames=["environment"],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000],
        )

        self.sandbox_retries = Counter(
            "payguard_sandbox_retries_total",
            "Receipts retried against the sandbox endpoint",
        )

        # =====================================================================
        # Fraud Metrics
        # =====================================================================
        self.fraud_score_distribution = Histogram(
            "payguard_fraud_score",
            "Distribution of fraud scores",
            buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
        )

        self.fraud_attempts = Counter(
            "payguard_fraud_attempts_total",
            "Abuse rejections by fraud type",
            labelnames=["fraud_type"],
        )

        self.flagged_transactions = Counter(
            "payguard_flagged_transactions_total",
            "Transactions queued for manual review",
            labelnames=["priority"],
        )

        self.signal_triggers = Counter(
            "payguard_signal_triggers_total",
            "Number of times each fraud signal contributed points",
            labelnames=["signal"],
        )

        # =====================================================================
        # Rate Limit Metrics
        # =====================================================================
        self.rate_limit_rejections = Counter(
            "payguard_rate_limit_rejections_total",
            "Requests rejected by a rate-limit tier",
            labelnames=["tier"],
        )

        # =====================================================================
        # Webhook Metrics
        # =====================================================================
        self.webhook_verifications = Counter(
            "payguard_webhook_verifications_total",
            "Signed notification verification results",
            labelnames=["result"],
        )

        self.key_set_fetches = Counter(
            "payguard_key_set_fetches_total",
            "Remote key-set fetches",
        )

        # =====================================================================
        # System Metrics
        # =====================================================================
        self.redis_latency = Histogram(
            "payguard_redis_latency_ms",
            "Redis operation latency in milliseconds",
            buckets=[1, 2, 5, 10, 20, 50],
        )

        self.postgres_latency = Histogram(
            "payguard_postgres_latency_ms",
            "PostgreSQL operation latency in milliseconds",
            buckets=[5, 10, 25, 50, 100, 250],
        )


# Global metrics instance
metrics = IntegrityMetrics()
