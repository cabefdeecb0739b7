"""
Application constants.
"""


class BillingConstants:
    """Billing lifecycle constants."""

    TRIAL_DAYS = 7
    GRACE_PERIOD_DAYS = 3
    RENEWAL_INTERVAL_SECONDS = 3600  # 1 hour

    DEFAULT_CURRENCY = "USD"


class ReferenceConstants:
    """Transaction reference formats."""

    CARD_PREFIX = "TXN"
    REGIONAL_PREFIX = "XND"
    REFUND_PREFIX = "REFUND"
    RANDOM_PART_LENGTH = 8
    SEPARATOR = "-"


class GatewayConstants:
    """Payment gateway constants."""

    DEFAULT_TIMEOUT = 30  # seconds
    DEFAULT_RETRY_ATTEMPTS = 3
    QR_CODE_EXPIRES_IN = 3600  # seconds
    VIRTUAL_ACCOUNT_EXPIRY_HOURS = 24
    RETAIL_OUTLET_EXPIRY_HOURS = 48

    # Provider-reported statuses that count as a captured charge
    SUCCESS_STATUSES = frozenset({"CAPTURED", "SUCCEEDED", "COMPLETED", "PAID", "succeeded"})


class AnalyticsEvents:
    """Analytics event names."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    PAYMENT_METHOD_ADDED = "payment_method_added"
    PAYMENT_METHOD_REMOVED = "payment_method_removed"
    WEBHOOK_RECEIVED = "webhook_received"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_EVIDENCE_SUBMITTED = "dispute_evidence_submitted"
    REPORT_GENERATED = "report_generated"
