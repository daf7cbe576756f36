"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class BillingError(Exception):
    """Base exception for all gateway errors."""

    pass


# ============================================================================
# Request Errors
# ============================================================================


class MissingIdentifierError(BillingError):
    """Raised when a request carries no device identifier."""

    def __init__(self) -> None:
        super().__init__("Missing device identifier")


class UnknownActionError(BillingError):
    """Raised when the action envelope names an unsupported action."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unknown action: {action}")


# ============================================================================
# Ledger Errors
# ============================================================================


class NoCreditsError(BillingError):
    """Raised when a device has neither a free grant nor a paid credit left."""

    def __init__(self, device_id: str, paid_credits: int = 0) -> None:
        self.device_id = device_id
        self.paid_credits = paid_credits
        super().__init__("No free uses or credits remaining")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ConcurrencyError(BillingError):
    """Raised when a ledger transaction keeps losing to concurrent writers."""

    def __init__(self, resource: str, attempts: int) -> None:
        self.resource = resource
        self.attempts = attempts
        super().__init__(f"Concurrent modification detected for {resource} after {attempts} attempts")


# ============================================================================
# Payment Errors
# ============================================================================


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class PaymentNotCompletedError(BillingError):
    """Raised when a payment is reconciled before it reached a succeeded state."""

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} is not completed (status={status})")


class PaymentIntegrityError(BillingError):
    """Raised when a payment does not match the device, amount or currency claimed."""

    def __init__(self, payment_id: str, reason: str) -> None:
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Payment {payment_id} rejected: {reason}")


# ============================================================================
# Session Errors
# ============================================================================


class InvalidSessionError(BillingError):
    """Raised when a session token is unknown, expired, revoked or foreign."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid session: {reason}")


# ============================================================================
# Pipeline Errors
# ============================================================================


class UpstreamProviderError(BillingError):
    """Raised when a completion or evidence provider fails."""

    retryable = False

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        self.message = message
        super().__init__(f"Upstream failure during {action}: {message}")


class TransientUpstreamError(UpstreamProviderError):
    """Upstream failure that may succeed when retried."""

    retryable = True


class UpstreamTimeoutError(TransientUpstreamError):
    """Upstream call exceeded its timeout."""

    def __init__(self, action: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(action, f"timed out after {timeout_seconds:.1f}s")


class RateLimitedError(TransientUpstreamError):
    """Upstream provider rejected the call for quota reasons."""

    pass


class MalformedResponseError(UpstreamProviderError):
    """Upstream returned output that does not match the expected schema."""

    pass


class ConversationCancelledError(BillingError):
    """Raised when the caller abandoned a conversation mid-run."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Conversation cancelled before {stage}")
