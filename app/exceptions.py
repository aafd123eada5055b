"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Entitlement denials are NOT exceptions; they are returned as
EntitlementDecision values. Everything here is either a configuration
mismatch, a failure of an external dependency, or a storage problem.
"""

from uuid import UUID


class EntitlementServiceError(Exception):
    """Base exception for all credits and entitlement errors."""

    pass


# ============================================================================
# Configuration errors
# ============================================================================


class UnknownFeatureError(EntitlementServiceError):
    """Raised when a feature key has no Feature Config."""

    def __init__(self, feature_key: str) -> None:
        self.feature_key = feature_key
        super().__init__(f"Unknown feature key: {feature_key}")


class UnmappedProductError(EntitlementServiceError):
    """Raised when a payment product id is not in the catalog."""

    def __init__(self, product_id: str | None, kind: str) -> None:
        self.product_id = product_id
        self.kind = kind
        super().__init__(f"Unmapped {kind} product: {product_id}")


# ============================================================================
# Account errors
# ============================================================================


class AccountNotFoundError(EntitlementServiceError):
    """Raised when account doesn't exist."""

    def __init__(self, account_ref: UUID | str) -> None:
        self.account_ref = account_ref
        super().__init__(f"Account not found: {account_ref}")


class DatabaseError(EntitlementServiceError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


# ============================================================================
# External dependency errors
# ============================================================================


class ExternalServiceError(EntitlementServiceError):
    """Raised when paid external work (AI gateway, scraper) fails."""

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        self.message = message
        super().__init__(f"{service} failed: {message}")


class RateLimitedError(ExternalServiceError):
    """External service is rate limiting us; retry with backoff."""

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(service, "rate limited, try again later")


class QuotaExhaustedError(ExternalServiceError):
    """External service quota or prepaid balance is exhausted."""

    def __init__(self, service: str) -> None:
        super().__init__(service, "quota exhausted")


class ExternalTimeoutError(ExternalServiceError):
    """External work did not respond before the deadline."""

    def __init__(self, service: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(service, f"no response within {timeout}s")


class MalformedResponseError(ExternalServiceError):
    """External service answered, but the payload could not be used."""

    def __init__(self, service: str, detail: str) -> None:
        self.detail = detail
        super().__init__(service, f"malformed response: {detail}")


# ============================================================================
# Payment errors
# ============================================================================


class PaymentProviderError(EntitlementServiceError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(EntitlementServiceError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Referral errors
# ============================================================================


class ReferralError(EntitlementServiceError):
    """Base class for referral redemption failures."""

    pass


class InvalidReferralCodeError(ReferralError):
    """No account owns the referral code."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__("Invalid referral code")


class SelfReferralError(ReferralError):
    """Account tried to redeem its own code."""

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__("Cannot use your own referral code")


class ReferralAlreadyRedeemedError(ReferralError):
    """Account already redeemed a referral."""

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__("Referral already redeemed")


# ============================================================================
# Auth errors
# ============================================================================


class AuthenticationError(EntitlementServiceError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
