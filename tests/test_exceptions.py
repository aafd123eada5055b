"""
Tests for exception classes.

Covers the exception hierarchy, typed attributes and messages.
"""

from uuid import uuid4

import pytest

from app.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    DatabaseError,
    EntitlementServiceError,
    ExternalServiceError,
    ExternalTimeoutError,
    InvalidReferralCodeError,
    MalformedResponseError,
    PaymentProviderError,
    QuotaExhaustedError,
    RateLimitedError,
    ReferralAlreadyRedeemedError,
    ReferralError,
    SelfReferralError,
    UnknownFeatureError,
    UnmappedProductError,
    WebhookVerificationError,
)


class TestEntitlementServiceError:
    """Tests for the base exception."""

    def test_is_exception(self):
        """EntitlementServiceError is a subclass of Exception."""
        assert issubclass(EntitlementServiceError, Exception)

    @pytest.mark.parametrize(
        "exc_type",
        [
            AccountNotFoundError,
            AuthenticationError,
            DatabaseError,
            ExternalServiceError,
            PaymentProviderError,
            ReferralError,
            UnknownFeatureError,
            UnmappedProductError,
            WebhookVerificationError,
        ],
    )
    def test_hierarchy(self, exc_type):
        """Every service exception derives from the base."""
        assert issubclass(exc_type, EntitlementServiceError)


class TestConfigurationErrors:
    """Tests for feature and product mismatches."""

    def test_unknown_feature(self):
        """Key is kept and named in the message."""
        exc = UnknownFeatureError("teleport")
        assert exc.feature_key == "teleport"
        assert str(exc) == "Unknown feature key: teleport"

    def test_unmapped_product(self):
        """Product id and kind are kept."""
        exc = UnmappedProductError("prod_x", "credit pack")
        assert exc.product_id == "prod_x"
        assert exc.kind == "credit pack"
        assert "Unmapped credit pack product: prod_x" in str(exc)


class TestExternalServiceErrors:
    """Tests for failures of paid external work."""

    @pytest.mark.parametrize(
        "exc",
        [
            RateLimitedError("ai_gateway"),
            QuotaExhaustedError("ai_gateway"),
            ExternalTimeoutError("ai_gateway", 30),
            MalformedResponseError("ai_gateway", "bad"),
        ],
    )
    def test_subclasses_share_base(self, exc):
        """All variants are catchable as ExternalServiceError."""
        assert isinstance(exc, ExternalServiceError)
        assert exc.service == "ai_gateway"

    def test_rate_limited_retry_after(self):
        """Retry hint is optional."""
        assert RateLimitedError("ai_gateway", retry_after=12.0).retry_after == 12.0
        assert RateLimitedError("ai_gateway").retry_after is None

    def test_timeout_message(self):
        """Timeout names the deadline."""
        exc = ExternalTimeoutError("translate_listing", 60.0)
        assert exc.timeout == 60.0
        assert str(exc) == "translate_listing failed: no response within 60.0s"

    def test_malformed_detail(self):
        """Malformed responses keep the detail."""
        exc = MalformedResponseError("ai_gateway", "no translation for 'fr'")
        assert exc.detail == "no translation for 'fr'"


class TestAccountErrors:
    """Tests for account and storage errors."""

    def test_account_not_found(self):
        """Account reference is kept."""
        account_id = uuid4()
        exc = AccountNotFoundError(account_id)
        assert exc.account_ref == account_id
        assert str(account_id) in str(exc)

    def test_database_error(self):
        """Database errors are prefixed."""
        exc = DatabaseError("connection lost")
        assert exc.message == "connection lost"
        assert str(exc) == "Database error: connection lost"


class TestReferralErrors:
    """Tests for referral failures."""

    def test_messages_are_user_facing(self):
        """Messages are shown to users as-is."""
        account_id = uuid4()
        assert str(InvalidReferralCodeError("XYZ")) == "Invalid referral code"
        assert str(SelfReferralError(account_id)) == "Cannot use your own referral code"
        assert str(ReferralAlreadyRedeemedError(account_id)) == "Referral already redeemed"

    def test_catchable_as_referral_error(self):
        """All variants share ReferralError."""
        with pytest.raises(ReferralError):
            raise SelfReferralError(uuid4())


class TestPaymentErrors:
    """Tests for payment errors."""

    def test_provider_error(self):
        """Provider errors keep the message."""
        exc = PaymentProviderError("Stripe down")
        assert exc.message == "Stripe down"
        assert "Payment provider error" in str(exc)

    def test_webhook_verification(self):
        """Verification errors keep the message."""
        exc = WebhookVerificationError("bad signature")
        assert exc.message == "bad signature"

    def test_authentication(self):
        """Auth errors keep the message."""
        exc = AuthenticationError("Invalid API key")
        assert str(exc) == "Authentication failed: Invalid API key"
