"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Protocol

from app.models.domain import PaymentEvent


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    A provider verifies its own webhook deliveries and translates them into
    PaymentEvents. Reconciliation never sees provider payloads.
    """

    async def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent | None:
        """
        Verify and translate a webhook delivery.

        Args:
            payload: Raw webhook payload
            signature: Webhook signature for verification

        Returns:
            PaymentEvent, or None for deliveries that don't change a plan

        Raises:
            WebhookVerificationError: If signature verification fails
            PaymentProviderError: If follow-up provider lookups fail
        """
        ...
