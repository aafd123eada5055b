"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe payloads are translated into PaymentEvents at
this boundary and go no further.
"""

from typing import Any
from uuid import UUID

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.api import PaymentEventType
from app.models.domain import PaymentEvent

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _as_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _product_id(price: Any) -> str | None:
    """Price.product is an id unless the caller expanded it."""
    if price is None:
        return None
    product = price.get("product")
    if isinstance(product, str):
        return product
    if product is not None:
        return str(product.get("id"))
    return None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent | None:
        """
        Verify a Stripe webhook and translate it into a PaymentEvent.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            PaymentEvent, or None for events that don't change a plan

        Raises:
            WebhookVerificationError: If signature verification fails
            PaymentProviderError: If a follow-up Stripe lookup fails
        """
        event = self._verify(payload, signature)
        obj = event.data.object

        try:
            if event.type == CHECKOUT_COMPLETED:
                return await self._from_checkout(event.id, obj)
            if event.type == SUBSCRIPTION_UPDATED:
                if obj.get("status") != "active":
                    logger.info(
                        "stripe_subscription_update_ignored",
                        event_id=event.id,
                        status=obj.get("status"),
                    )
                    return None
                return await self._from_subscription(event.id, obj, PaymentEventType.UPDATED)
            if event.type == SUBSCRIPTION_DELETED:
                return await self._from_subscription(event.id, obj, PaymentEventType.CANCELLED)
        except stripe.StripeError as exc:
            logger.error("stripe_lookup_failed", event_id=event.id, error=str(exc))
            raise PaymentProviderError(f"Stripe lookup failed for {event.id}: {exc}") from exc

        logger.info("stripe_event_ignored", event_id=event.id, event_type=event.type)
        return None

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _verify(self, payload: bytes, signature: str) -> Any:
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)
        return event

    async def _from_checkout(self, event_id: str, session: Any) -> PaymentEvent | None:
        metadata = session.get("metadata") or {}
        account_id = _as_uuid(metadata.get("user_id"))
        details = session.get("customer_details") or {}
        email = session.get("customer_email") or details.get("email")

        if account_id is None and not email:
            logger.warning("stripe_checkout_without_account", event_id=event_id)
            return None

        mode = session.get("mode")
        if mode == "payment" and metadata.get("type") == "credit_pack":
            return PaymentEvent(
                event_id=event_id,
                event_type=PaymentEventType.CREDIT_PACK_PURCHASED,
                account_ref=email,
                account_id=account_id,
                product_id=await self._checkout_product(session["id"]),
                transaction_id=session["id"],
            )

        if mode == "subscription" and session.get("subscription"):
            subscription = await self._retrieve_subscription(str(session["subscription"]))
            return PaymentEvent(
                event_id=event_id,
                event_type=PaymentEventType.ACTIVATED,
                account_ref=email,
                account_id=account_id,
                product_id=_subscription_product(subscription),
                transaction_id=str(session["subscription"]),
            )

        logger.info("stripe_checkout_ignored", event_id=event_id, mode=mode)
        return None

    async def _from_subscription(
        self, event_id: str, subscription: Any, event_type: PaymentEventType
    ) -> PaymentEvent | None:
        metadata = subscription.get("metadata") or {}
        account_id = _as_uuid(metadata.get("user_id"))
        email = await self._customer_email(subscription.get("customer"))
        if account_id is None and not email:
            logger.warning("stripe_subscription_without_account", event_id=event_id)
            return None

        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            account_ref=email,
            account_id=account_id,
            product_id=_subscription_product(subscription),
            transaction_id=subscription["id"],
        )

    async def _checkout_product(self, session_id: str) -> str | None:
        line_items = stripe.checkout.Session.list_line_items(session_id, limit=1)
        if not line_items.data:
            return None
        return _product_id(line_items.data[0].get("price"))

    async def _retrieve_subscription(self, subscription_id: str) -> Any:
        return stripe.Subscription.retrieve(subscription_id)

    async def _customer_email(self, customer: Any) -> str | None:
        if not customer:
            return None
        if not isinstance(customer, str):
            return customer.get("email")
        record = stripe.Customer.retrieve(customer)
        if record.get("deleted"):
            return None
        return record.get("email")


def _subscription_product(subscription: Any) -> str | None:
    # subscription["items"]: attribute access would hit dict.items
    items = subscription["items"]["data"] if subscription.get("items") else []
    if not items:
        return None
    return _product_id(items[0].get("price"))
