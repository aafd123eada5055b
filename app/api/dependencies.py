"""
FastAPI Dependencies - Authentication and provider wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, status
from structlog import get_logger

from app.config import settings
from app.exceptions import AuthenticationError
from app.services.ai_gateway import AIGatewayClient
from app.services.payment_provider import PaymentProvider
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Shared across requests so connections are pooled
_ai_gateway: AIGatewayClient | None = None


def check_api_key(provided: str | None, expected: str | None) -> None:
    """
    Compare a presented key against the configured one.

    Raises:
        AuthenticationError: Key missing or wrong
    """
    if not expected:
        return
    if not provided:
        raise AuthenticationError("X-API-Key header required")
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def require_api_key(x_api_key: str | None = Header(None)) -> None:
    """
    FastAPI dependency enforcing the shared service API key.

    Open when no API_KEY is configured (local development).

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    try:
        check_api_key(x_api_key, settings.api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


def get_payment_provider() -> PaymentProvider:
    """
    FastAPI dependency returning the configured payment provider.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key or not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def get_ai_gateway() -> AIGatewayClient:
    """FastAPI dependency returning the shared AI gateway client."""
    global _ai_gateway
    if _ai_gateway is None:
        _ai_gateway = AIGatewayClient()
    return _ai_gateway


async def close_ai_gateway() -> None:
    """Close the shared AI gateway client (for graceful shutdown)."""
    global _ai_gateway
    if _ai_gateway is not None:
        await _ai_gateway.close()
        _ai_gateway = None
