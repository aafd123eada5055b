"""
API Routes - FastAPI endpoints for entitlements and credits.

NO DICTIONARIES - All requests/responses use Pydantic models.

Entitlement denials come back as values. Only the metered endpoints turn
them into 403 responses, after the work was skipped.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import get_ai_gateway, get_payment_provider, require_api_key
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    AccountNotFoundError,
    DatabaseError,
    ExternalServiceError,
    ExternalTimeoutError,
    MalformedResponseError,
    PaymentProviderError,
    QuotaExhaustedError,
    RateLimitedError,
    ReferralError,
    UnmappedProductError,
    WebhookVerificationError,
)
from app.models.api import (
    AccountResponse,
    CreateAccountRequest,
    CreditsSummaryResponse,
    DebitRequest,
    DebitResponse,
    EntitlementCheckRequest,
    EntitlementDecisionResponse,
    HealthResponse,
    RedeemReferralRequest,
    RedeemReferralResponse,
    SetTierRequest,
    TranslateListingRequest,
    TranslateListingResponse,
    WebhookAckResponse,
)
from app.models.domain import AccountData, EntitlementDecision, LedgerSnapshot
from app.services.accounts import AccountService
from app.services.ai_gateway import AIGatewayClient
from app.services.ledger import UsageLedgerService
from app.services.metering import MeteringService
from app.services.payment_provider import PaymentProvider
from app.services.reconciliation import PlanReconciliationService
from app.services.referrals import ReferralService
from app.services.tier_catalog import lowest_tier
from app.services.translation import ListingTranslationService

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Response helpers
# =============================================================================


def _account_response(account: AccountData) -> AccountResponse:
    return AccountResponse(
        account_id=account.account_id,
        email=account.email,
        tier=account.tier,
        timezone=account.timezone,
        referral_code=account.referral_code,
        first_item_pass_used=account.first_item_pass_used,
        created_at=account.created_at.isoformat(),
    )


def _decision_response(decision: EntitlementDecision) -> EntitlementDecisionResponse:
    return EntitlementDecisionResponse(
        feature=decision.feature,
        feature_label=decision.feature_label,
        allowed=decision.allowed,
        reason=decision.reason,
        credits_remaining=decision.credits_remaining,
        tier_required=decision.required_tier,
        current_tier=decision.current_tier,
        free_pass_active=decision.free_pass_active,
        upgrade_required=decision.upgrade_required,
    )


def _denied(decision: EntitlementDecision) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=_decision_response(decision).model_dump(mode="json"),
    )


def _external_error(exc: ExternalServiceError) -> HTTPException:
    """Map a failed paid call onto a status the dashboard can act on."""
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limited, try again later.",
            headers=headers,
        )
    if isinstance(exc, QuotaExhaustedError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service temporarily unavailable.",
        )
    if isinstance(exc, ExternalTimeoutError):
        return HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="The request took too long. Please try again.",
        )
    if isinstance(exc, MalformedResponseError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="AI returned invalid data. Please try again.",
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _not_found(exc: AccountNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _ledger_unavailable(exc: DatabaseError) -> HTTPException:
    logger.error("ledger_unavailable", error=str(exc))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger unavailable"
    )


# =============================================================================
# Accounts
# =============================================================================


@router.post(
    "/v1/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_account(
    request: CreateAccountRequest,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """
    Get or create an account and its ledger row.

    Returns 200 instead of 201 when the account already existed.
    """
    service = AccountService(db)
    try:
        account, created = await service.get_or_create_account(request.email, request.timezone)
    except DatabaseError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc

    if not created:
        response.status_code = status.HTTP_200_OK
    return _account_response(account)


@router.get(
    "/v1/accounts/{account_id}/credits",
    response_model=CreditsSummaryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_credits_summary(
    account_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> CreditsSummaryResponse:
    """
    Credits summary for the dashboard credit bar.

    Read operation - uses replica database; may lag a just-applied debit.
    """
    try:
        account = await AccountService(db).get_account(account_id)
        snapshot = await UsageLedgerService(db).get_snapshot(account_id)
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    except DatabaseError as exc:
        raise _ledger_unavailable(exc) from exc

    if snapshot is None:
        snapshot = LedgerSnapshot.empty(account_id, lowest_tier().monthly_credits)

    unlimited = snapshot.is_unlimited
    return CreditsSummaryResponse(
        account_id=account_id,
        tier=account.tier,
        price_checks_used=snapshot.price_checks_used,
        optimizations_used=snapshot.optimizations_used,
        vintography_used=snapshot.vintography_used,
        used=snapshot.total_used,
        limit=snapshot.credits_limit,
        remaining=snapshot.remaining,
        is_unlimited=unlimited,
        is_low=not unlimited and snapshot.remaining <= settings.low_credit_threshold,
        is_depleted=not unlimited and snapshot.remaining <= 0,
    )


@router.put(
    "/v1/admin/accounts/{account_id}/tier",
    response_model=AccountResponse,
    dependencies=[Depends(require_api_key)],
)
async def set_account_tier(
    account_id: UUID,
    request: SetTierRequest,
    db: AsyncSession = Depends(get_write_db),
) -> AccountResponse:
    """
    Set tier and credit ceiling directly (admin and test accounts).

    A credits_limit of 999999 or more makes the account unlimited.
    """
    try:
        account = await AccountService(db).set_tier(account_id, request.tier, request.credits_limit)
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    return _account_response(account)


# =============================================================================
# Entitlements and credits
# =============================================================================


@router.post(
    "/v1/entitlements/check",
    response_model=EntitlementDecisionResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_entitlement(
    request: EntitlementCheckRequest,
    db: AsyncSession = Depends(get_write_db),
) -> EntitlementDecisionResponse:
    """
    Evaluate an entitlement without side effects.

    Always 200; the decision says whether the feature may be used.
    Reads the primary so the answer reflects debits just applied.
    """
    try:
        decision = await MeteringService(db).check(request.account_id, request.feature, request.units)
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    except DatabaseError as exc:
        raise _ledger_unavailable(exc) from exc
    return _decision_response(decision)


@router.post(
    "/v1/credits/debit",
    response_model=DebitResponse,
    dependencies=[Depends(require_api_key)],
)
async def debit_credits(
    request: DebitRequest,
    db: AsyncSession = Depends(get_write_db),
) -> DebitResponse:
    """
    Record credits for a metered action a caller already delivered.

    The increment is atomic and capped at the ceiling; applied=False means
    the ledger had no room (or no row) and nothing changed.
    """
    try:
        await AccountService(db).get_account(request.account_id)
        outcome = await UsageLedgerService(db).debit(
            request.account_id, request.category, request.amount
        )
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    except DatabaseError as exc:
        raise _ledger_unavailable(exc) from exc

    snapshot = outcome.snapshot or LedgerSnapshot.empty(
        request.account_id, lowest_tier().monthly_credits
    )
    return DebitResponse(
        account_id=request.account_id,
        category=request.category,
        amount=request.amount,
        applied=outcome.applied,
        credits_remaining=snapshot.credits_remaining,
    )


# =============================================================================
# Metered operations
# =============================================================================


@router.post(
    "/v1/listings/translate",
    response_model=TranslateListingResponse,
    dependencies=[Depends(require_api_key)],
)
async def translate_listing(
    request: TranslateListingRequest,
    db: AsyncSession = Depends(get_write_db),
    gateway: AIGatewayClient = Depends(get_ai_gateway),
) -> TranslateListingResponse:
    """
    Translate a listing into several languages.

    Costs one credit per language, debited only after the translation
    came back usable.
    """
    service = ListingTranslationService(db, gateway)
    try:
        result = await service.translate(
            request.account_id,
            request.title,
            request.description,
            request.tags,
            request.languages,
        )
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    except DatabaseError as exc:
        raise _ledger_unavailable(exc) from exc
    except ExternalServiceError as exc:
        raise _external_error(exc) from exc

    if not result.performed or result.value is None:
        raise _denied(result.decision)

    return TranslateListingResponse(
        translations=result.value,
        credits_debited=result.debited,
        credits_remaining=(
            result.credits_remaining
            if result.credits_remaining is not None
            else result.decision.credits_remaining
        ),
    )


# =============================================================================
# Referrals
# =============================================================================


@router.post(
    "/v1/referrals/redeem",
    response_model=RedeemReferralResponse,
    dependencies=[Depends(require_api_key)],
)
async def redeem_referral(
    request: RedeemReferralRequest,
    db: AsyncSession = Depends(get_write_db),
) -> RedeemReferralResponse:
    """Redeem a referral code; both accounts get bonus credits."""
    try:
        awarded = await ReferralService(db).redeem(request.account_id, request.referral_code)
    except AccountNotFoundError as exc:
        raise _not_found(exc) from exc
    except ReferralError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RedeemReferralResponse(success=True, credits_awarded=awarded)


# =============================================================================
# Payment webhooks
# =============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Duplicate deliveries are acknowledged with 200 so Stripe stops retrying.
    Unmapped credit pack products answer 422 so the delivery stays visible
    as failed in the Stripe dashboard.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.parse_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider lookup failed",
        ) from exc

    if event is None:
        return WebhookAckResponse(status="ignored")

    logger.info(
        "stripe_webhook_received",
        event_id=event.event_id,
        event_type=event.event_type.value,
        product_id=event.product_id,
    )

    try:
        result = await PlanReconciliationService(db).apply(event)
    except UnmappedProductError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc

    return WebhookAckResponse(status=result.status.value, event_id=result.event_id)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
