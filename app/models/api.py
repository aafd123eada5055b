"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class Tier(str, Enum):
    """Subscription tier names, in ascending rank order."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"


class UsageCategory(str, Enum):
    """Ledger counters. Values are the usage_credits column names."""

    PRICE_CHECKS = "price_checks_used"
    OPTIMIZATIONS = "optimizations_used"
    PHOTO_STUDIO = "vintography_used"


class FeatureKey(str, Enum):
    """Every gated feature of the dashboard."""

    PRICE_CHECK = "price_check"
    OPTIMIZE_LISTING = "optimize_listing"
    BULK_OPTIMIZE = "bulk_optimize"
    TRANSLATE_LISTING = "translate_listing"
    SELL_WIZARD = "sell_wizard"
    VINTOGRAPHY = "vintography"

    # Photo studio operations
    REMOVE_BG = "remove_bg"
    SELL_READY = "sell_ready"
    STUDIO_SHADOW = "studio_shadow"
    AI_BACKGROUND = "ai_background"
    PUT_ON_MODEL = "put_on_model"
    VIRTUAL_TRYON = "virtual_tryon"
    SWAP_MODEL = "swap_model"

    # Tier-only features
    TREND_RADAR_FULL = "trend_radar_full"
    NICHE_FINDER = "niche_finder"
    DEAD_STOCK = "dead_stock"
    SEASONAL_CALENDAR = "seasonal_calendar"
    RELIST_SCHEDULER = "relist_scheduler"
    PORTFOLIO_OPTIMIZER = "portfolio_optimizer"
    CHARITY_BRIEFING = "charity_briefing"
    ARBITRAGE_SCANNER = "arbitrage_scanner"
    COMPETITOR_TRACKER = "competitor_tracker"
    CLEARANCE_RADAR = "clearance_radar"
    CROSS_LISTINGS = "cross_listings"


class PaymentEventType(str, Enum):
    """Plan change events delivered by the payment provider."""

    ACTIVATED = "activated"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    CREDIT_PACK_PURCHASED = "credit_pack_purchased"


class ReconciliationStatus(str, Enum):
    """Outcome of applying a payment event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ACCOUNT_NOT_FOUND = "account_not_found"


# ============================================================================
# Account Models
# ============================================================================


class CreateAccountRequest(BaseModel):
    """POST /v1/accounts request body."""

    email: str = Field(..., min_length=3, max_length=255)
    timezone: str = Field("Europe/London", max_length=64)

    @field_validator("email")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        """Emails are matched case-insensitively against payment events."""
        if "@" not in v:
            raise ValueError("email must contain @")
        return v.strip().lower()


class AccountResponse(BaseModel):
    """Account details."""

    account_id: UUID
    email: str
    tier: Tier
    timezone: str
    referral_code: str
    first_item_pass_used: bool
    created_at: str  # ISO 8601 timestamp


class CreditsSummaryResponse(BaseModel):
    """GET /v1/accounts/{account_id}/credits response."""

    account_id: UUID
    tier: Tier
    price_checks_used: int
    optimizations_used: int
    vintography_used: int
    used: int
    limit: int
    remaining: int
    is_unlimited: bool
    is_low: bool
    is_depleted: bool


class SetTierRequest(BaseModel):
    """PUT /v1/admin/accounts/{account_id}/tier request body."""

    tier: Tier
    credits_limit: int | None = Field(
        None, ge=0, description="Override; defaults to the tier's monthly allotment"
    )


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementCheckRequest(BaseModel):
    """POST /v1/entitlements/check request body."""

    account_id: UUID
    feature: FeatureKey
    units: int | None = Field(None, gt=0, le=1000)


class EntitlementDecisionResponse(BaseModel):
    """Entitlement decision returned to the dashboard."""

    feature: FeatureKey
    feature_label: str
    allowed: bool
    reason: str | None = None
    credits_remaining: int | Literal["unlimited"]
    tier_required: Tier
    current_tier: Tier
    free_pass_active: bool = False
    upgrade_required: bool = False


# ============================================================================
# Debit Models
# ============================================================================


class DebitRequest(BaseModel):
    """POST /v1/credits/debit request body."""

    account_id: UUID
    category: UsageCategory
    amount: int = Field(1, gt=0, le=1000)


class DebitResponse(BaseModel):
    """Atomic debit outcome."""

    account_id: UUID
    category: UsageCategory
    amount: int
    applied: bool
    credits_remaining: int | Literal["unlimited"]


# ============================================================================
# Translation Models
# ============================================================================


class TranslateListingRequest(BaseModel):
    """POST /v1/listings/translate request body."""

    account_id: UUID
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(..., min_length=1, max_length=10000)
    tags: list[str] = Field(default_factory=list)
    languages: list[str] | None = Field(None, min_length=1, max_length=10)

    @field_validator("languages")
    @classmethod
    def normalise_languages(cls, v: list[str] | None) -> list[str] | None:
        """Lowercase and de-duplicate, preserving order."""
        if v is None:
            return v
        seen: list[str] = []
        for code in v:
            code = code.strip().lower()
            if code and code not in seen:
                seen.append(code)
        if not seen:
            raise ValueError("languages cannot be empty")
        return seen


class TranslatedListing(BaseModel):
    """One translated listing."""

    title: str
    description: str
    tags: list[str] = Field(default_factory=list)


class TranslateListingResponse(BaseModel):
    """Translations keyed by language code."""

    translations: dict[str, TranslatedListing]
    credits_debited: int
    credits_remaining: int | Literal["unlimited"]


# ============================================================================
# Referral Models
# ============================================================================


class RedeemReferralRequest(BaseModel):
    """POST /v1/referrals/redeem request body."""

    account_id: UUID
    referral_code: str = Field(..., min_length=1, max_length=32)


class RedeemReferralResponse(BaseModel):
    """Referral redemption result."""

    success: bool
    credits_awarded: int


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    status: str
    event_id: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
