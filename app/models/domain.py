"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar
from uuid import UUID

from app.models.api import FeatureKey, PaymentEventType, ReconciliationStatus, Tier, UsageCategory

# A credit_limit at or above this marks a manually gifted unlimited account.
UNLIMITED_CREDIT_THRESHOLD = 999_999

UNLIMITED: Literal["unlimited"] = "unlimited"

T = TypeVar("T")


# ============================================================================
# Catalog
# ============================================================================


@dataclass(frozen=True)
class TierDefinition:
    """Static plan definition."""

    tier: Tier
    rank: int
    label: str
    monthly_credits: int
    monthly_price: float
    annual_price: float
    product_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate tier constraints."""
        if self.rank < 0:
            raise ValueError(f"Tier rank cannot be negative: {self.rank}")
        if self.monthly_credits < 0:
            raise ValueError(f"Monthly credits cannot be negative: {self.monthly_credits}")


@dataclass(frozen=True)
class PlanGrant:
    """Tier and credit limit a subscription product entitles."""

    tier: Tier
    credits: int


@dataclass(frozen=True)
class CreditPack:
    """One-time credit top-up."""

    product_id: str
    credits: int
    price: float
    label: str

    def __post_init__(self) -> None:
        """Validate pack constraints."""
        if self.credits <= 0:
            raise ValueError(f"Credit pack must grant credits: {self.credits}")


@dataclass(frozen=True)
class FeatureConfig:
    """Gate definition for one feature key."""

    key: FeatureKey
    min_tier: Tier
    uses_credits: bool
    label: str
    category: UsageCategory | None = None
    credit_cost: int = 1
    has_first_item_pass: bool = False

    def __post_init__(self) -> None:
        """Metered features must say which counter they debit."""
        if self.uses_credits and self.category is None:
            raise ValueError(f"Metered feature {self.key.value} needs a ledger category")
        if self.credit_cost <= 0:
            raise ValueError(f"Credit cost must be positive: {self.credit_cost}")


# ============================================================================
# Account and ledger snapshots
# ============================================================================


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

    account_id: UUID
    email: str
    tier: Tier
    timezone: str
    referral_code: str
    first_item_pass_used: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Usage ledger at a point in time.

    One ledger, N labelled counters, one ceiling: categories are accounting
    labels, exhaustion is always evaluated against their sum.
    """

    account_id: UUID
    price_checks_used: int
    optimizations_used: int
    vintography_used: int
    credits_limit: int

    def __post_init__(self) -> None:
        """Validate ledger constraints."""
        for name in ("price_checks_used", "optimizations_used", "vintography_used"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative: {getattr(self, name)}")
        if self.credits_limit < 0:
            raise ValueError(f"credits_limit cannot be negative: {self.credits_limit}")

    @classmethod
    def empty(cls, account_id: UUID, credits_limit: int) -> "LedgerSnapshot":
        """Ledger with no recorded usage."""
        return cls(
            account_id=account_id,
            price_checks_used=0,
            optimizations_used=0,
            vintography_used=0,
            credits_limit=credits_limit,
        )

    def used(self, category: UsageCategory) -> int:
        """Counter value for one category."""
        return int(getattr(self, category.value))

    @property
    def total_used(self) -> int:
        """Pooled consumption across every category."""
        return self.price_checks_used + self.optimizations_used + self.vintography_used

    @property
    def is_unlimited(self) -> bool:
        """Unlimited accounts skip the remaining-credits check."""
        return self.credits_limit >= UNLIMITED_CREDIT_THRESHOLD

    @property
    def remaining(self) -> int:
        """Credits left this period, floored at zero."""
        return max(0, self.credits_limit - self.total_used)

    @property
    def credits_remaining(self) -> int | Literal["unlimited"]:
        """Remaining credits as reported to callers."""
        return UNLIMITED if self.is_unlimited else self.remaining


# ============================================================================
# Decisions and outcomes
# ============================================================================


@dataclass(frozen=True)
class EntitlementDecision:
    """Derived per request, never persisted."""

    feature: FeatureKey
    feature_label: str
    allowed: bool
    reason: str | None
    credits_remaining: int | Literal["unlimited"]
    tier_allowed: bool
    credits_exhausted: bool
    required_tier: Tier
    current_tier: Tier
    units: int = 0
    free_pass_active: bool = False

    @property
    def upgrade_required(self) -> bool:
        """Denials are rendered as upgrade prompts."""
        return not self.allowed


@dataclass(frozen=True)
class DebitOutcome:
    """Result of one atomic debit attempt."""

    account_id: UUID
    category: UsageCategory
    amount: int
    applied: bool
    snapshot: LedgerSnapshot | None


@dataclass(frozen=True)
class MeteredResult(Generic[T]):
    """Outcome of a metered operation."""

    decision: EntitlementDecision
    performed: bool = False
    value: T | None = None
    debited: int = 0
    used_first_item_pass: bool = False
    credits_remaining: int | Literal["unlimited"] | None = None


# Callback for work that completes after the caller's deadline.
LateResultHandler = Callable[[Any], Awaitable[None]]


# ============================================================================
# Payment events
# ============================================================================


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-agnostic plan change event."""

    event_id: str
    event_type: PaymentEventType
    account_ref: str | None
    account_id: UUID | None
    product_id: str | None
    transaction_id: str

    def __post_init__(self) -> None:
        """Validate event fields."""
        if not self.event_id:
            raise ValueError("event_id cannot be empty")
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if self.account_ref is None and self.account_id is None:
            raise ValueError("Payment event must reference an account")

    @property
    def dedup_key(self) -> str:
        """
        Key recorded before applying.

        Credit packs dedup on the purchase so a second event for the same
        checkout can never grant twice; everything else dedups on the event.
        """
        if self.event_type == PaymentEventType.CREDIT_PACK_PURCHASED:
            return f"credit_pack:{self.transaction_id}"
        return f"event:{self.event_id}"


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of applying a payment event."""

    status: ReconciliationStatus
    event_id: str
    account_id: UUID | None = None
    tier: Tier | None = None
    credits_limit: int | None = None
