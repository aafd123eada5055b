"""
Tier Catalog - Static plan, product and credit pack configuration.

Ranks are fixed here and nowhere else: every gate, webhook handler and
edge function compares tiers through this module.
"""

from types import MappingProxyType

from structlog import get_logger

from app.config import settings
from app.exceptions import UnmappedProductError
from app.models.api import Tier
from app.models.domain import UNLIMITED_CREDIT_THRESHOLD, CreditPack, PlanGrant, TierDefinition

logger = get_logger(__name__)

__all__ = [
    "CREDIT_PACKS",
    "TIERS",
    "UNKNOWN_PRODUCT_FALLBACK",
    "UNLIMITED_CREDIT_THRESHOLD",
    "credit_pack_for_product",
    "get_tier",
    "is_at_least_tier",
    "lowest_tier",
    "parse_tier",
    "plan_for_product",
    "tier_rank",
]


TIERS: MappingProxyType[Tier, TierDefinition] = MappingProxyType(
    {
        Tier.FREE: TierDefinition(
            tier=Tier.FREE,
            rank=0,
            label="Free",
            monthly_credits=5,
            monthly_price=0.0,
            annual_price=0.0,
        ),
        Tier.STARTER: TierDefinition(
            tier=Tier.STARTER,
            rank=1,
            label="Starter",
            monthly_credits=50,
            monthly_price=5.99,
            annual_price=59.88,
            product_ids=("prod_U17dtQeaUwTEqe",),
        ),
        Tier.PRO: TierDefinition(
            tier=Tier.PRO,
            rank=2,
            label="Pro",
            monthly_credits=200,
            monthly_price=14.99,
            annual_price=149.88,
            product_ids=("prod_U17d1a1Mz5jOD5",),
        ),
        Tier.BUSINESS: TierDefinition(
            tier=Tier.BUSINESS,
            rank=3,
            label="Business",
            monthly_credits=600,
            monthly_price=29.99,
            annual_price=299.88,
            product_ids=("prod_U17dfL48mNFNYE",),
        ),
    }
)

# Tier names written by older versions of the dashboard.
_LEGACY_ALIASES: MappingProxyType[str, Tier] = MappingProxyType(
    {
        "scale": Tier.BUSINESS,
        "enterprise": Tier.BUSINESS,
    }
)

# The one place an unrecognised subscription product resolves to.
UNKNOWN_PRODUCT_FALLBACK = PlanGrant(tier=Tier.STARTER, credits=50)

CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack(product_id="prod_U17dctlnov5iL9", credits=10, price=1.99, label="10 Credits"),
    CreditPack(product_id="prod_U17dG1NzLTVbLm", credits=30, price=4.49, label="30 Credits"),
    CreditPack(product_id="prod_U17dxqkW4oYQy3", credits=75, price=8.99, label="75 Credits"),
    CreditPack(product_id="prod_U17d1jumXGXX1J", credits=150, price=14.99, label="150 Credits"),
)

_PLANS_BY_PRODUCT: MappingProxyType[str, PlanGrant] = MappingProxyType(
    {
        product_id: PlanGrant(tier=definition.tier, credits=definition.monthly_credits)
        for definition in TIERS.values()
        for product_id in definition.product_ids
    }
)

_PACKS_BY_PRODUCT: MappingProxyType[str, CreditPack] = MappingProxyType(
    {pack.product_id: pack for pack in CREDIT_PACKS}
)


def _check_total_order() -> None:
    ranks = sorted(definition.rank for definition in TIERS.values())
    if ranks != list(range(len(TIERS))):
        raise ValueError(f"Tier ranks must form a total order starting at 0: {ranks}")


_check_total_order()


def lowest_tier() -> TierDefinition:
    """The rank-0 tier accounts fall back to."""
    return min(TIERS.values(), key=lambda definition: definition.rank)


def parse_tier(name: str | Tier | None) -> Tier:
    """
    Resolve a stored tier name.

    Unknown or missing names fail closed to the lowest tier.
    """
    if isinstance(name, Tier):
        return name
    if not name:
        return lowest_tier().tier

    normalised = name.strip().lower()
    try:
        return Tier(normalised)
    except ValueError:
        pass

    alias = _LEGACY_ALIASES.get(normalised)
    if alias is not None:
        return alias

    logger.warning("unknown_tier_name", tier=name, fallback=lowest_tier().tier.value)
    return lowest_tier().tier


def get_tier(name: str | Tier | None) -> TierDefinition:
    """Tier definition for a name, failing closed to the lowest tier."""
    return TIERS[parse_tier(name)]


def tier_rank(name: str | Tier | None) -> int:
    """Ordinal rank used for "at least tier X" comparisons."""
    return get_tier(name).rank


def is_at_least_tier(current: str | Tier | None, required: str | Tier) -> bool:
    """True when current ranks at or above required."""
    return tier_rank(current) >= tier_rank(required)


def plan_for_product(product_id: str | None) -> PlanGrant:
    """
    Tier and credit limit for a subscription product.

    Raises:
        UnmappedProductError: Product unknown and strict mapping is enabled
    """
    grant = _PLANS_BY_PRODUCT.get(product_id or "")
    if grant is not None:
        return grant

    if settings.strict_product_mapping:
        logger.error("subscription_product_unmapped", product_id=product_id, strict=True)
        raise UnmappedProductError(product_id, "subscription")

    logger.error(
        "subscription_product_unmapped",
        product_id=product_id,
        fallback_tier=UNKNOWN_PRODUCT_FALLBACK.tier.value,
        fallback_credits=UNKNOWN_PRODUCT_FALLBACK.credits,
    )
    return UNKNOWN_PRODUCT_FALLBACK


def credit_pack_for_product(product_id: str | None) -> CreditPack:
    """
    Credit pack for a one-time purchase product.

    Raises:
        UnmappedProductError: Product is not a known credit pack
    """
    pack = _PACKS_BY_PRODUCT.get(product_id or "")
    if pack is None:
        logger.error("credit_pack_product_unmapped", product_id=product_id)
        raise UnmappedProductError(product_id, "credit pack")
    return pack
