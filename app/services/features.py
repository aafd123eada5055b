"""
Feature Config - Which tier unlocks each feature and what it costs.
"""

from types import MappingProxyType

from app.exceptions import UnknownFeatureError
from app.models.api import FeatureKey, Tier, UsageCategory
from app.models.domain import FeatureConfig


def _metered(
    key: FeatureKey,
    min_tier: Tier,
    category: UsageCategory,
    label: str,
    credit_cost: int = 1,
    has_first_item_pass: bool = False,
) -> FeatureConfig:
    return FeatureConfig(
        key=key,
        min_tier=min_tier,
        uses_credits=True,
        category=category,
        label=label,
        credit_cost=credit_cost,
        has_first_item_pass=has_first_item_pass,
    )


def _tier_only(key: FeatureKey, min_tier: Tier, label: str) -> FeatureConfig:
    return FeatureConfig(key=key, min_tier=min_tier, uses_credits=False, label=label)


_PHOTO = UsageCategory.PHOTO_STUDIO
_OPT = UsageCategory.OPTIMIZATIONS

_CONFIGS: tuple[FeatureConfig, ...] = (
    _metered(FeatureKey.PRICE_CHECK, Tier.FREE, UsageCategory.PRICE_CHECKS, "Price Check"),
    _metered(FeatureKey.OPTIMIZE_LISTING, Tier.STARTER, _OPT, "Listing Optimiser"),
    _metered(FeatureKey.BULK_OPTIMIZE, Tier.BUSINESS, _OPT, "Bulk Optimiser"),
    # Cost scales with the number of target languages; units are passed per call.
    _metered(FeatureKey.TRANSLATE_LISTING, Tier.PRO, _OPT, "Multi-language Listings"),
    _metered(FeatureKey.SELL_WIZARD, Tier.FREE, _OPT, "Sell Wizard", has_first_item_pass=True),
    _metered(FeatureKey.VINTOGRAPHY, Tier.FREE, _PHOTO, "Vintography"),
    _metered(FeatureKey.REMOVE_BG, Tier.FREE, _PHOTO, "Remove Background"),
    _metered(FeatureKey.SELL_READY, Tier.FREE, _PHOTO, "Sell-Ready", credit_cost=2),
    _metered(FeatureKey.STUDIO_SHADOW, Tier.STARTER, _PHOTO, "Studio Shadow", credit_cost=2),
    _metered(FeatureKey.AI_BACKGROUND, Tier.STARTER, _PHOTO, "AI Background", credit_cost=2),
    _metered(FeatureKey.PUT_ON_MODEL, Tier.STARTER, _PHOTO, "Put on Model", credit_cost=3),
    _metered(FeatureKey.VIRTUAL_TRYON, Tier.STARTER, _PHOTO, "Virtual Try-On", credit_cost=3),
    _metered(FeatureKey.SWAP_MODEL, Tier.STARTER, _PHOTO, "Swap Model", credit_cost=3),
    _tier_only(FeatureKey.TREND_RADAR_FULL, Tier.STARTER, "Full Trend Radar"),
    _tier_only(FeatureKey.NICHE_FINDER, Tier.PRO, "Niche Finder"),
    _tier_only(FeatureKey.DEAD_STOCK, Tier.PRO, "Dead Stock Engine"),
    _tier_only(FeatureKey.SEASONAL_CALENDAR, Tier.PRO, "Seasonal Calendar"),
    _tier_only(FeatureKey.RELIST_SCHEDULER, Tier.PRO, "Relist Scheduler"),
    _tier_only(FeatureKey.PORTFOLIO_OPTIMIZER, Tier.PRO, "Portfolio Optimiser"),
    _tier_only(FeatureKey.CHARITY_BRIEFING, Tier.PRO, "Charity Briefing"),
    _tier_only(FeatureKey.ARBITRAGE_SCANNER, Tier.BUSINESS, "Arbitrage Scanner"),
    _tier_only(FeatureKey.COMPETITOR_TRACKER, Tier.BUSINESS, "Competitor Tracker"),
    _tier_only(FeatureKey.CLEARANCE_RADAR, Tier.BUSINESS, "Clearance Radar"),
    _tier_only(FeatureKey.CROSS_LISTINGS, Tier.BUSINESS, "Cross-Listings"),
)

FEATURE_CONFIG: MappingProxyType[FeatureKey, FeatureConfig] = MappingProxyType(
    {config.key: config for config in _CONFIGS}
)

_missing = set(FeatureKey) - set(FEATURE_CONFIG)
if _missing:
    raise ValueError(f"Feature keys without config: {sorted(k.value for k in _missing)}")


def get_feature_config(feature: FeatureKey | str) -> FeatureConfig:
    """
    Look up the gate for a feature.

    Raises:
        UnknownFeatureError: No config exists for the key
    """
    try:
        key = FeatureKey(feature)
    except ValueError as exc:
        raise UnknownFeatureError(str(feature)) from exc
    config = FEATURE_CONFIG.get(key)
    if config is None:
        raise UnknownFeatureError(key.value)
    return config
