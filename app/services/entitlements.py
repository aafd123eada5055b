"""
Entitlement Evaluator - "may this account use this feature right now?"

Pure decision function: no I/O, no ledger writes. Safe to call
speculatively, e.g. to render a disabled button.
"""

from app.models.api import FeatureKey, Tier
from app.models.domain import AccountData, EntitlementDecision, LedgerSnapshot
from app.services.features import get_feature_config
from app.services.tier_catalog import get_tier, parse_tier

EXHAUSTED_REASON = "You've used all your credits this month."


def _tier_reason(label: str, required: Tier, current: Tier) -> str:
    return (
        f"{label} requires a {get_tier(required).label} plan. "
        f"You're on {get_tier(current).label}."
    )


def _insufficient_reason(units: int, remaining: int) -> str:
    plural = "s" if units > 1 else ""
    return (
        f"This operation costs {units} credit{plural}. You have {remaining} remaining. "
        "Upgrade your plan or buy a top-up pack."
    )


def evaluate(
    feature: FeatureKey | str,
    account: AccountData,
    ledger: LedgerSnapshot | None,
    units: int | None = None,
) -> EntitlementDecision:
    """
    Decide whether an account may use a feature.

    Args:
        feature: Feature key (unknown keys raise UnknownFeatureError)
        account: Account snapshot (tier, first-item pass flag)
        ledger: Usage ledger snapshot; None means no usage recorded yet
        units: Credits the request will consume; defaults to the feature's cost

    Returns:
        EntitlementDecision. Tier failure takes priority in the reason.
    """
    config = get_feature_config(feature)
    current_tier = parse_tier(account.tier)

    if ledger is None:
        ledger = LedgerSnapshot.empty(
            account.account_id, get_tier(Tier.FREE).monthly_credits
        )

    requested = units if units is not None else config.credit_cost
    if requested <= 0:
        raise ValueError(f"units must be positive: {requested}")

    tier_allowed = get_tier(current_tier).rank >= get_tier(config.min_tier).rank

    credits_exhausted = False
    insufficient = False
    if config.uses_credits and not ledger.is_unlimited:
        remaining = ledger.credits_limit - ledger.total_used
        credits_exhausted = remaining <= 0
        insufficient = not credits_exhausted and remaining < requested

    allowed = tier_allowed and not credits_exhausted and not insufficient

    reason: str | None = None
    if not tier_allowed:
        reason = _tier_reason(config.label, config.min_tier, current_tier)
    elif credits_exhausted:
        reason = EXHAUSTED_REASON
    elif insufficient:
        reason = _insufficient_reason(requested, ledger.remaining)

    free_pass_active = (
        config.has_first_item_pass
        and get_tier(current_tier).rank == 0
        and not account.first_item_pass_used
    )

    return EntitlementDecision(
        feature=config.key,
        feature_label=config.label,
        allowed=allowed,
        reason=reason,
        credits_remaining=ledger.credits_remaining,
        tier_allowed=tier_allowed,
        credits_exhausted=credits_exhausted,
        required_tier=config.min_tier,
        current_tier=current_tier,
        units=requested if config.uses_credits else 0,
        free_pass_active=free_pass_active,
    )
