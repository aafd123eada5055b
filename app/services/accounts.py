"""
Account Service - Profile lifecycle.

NO DICTIONARIES - All operations return strongly typed domain models.
"""

import secrets
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Profile, utc_now
from app.exceptions import AccountNotFoundError, DatabaseError
from app.models.api import Tier
from app.models.domain import AccountData
from app.services.ledger import UsageLedgerService
from app.services.tier_catalog import get_tier, lowest_tier, parse_tier

logger = get_logger(__name__)

# Unambiguous characters only (no 0/O, 1/I).
_REFERRAL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_REFERRAL_CODE_LENGTH = 8
_CREATE_ATTEMPTS = 3


def generate_referral_code() -> str:
    """Random shareable referral code."""
    return "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(_REFERRAL_CODE_LENGTH))


class AccountService:
    """
    Account lookups and the few writes the credits service owns.

    Every new account gets a ledger row at the lowest tier's allotment in
    the same transaction as its profile.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize account service with database session."""
        self.session = session
        self.ledger = UsageLedgerService(session)

    async def get_or_create_account(
        self, email: str, timezone: str = "Europe/London"
    ) -> tuple[AccountData, bool]:
        """
        Get existing account by email or create a new free one.

        Returns:
            (account, created)
        """
        email = email.strip().lower()
        existing = await self._find_by_email(email)
        if existing is not None:
            return self._profile_to_domain(existing), False

        free = lowest_tier()
        for attempt in range(1, _CREATE_ATTEMPTS + 1):
            profile = Profile(
                email=email,
                subscription_tier=free.tier.value,
                timezone=timezone,
                referral_code=generate_referral_code(),
                first_item_pass_used=False,
            )
            self.session.add(profile)

            try:
                await self.session.flush()
                await self.ledger.ensure_ledger(profile.id, free.monthly_credits)
                await self.session.commit()
            except IntegrityError as e:
                await self.session.rollback()
                logger.warning(
                    "account_creation_integrity_error",
                    email=email,
                    attempt=attempt,
                    error=str(e),
                )
                # Race with a concurrent signup
                existing = await self._find_by_email(email)
                if existing is not None:
                    return self._profile_to_domain(existing), False
                # Otherwise the referral code collided; retry with a fresh one
                continue

            logger.info("account_created", account_id=str(profile.id), tier=free.tier.value)
            return self._profile_to_domain(profile), True

        raise DatabaseError(f"Account creation failed for {email}")

    async def get_account(self, account_id: UUID) -> AccountData:
        """
        Get account by id.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        stmt = (
            select(Profile)
            .where(Profile.id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        profile = result.scalar_one_or_none()
        if profile is None:
            raise AccountNotFoundError(account_id)
        return self._profile_to_domain(profile)

    async def find_by_email(self, email: str) -> AccountData | None:
        """Case-insensitive email lookup."""
        profile = await self._find_by_email(email.strip().lower())
        return self._profile_to_domain(profile) if profile is not None else None

    async def find_by_referral_code(self, code: str) -> AccountData | None:
        """Case-insensitive referral code lookup."""
        stmt = select(Profile).where(func.upper(Profile.referral_code) == code.strip().upper())
        result = await self.session.execute(stmt)
        profile = result.scalar_one_or_none()
        return self._profile_to_domain(profile) if profile is not None else None

    async def set_tier(
        self, account_id: UUID, tier: Tier, credits_limit: int | None = None
    ) -> AccountData:
        """
        Set tier and overwrite the credit ceiling (admin / test accounts).

        Counters are left alone; an explicit credits_limit of 999999 or more
        makes the account unlimited.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        definition = get_tier(tier)
        limit = credits_limit if credits_limit is not None else definition.monthly_credits

        await self.write_tier(account_id, definition.tier)
        await self.ledger.set_credits_limit(account_id, limit)
        await self.session.commit()

        logger.info(
            "account_tier_set",
            account_id=str(account_id),
            tier=definition.tier.value,
            credits_limit=limit,
        )
        return await self.get_account(account_id)

    async def claim_first_item_pass(self, account_id: UUID) -> bool:
        """
        Spend the one-shot first-item pass.

        Returns:
            True if this call consumed the pass, False if it was already used.

        Raises:
            DatabaseError: The write failed
        """
        stmt = (
            update(Profile)
            .where(Profile.id == account_id, Profile.first_item_pass_used.is_(False))
            .values(first_item_pass_used=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            claimed = result.rowcount == 1
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise DatabaseError(f"First-item pass claim failed for {account_id}: {exc}") from exc
        logger.info("first_item_pass_claim", account_id=str(account_id), claimed=claimed)
        return claimed

    async def write_tier(self, account_id: UUID, tier: Tier) -> None:
        """Update the stored tier (flush only)."""
        stmt = (
            update(Profile)
            .where(Profile.id == account_id)
            .values(subscription_tier=tier.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise AccountNotFoundError(account_id)
        await self.session.flush()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_by_email(self, email: str) -> Profile | None:
        stmt = (
            select(Profile)
            .where(func.lower(Profile.email) == email)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _profile_to_domain(self, profile: Profile) -> AccountData:
        """Convert ORM model to domain model."""
        return AccountData(
            account_id=profile.id,
            email=profile.email,
            tier=parse_tier(profile.subscription_tier),
            timezone=profile.timezone,
            referral_code=profile.referral_code,
            first_item_pass_used=profile.first_item_pass_used,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )
