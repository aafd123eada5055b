"""
Referral Service - One-time bonus credits for referrer and referee.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Referral
from app.exceptions import (
    InvalidReferralCodeError,
    ReferralAlreadyRedeemedError,
    SelfReferralError,
)
from app.services.accounts import AccountService
from app.services.ledger import UsageLedgerService

logger = get_logger(__name__)


class ReferralService:
    """Referral redemption. Both ceilings are raised in the referral's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize referral service with database session."""
        self.session = session
        self.accounts = AccountService(session)
        self.ledger = UsageLedgerService(session)

    async def redeem(self, account_id: UUID, code: str) -> int:
        """
        Redeem a referral code for the calling account.

        Returns:
            Credits awarded to each side

        Raises:
            AccountNotFoundError: Redeeming account doesn't exist
            InvalidReferralCodeError: No account owns the code
            SelfReferralError: Account used its own code
            ReferralAlreadyRedeemedError: Account was already referred
        """
        referee = await self.accounts.get_account(account_id)
        referrer = await self.accounts.find_by_referral_code(code)
        if referrer is None:
            raise InvalidReferralCodeError(code)
        if referrer.account_id == referee.account_id:
            raise SelfReferralError(account_id)
        if await self._already_referred(account_id):
            raise ReferralAlreadyRedeemedError(account_id)

        bonus = settings.referral_bonus_credits
        self.session.add(
            Referral(
                referrer_id=referrer.account_id,
                referee_id=referee.account_id,
                referral_code=referrer.referral_code,
                credits_awarded=bonus,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Concurrent redemption by the same referee
            await self.session.rollback()
            raise ReferralAlreadyRedeemedError(account_id) from e

        if bonus > 0:
            for uid in (referrer.account_id, referee.account_id):
                await self.ledger.add_to_credits_limit(uid, bonus)

        await self.session.commit()

        logger.info(
            "referral_redeemed",
            referrer_id=str(referrer.account_id),
            referee_id=str(referee.account_id),
            credits_awarded=bonus,
        )
        return bonus

    async def _already_referred(self, account_id: UUID) -> bool:
        stmt = select(Referral.id).where(Referral.referee_id == account_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
