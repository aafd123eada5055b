"""
Usage Ledger Service - Per-account credit counters.

Counters are only ever changed by single atomic UPDATE statements, never by
read-modify-write from Python, so concurrent requests for the same account
cannot overspend the shared credits_limit.
"""

from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import UsageCredits, utc_now
from app.exceptions import DatabaseError
from app.models.api import UsageCategory
from app.models.domain import UNLIMITED_CREDIT_THRESHOLD, DebitOutcome, LedgerSnapshot
from app.observability.metrics import metrics
from app.services.tier_catalog import lowest_tier

logger = get_logger(__name__)

_TOTAL_USED = (
    UsageCredits.price_checks_used
    + UsageCredits.optimizations_used
    + UsageCredits.vintography_used
)


class UsageLedgerService:
    """
    Usage ledger with atomic debit-with-ceiling.

    debit() commits its own transaction. The limit-writing helpers only
    flush, so reconciliation can group them with its dedup record.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    async def get_snapshot(self, account_id: UUID) -> LedgerSnapshot | None:
        """
        Read the ledger row. Columns are selected directly so no stale ORM state leaks in.

        Raises:
            DatabaseError: The read failed
        """
        stmt = select(
            UsageCredits.price_checks_used,
            UsageCredits.optimizations_used,
            UsageCredits.vintography_used,
            UsageCredits.credits_limit,
        ).where(UsageCredits.user_id == account_id)
        try:
            result = await self.session.execute(stmt)
            row = result.one_or_none()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise DatabaseError(f"Ledger read failed for {account_id}: {exc}") from exc
        if row is None:
            return None
        return LedgerSnapshot(
            account_id=account_id,
            price_checks_used=row.price_checks_used,
            optimizations_used=row.optimizations_used,
            vintography_used=row.vintography_used,
            credits_limit=row.credits_limit,
        )

    async def debit(
        self, account_id: UUID, category: UsageCategory, amount: int = 1
    ) -> DebitOutcome:
        """
        Atomically increment one counter unless the pooled total would exceed the limit.

        Unlimited ledgers are incremented without the ceiling check.

        Returns:
            DebitOutcome with applied=False when the ceiling (or a missing
            ledger row) rejected the increment. snapshot is None when there is
            no ledger row or the read after the commit failed.

        Raises:
            DatabaseError: The write itself failed
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive: {amount}")

        column = getattr(UsageCredits, category.value)
        stmt = (
            update(UsageCredits)
            .where(UsageCredits.user_id == account_id)
            .where(
                or_(
                    UsageCredits.credits_limit >= UNLIMITED_CREDIT_THRESHOLD,
                    _TOTAL_USED + amount <= UsageCredits.credits_limit,
                )
            )
            .values(**{category.value: column + amount, "updated_at": utc_now()})
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            applied = result.rowcount == 1
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            metrics.record_debit(category.value, "error", amount)
            raise DatabaseError(f"Debit failed for {account_id}: {exc}") from exc

        # The debit is committed at this point; a failed re-read must not undo the outcome.
        try:
            snapshot = await self.get_snapshot(account_id)
        except (DatabaseError, SQLAlchemyError) as exc:
            logger.warning(
                "ledger_reread_failed",
                account_id=str(account_id),
                category=category.value,
                applied=applied,
                error=str(exc),
            )
            snapshot = None

        if applied:
            metrics.record_debit(category.value, "applied", amount)
            logger.info(
                "ledger_debited",
                account_id=str(account_id),
                category=category.value,
                amount=amount,
                total_used=snapshot.total_used if snapshot else None,
                credits_limit=snapshot.credits_limit if snapshot else None,
            )
        else:
            metrics.record_debit(category.value, "rejected", amount)
            logger.info(
                "ledger_debit_rejected",
                account_id=str(account_id),
                category=category.value,
                amount=amount,
                ledger_exists=snapshot is not None,
            )

        return DebitOutcome(
            account_id=account_id,
            category=category,
            amount=amount,
            applied=applied,
            snapshot=snapshot,
        )

    async def ensure_ledger(self, account_id: UUID, credits_limit: int) -> None:
        """Create the ledger row if missing (flush only)."""
        existing = await self.session.get(UsageCredits, account_id)
        if existing is not None:
            return
        self.session.add(
            UsageCredits(
                user_id=account_id,
                price_checks_used=0,
                optimizations_used=0,
                vintography_used=0,
                credits_limit=credits_limit,
            )
        )
        await self.session.flush()

    async def set_credits_limit(self, account_id: UUID, credits_limit: int) -> None:
        """Overwrite the ceiling; counters are untouched (flush only)."""
        if credits_limit < 0:
            raise ValueError(f"credits_limit cannot be negative: {credits_limit}")

        stmt = (
            update(UsageCredits)
            .where(UsageCredits.user_id == account_id)
            .values(credits_limit=credits_limit, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            await self.ensure_ledger(account_id, credits_limit)
        else:
            await self.session.flush()

    async def add_to_credits_limit(self, account_id: UUID, credits: int) -> None:
        """Raise the ceiling by a number of credits in one statement (flush only)."""
        if credits <= 0:
            raise ValueError(f"Credits to add must be positive: {credits}")

        stmt = (
            update(UsageCredits)
            .where(UsageCredits.user_id == account_id)
            .values(credits_limit=UsageCredits.credits_limit + credits, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            await self.ensure_ledger(account_id, lowest_tier().monthly_credits + credits)
        else:
            await self.session.flush()
