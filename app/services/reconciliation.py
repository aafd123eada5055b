"""
Plan Reconciliation Service - Apply payment events to tier and credit state.

Payment webhooks are delivered at least once and possibly out of order.
Each event writes its dedup record in the same transaction as the change
it makes, so a redelivery hits the unique constraint and changes nothing.
"""

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import PaymentEventRecord
from app.exceptions import AccountNotFoundError, DatabaseError
from app.models.api import PaymentEventType, ReconciliationStatus, Tier
from app.models.domain import AccountData, PaymentEvent, ReconciliationResult
from app.observability.metrics import metrics
from app.services.accounts import AccountService
from app.services.ledger import UsageLedgerService
from app.services.tier_catalog import credit_pack_for_product, lowest_tier, plan_for_product

logger = get_logger(__name__)


class PlanReconciliationService:
    """Idempotent application of payment events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize reconciliation service with database session."""
        self.session = session
        self.accounts = AccountService(session)
        self.ledger = UsageLedgerService(session)

    async def apply(self, event: PaymentEvent) -> ReconciliationResult:
        """
        Apply one payment event.

        Plan changes overwrite the ceiling; credit packs add to it. Product
        lookups happen before any write so an unmapped credit pack leaves
        nothing behind.

        Raises:
            UnmappedProductError: Credit pack product is unknown, or a
                subscription product is unknown under strict mapping
        """
        account = await self._resolve_account(event)
        if account is None:
            metrics.record_payment_event(event.event_type.value, "account_not_found")
            logger.error(
                "payment_event_account_not_found",
                event_id=event.event_id,
                event_type=event.event_type.value,
                account_ref=event.account_ref,
                account_id=str(event.account_id) if event.account_id else None,
            )
            return ReconciliationResult(
                status=ReconciliationStatus.ACCOUNT_NOT_FOUND, event_id=event.event_id
            )

        tier: Tier | None
        credits: int
        additive = False
        if event.event_type == PaymentEventType.CREDIT_PACK_PURCHASED:
            pack = credit_pack_for_product(event.product_id)
            tier, credits, additive = None, pack.credits, True
        elif event.event_type == PaymentEventType.CANCELLED:
            free = lowest_tier()
            tier, credits = free.tier, free.monthly_credits
        else:
            grant = plan_for_product(event.product_id)
            tier, credits = grant.tier, grant.credits

        self.session.add(
            PaymentEventRecord(
                dedup_key=event.dedup_key,
                event_id=event.event_id,
                event_type=event.event_type.value,
                account_id=account.account_id,
                product_id=event.product_id,
                transaction_id=event.transaction_id,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            metrics.record_payment_event(event.event_type.value, "duplicate")
            logger.info(
                "payment_event_duplicate",
                event_id=event.event_id,
                dedup_key=event.dedup_key,
                account_id=str(account.account_id),
            )
            return ReconciliationResult(
                status=ReconciliationStatus.DUPLICATE,
                event_id=event.event_id,
                account_id=account.account_id,
            )

        if additive:
            await self.ledger.add_to_credits_limit(account.account_id, credits)
        else:
            assert tier is not None
            await self.accounts.write_tier(account.account_id, tier)
            await self.ledger.set_credits_limit(account.account_id, credits)

        await self.session.commit()

        try:
            snapshot = await self.ledger.get_snapshot(account.account_id)
        except DatabaseError as exc:
            # Already committed and deduped; a retry would be a duplicate
            logger.warning("payment_event_reread_failed", event_id=event.event_id, error=str(exc))
            snapshot = None
        credits_limit = snapshot.credits_limit if snapshot else None
        applied_tier = tier if tier is not None else account.tier

        metrics.record_payment_event(event.event_type.value, "applied")
        logger.info(
            "payment_event_applied",
            event_id=event.event_id,
            event_type=event.event_type.value,
            account_id=str(account.account_id),
            product_id=event.product_id,
            tier=applied_tier.value,
            credits_limit=credits_limit,
        )
        return ReconciliationResult(
            status=ReconciliationStatus.APPLIED,
            event_id=event.event_id,
            account_id=account.account_id,
            tier=applied_tier,
            credits_limit=credits_limit,
        )

    async def _resolve_account(self, event: PaymentEvent) -> AccountData | None:
        """Match by account id when the event carries one, else by email."""
        if event.account_id is not None:
            account = await self._find_by_id(event.account_id)
            if account is not None or event.account_ref is None:
                return account
        if event.account_ref is None:
            return None
        return await self.accounts.find_by_email(event.account_ref)

    async def _find_by_id(self, account_id: UUID) -> AccountData | None:
        try:
            return await self.accounts.get_account(account_id)
        except AccountNotFoundError:
            return None
