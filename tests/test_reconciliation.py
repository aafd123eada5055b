"""
Tests for PlanReconciliationService.

Webhooks arrive at least once and out of order: every event must be safe
to apply any number of times.
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from app.exceptions import DatabaseError, UnmappedProductError
from app.models.api import PaymentEventType, ReconciliationStatus, Tier
from app.models.domain import PaymentEvent
from app.services.accounts import AccountService
from app.services.ledger import UsageLedgerService
from app.services.reconciliation import PlanReconciliationService
from app.services.tier_catalog import CREDIT_PACKS, TIERS

PRO_PRODUCT = TIERS[Tier.PRO].product_ids[0]
STARTER_PRODUCT = TIERS[Tier.STARTER].product_ids[0]
BUSINESS_PRODUCT = TIERS[Tier.BUSINESS].product_ids[0]
PACK_30 = next(p for p in CREDIT_PACKS if p.credits == 30)


def make_event(
    event_type: PaymentEventType = PaymentEventType.ACTIVATED,
    account_id: UUID | None = None,
    account_ref: str | None = None,
    product_id: str | None = PRO_PRODUCT,
    event_id: str | None = None,
    transaction_id: str | None = None,
) -> PaymentEvent:
    """Payment event with sensible defaults."""
    return PaymentEvent(
        event_id=event_id or f"evt_{uuid4().hex[:12]}",
        event_type=event_type,
        account_ref=account_ref,
        account_id=account_id,
        product_id=product_id,
        transaction_id=transaction_id or f"sub_{uuid4().hex[:12]}",
    )


async def _state(session_factory, account_id):
    async with session_factory() as s:
        account = await AccountService(s).get_account(account_id)
        snapshot = await UsageLedgerService(s).get_snapshot(account_id)
    return account, snapshot


class TestPlanChanges:
    """Tests for subscription events."""

    async def test_activation_sets_tier_and_limit(self, session, session_factory, seed_account):
        """Activating Pro sets tier pro and limit 200."""
        account_id = await seed_account()

        result = await PlanReconciliationService(session).apply(make_event(account_id=account_id))

        assert result.status == ReconciliationStatus.APPLIED
        assert result.tier == Tier.PRO
        assert result.credits_limit == 200
        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.PRO
        assert snapshot.credits_limit == 200

    async def test_downgrade_overwrites_limit(self, session, session_factory, seed_account):
        """Business to Starter sets the limit to 50 even with usage above it."""
        account_id = await seed_account(tier="business", credits_limit=600, optimizations_used=120)

        await PlanReconciliationService(session).apply(
            make_event(PaymentEventType.UPDATED, account_id=account_id, product_id=STARTER_PRODUCT)
        )

        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.STARTER
        assert snapshot.credits_limit == 50
        assert snapshot.optimizations_used == 120
        assert snapshot.remaining == 0

    async def test_plan_change_drops_previous_top_ups(self, session, session_factory, seed_account):
        """Plan changes overwrite, they do not add to, the ceiling."""
        account_id = await seed_account(tier="starter", credits_limit=50 + 75)

        await PlanReconciliationService(session).apply(
            make_event(PaymentEventType.UPDATED, account_id=account_id, product_id=BUSINESS_PRODUCT)
        )

        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 600

    async def test_cancellation_reverts_to_free(self, session, session_factory, seed_account):
        """Cancelled subscriptions drop to free with 5 credits."""
        account_id = await seed_account(tier="pro", credits_limit=200, price_checks_used=30)

        result = await PlanReconciliationService(session).apply(
            make_event(PaymentEventType.CANCELLED, account_id=account_id, product_id=None)
        )

        assert result.tier == Tier.FREE
        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.FREE
        assert snapshot.credits_limit == 5
        assert snapshot.price_checks_used == 30

    async def test_unknown_product_uses_fallback(self, session, session_factory, seed_account):
        """Unknown subscription products grant the starter fallback."""
        account_id = await seed_account()

        result = await PlanReconciliationService(session).apply(
            make_event(account_id=account_id, product_id="prod_new_unlisted")
        )

        assert result.tier == Tier.STARTER
        assert result.credits_limit == 50

    async def test_missing_ledger_created(self, session, session_factory, seed_account):
        """Accounts without a ledger row get one on activation."""
        account_id = await seed_account(with_ledger=False)

        await PlanReconciliationService(session).apply(make_event(account_id=account_id))

        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 200
        assert snapshot.total_used == 0

    async def test_reread_failure_keeps_applied_result(
        self, session, session_factory, seed_account
    ):
        """A failed read after commit still reports the event as applied."""
        account_id = await seed_account()
        service = PlanReconciliationService(session)
        service.ledger.get_snapshot = AsyncMock(side_effect=DatabaseError("ledger down"))

        result = await service.apply(make_event(account_id=account_id))

        assert result.status == ReconciliationStatus.APPLIED
        assert result.tier == Tier.PRO
        assert result.credits_limit is None
        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.PRO
        assert snapshot.credits_limit == 200


class TestIdempotency:
    """Redelivered events change nothing."""

    async def test_redelivery_is_duplicate(self, session, session_factory, seed_account):
        """The same event applied twice leaves the state of one application."""
        account_id = await seed_account()
        event = make_event(account_id=account_id)
        service = PlanReconciliationService(session)

        first = await service.apply(event)
        after_first = await _state(session_factory, account_id)
        second = await service.apply(event)
        after_second = await _state(session_factory, account_id)

        assert first.status == ReconciliationStatus.APPLIED
        assert second.status == ReconciliationStatus.DUPLICATE
        assert after_first[0].tier == after_second[0].tier
        assert after_first[1] == after_second[1]

    async def test_stale_redelivery_does_not_revert(self, session, session_factory, seed_account):
        """An old activation redelivered after a downgrade is ignored."""
        account_id = await seed_account()
        service = PlanReconciliationService(session)
        activation = make_event(account_id=account_id, product_id=BUSINESS_PRODUCT)
        downgrade = make_event(
            PaymentEventType.UPDATED, account_id=account_id, product_id=STARTER_PRODUCT
        )

        await service.apply(activation)
        await service.apply(downgrade)
        result = await service.apply(activation)

        assert result.status == ReconciliationStatus.DUPLICATE
        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.STARTER
        assert snapshot.credits_limit == 50

    async def test_concurrent_redelivery_applies_once(self, session_factory, seed_account):
        """Parallel deliveries of one credit pack grant it once."""
        account_id = await seed_account(credits_limit=5)
        event = make_event(
            PaymentEventType.CREDIT_PACK_PURCHASED,
            account_id=account_id,
            product_id=PACK_30.product_id,
            transaction_id="cs_test_concurrent",
        )

        async def deliver():
            async with session_factory() as s:
                return await PlanReconciliationService(s).apply(event)

        results = await asyncio.gather(*(deliver() for _ in range(4)))

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["applied", "duplicate", "duplicate", "duplicate"]
        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 35


class TestCreditPacks:
    """Tests for one-time top-ups."""

    async def test_pack_adds_to_limit(self, session, session_factory, seed_account):
        """A 30-credit pack on top of 50 gives 80, tier unchanged."""
        account_id = await seed_account(tier="starter", credits_limit=50, price_checks_used=50)

        result = await PlanReconciliationService(session).apply(
            make_event(
                PaymentEventType.CREDIT_PACK_PURCHASED,
                account_id=account_id,
                product_id=PACK_30.product_id,
            )
        )

        assert result.status == ReconciliationStatus.APPLIED
        assert result.tier == Tier.STARTER
        assert result.credits_limit == 80
        account, snapshot = await _state(session_factory, account_id)
        assert account.tier == Tier.STARTER
        assert snapshot.remaining == 30

    async def test_pack_dedup_by_transaction(self, session, session_factory, seed_account):
        """Two events for one checkout grant once, even with different event ids."""
        account_id = await seed_account(credits_limit=5)
        service = PlanReconciliationService(session)

        for event_id in ("evt_first", "evt_retry"):
            await service.apply(
                make_event(
                    PaymentEventType.CREDIT_PACK_PURCHASED,
                    account_id=account_id,
                    product_id=PACK_30.product_id,
                    event_id=event_id,
                    transaction_id="cs_test_same_checkout",
                )
            )

        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 35

    async def test_separate_purchases_both_apply(self, session, session_factory, seed_account):
        """Two checkouts of the same pack add twice."""
        account_id = await seed_account(credits_limit=5)
        service = PlanReconciliationService(session)

        for _ in range(2):
            await service.apply(
                make_event(
                    PaymentEventType.CREDIT_PACK_PURCHASED,
                    account_id=account_id,
                    product_id=PACK_30.product_id,
                )
            )

        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 65

    async def test_unknown_pack_rejected_without_writes(
        self, session, session_factory, seed_account
    ):
        """Unmapped packs raise and record nothing, so a fixed retry can apply."""
        account_id = await seed_account(credits_limit=5)
        service = PlanReconciliationService(session)
        event = make_event(
            PaymentEventType.CREDIT_PACK_PURCHASED,
            account_id=account_id,
            product_id="prod_mystery_pack",
            transaction_id="cs_test_mystery",
        )

        with pytest.raises(UnmappedProductError):
            await service.apply(event)

        _, snapshot = await _state(session_factory, account_id)
        assert snapshot.credits_limit == 5

        retry = make_event(
            PaymentEventType.CREDIT_PACK_PURCHASED,
            account_id=account_id,
            product_id=PACK_30.product_id,
            event_id=event.event_id,
            transaction_id="cs_test_mystery",
        )
        result = await service.apply(retry)
        assert result.status == ReconciliationStatus.APPLIED


class TestAccountResolution:
    """Tests for matching events to accounts."""

    async def test_match_by_email(self, session, session_factory, seed_account):
        """Events without an account id match on email, case-insensitively."""
        account_id = await seed_account(email="buyer@example.com")

        result = await PlanReconciliationService(session).apply(
            make_event(account_ref="Buyer@Example.com")
        )

        assert result.status == ReconciliationStatus.APPLIED
        assert result.account_id == account_id

    async def test_stale_id_falls_back_to_email(self, session, seed_account):
        """An unknown account id with a known email still applies."""
        account_id = await seed_account(email="moved@example.com")

        result = await PlanReconciliationService(session).apply(
            make_event(account_id=uuid4(), account_ref="moved@example.com")
        )

        assert result.account_id == account_id

    async def test_unknown_account_not_applied(self, session):
        """Events for unknown accounts are reported, not raised."""
        result = await PlanReconciliationService(session).apply(
            make_event(account_ref="nobody@example.com")
        )

        assert result.status == ReconciliationStatus.ACCOUNT_NOT_FOUND
        assert result.account_id is None

    async def test_unknown_account_id_only(self, session):
        """An unknown id without an email is not found."""
        result = await PlanReconciliationService(session).apply(make_event(account_id=uuid4()))
        assert result.status == ReconciliationStatus.ACCOUNT_NOT_FOUND


class TestPaymentEvent:
    """Tests for the PaymentEvent value object."""

    def test_pack_dedup_key_uses_transaction(self):
        """Credit packs dedup on the checkout."""
        event = make_event(
            PaymentEventType.CREDIT_PACK_PURCHASED,
            account_ref="a@example.com",
            event_id="evt_1",
            transaction_id="cs_1",
        )
        assert event.dedup_key == "credit_pack:cs_1"

    def test_plan_dedup_key_uses_event(self):
        """Plan changes dedup on the event id."""
        event = make_event(account_ref="a@example.com", event_id="evt_1")
        assert event.dedup_key == "event:evt_1"

    def test_requires_account_reference(self):
        """Events must identify an account somehow."""
        with pytest.raises(ValueError, match="reference an account"):
            make_event()

    def test_requires_transaction(self):
        """Transaction ids cannot be empty."""
        with pytest.raises(ValueError, match="transaction_id"):
            PaymentEvent(
                event_id="evt_1",
                event_type=PaymentEventType.ACTIVATED,
                account_ref="a@example.com",
                account_id=None,
                product_id=PRO_PRODUCT,
                transaction_id="",
            )
