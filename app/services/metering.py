"""
Metering Service - Read, check, do the paid work, then debit.

The ledger is only ever debited after the work succeeded. Nothing here
holds a lock across the external call: the final debit is the atomic
increment-with-ceiling in UsageLedgerService, so two concurrent requests
may both pass the check but only those that fit under the ceiling are
billed.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.exceptions import DatabaseError, ExternalServiceError, ExternalTimeoutError
from app.models.api import FeatureKey
from app.models.domain import (
    EntitlementDecision,
    FeatureConfig,
    LateResultHandler,
    MeteredResult,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.accounts import AccountService
from app.services.entitlements import evaluate
from app.services.features import get_feature_config
from app.services.ledger import UsageLedgerService

logger = get_logger(__name__)

T = TypeVar("T")

# Strong references to late-result deliveries so they are not garbage collected.
_late_deliveries: set[asyncio.Task[None]] = set()


class MeteringService:
    """Runs paid work behind an entitlement check and debits on success."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize metering service with database session."""
        self.session = session
        self.accounts = AccountService(session)
        self.ledger = UsageLedgerService(session)

    async def check(
        self, account_id: UUID, feature: FeatureKey | str, units: int | None = None
    ) -> EntitlementDecision:
        """
        Evaluate an entitlement against a fresh ledger read.

        Raises:
            AccountNotFoundError: Account doesn't exist
            UnknownFeatureError: Feature key has no config
        """
        config = get_feature_config(feature)
        account = await self.accounts.get_account(account_id)
        snapshot = await self.ledger.get_snapshot(account_id)
        decision = evaluate(config.key, account, snapshot, units)

        metrics.record_entitlement(config.key.value, decision.allowed, decision.tier_allowed)
        if not decision.allowed:
            logger.info(
                "entitlement_denied",
                account_id=str(account_id),
                feature=config.key.value,
                tier_allowed=decision.tier_allowed,
                credits_exhausted=decision.credits_exhausted,
                credits_remaining=decision.credits_remaining,
                units=decision.units,
            )
        return decision

    async def run(
        self,
        account_id: UUID,
        feature: FeatureKey | str,
        work: Callable[[], Awaitable[T]],
        units: int | None = None,
        timeout: float | None = None,
        use_first_item_pass: bool = False,
        on_late_result: LateResultHandler | None = None,
    ) -> MeteredResult[T]:
        """
        Check, perform and bill one metered operation.

        Args:
            account_id: Account to bill
            feature: Feature being used
            work: Zero-argument coroutine factory doing the paid call
            units: Credits to debit; defaults to the feature's cost
            timeout: Seconds to wait for work before giving up
            use_first_item_pass: Let an active first-item pass bypass the credit check
            on_late_result: Receives the value if work finishes after the timeout
                or after this call was cancelled (client disconnect). The late
                value is persisted by the caller, never billed.

        Returns:
            MeteredResult with performed=False when the decision denied the request.

        Raises:
            ExternalServiceError: work failed (subclass tells how); nothing was debited
            AccountNotFoundError: Account doesn't exist
        """
        config = get_feature_config(feature)
        decision = await self.check(account_id, config.key, units)

        use_pass = use_first_item_pass and decision.free_pass_active and decision.tier_allowed
        if not decision.allowed and not use_pass:
            return MeteredResult(decision=decision, credits_remaining=decision.credits_remaining)

        with trace_operation(
            "metered_operation",
            account_id=str(account_id),
            feature=config.key.value,
            units=decision.units,
        ) as span:
            value = await self._perform(config, work, timeout, on_late_result)

            if not config.uses_credits:
                return MeteredResult(
                    decision=decision,
                    performed=True,
                    value=value,
                    credits_remaining=decision.credits_remaining,
                )

            if use_pass and await self._claim_pass_after_success(account_id, config):
                span.set_attribute("first_item_pass", True)
                return MeteredResult(
                    decision=decision,
                    performed=True,
                    value=value,
                    used_first_item_pass=True,
                    credits_remaining=decision.credits_remaining,
                )

            debited, remaining = await self._debit_after_success(
                account_id, config, decision.units
            )
            span.set_attribute("debited", debited)

        if remaining is None:
            # No fresh read after the debit; estimate from the pre-work decision
            remaining = decision.credits_remaining
            if isinstance(remaining, int):
                remaining = max(0, remaining - debited)

        return MeteredResult(
            decision=decision,
            performed=True,
            value=value,
            debited=debited,
            credits_remaining=remaining,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _perform(
        self,
        config: FeatureConfig,
        work: Callable[[], Awaitable[T]],
        timeout: float | None,
        on_late_result: LateResultHandler | None,
    ) -> T:
        """
        Await work, translating failures into ExternalServiceError.

        The work runs shielded, so a timeout or a cancelled caller (client
        disconnect) leaves it to finish for on_late_result; both count as
        failed and nothing is billed. Without a handler the work is cancelled.
        """
        service = config.key.value
        task: asyncio.Future[T] = asyncio.ensure_future(work())
        try:
            if timeout is None:
                return await asyncio.shield(task)
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError as exc:
            _abandon(service, task, on_late_result)
            metrics.record_error("timeout", service)
            logger.warning(
                "metered_work_timeout",
                feature=service,
                timeout=timeout,
                late_result_pending=on_late_result is not None,
            )
            raise ExternalTimeoutError(service, timeout) from exc
        except asyncio.CancelledError:
            _abandon(service, task, on_late_result)
            metrics.record_error("cancelled", service)
            logger.warning(
                "metered_work_cancelled",
                feature=service,
                late_result_pending=on_late_result is not None,
            )
            raise
        except ExternalServiceError as exc:
            metrics.record_error(type(exc).__name__, service)
            logger.warning("metered_work_failed", feature=service, error=str(exc))
            raise
        except Exception as exc:
            metrics.record_error(type(exc).__name__, service)
            logger.error("metered_work_crashed", feature=service, error=str(exc))
            raise ExternalServiceError(service, str(exc)) from exc

    async def _claim_pass_after_success(self, account_id: UUID, config: FeatureConfig) -> bool:
        """Spend the first-item pass; a failed claim falls back to a normal debit."""
        try:
            return await self.accounts.claim_first_item_pass(account_id)
        except DatabaseError as exc:
            logger.warning(
                "first_item_pass_claim_failed",
                account_id=str(account_id),
                feature=config.key.value,
                error=str(exc),
            )
            return False

    async def _debit_after_success(
        self, account_id: UUID, config: FeatureConfig, units: int
    ) -> tuple[int, int | str | None]:
        """
        Debit delivered work.

        The caller already has the result, so a failed or rejected debit is
        recorded as an anomaly instead of being raised.
        """
        assert config.category is not None

        try:
            outcome = await self.ledger.debit(account_id, config.category, units)
        except DatabaseError as exc:
            metrics.record_ledger_anomaly("debit_error")
            logger.error(
                "ledger_anomaly",
                kind="debit_error",
                account_id=str(account_id),
                feature=config.key.value,
                units=units,
                error=str(exc),
            )
            return 0, None

        remaining = outcome.snapshot.credits_remaining if outcome.snapshot else None
        if not outcome.applied:
            metrics.record_ledger_anomaly("debit_rejected")
            logger.error(
                "ledger_anomaly",
                kind="debit_rejected",
                account_id=str(account_id),
                feature=config.key.value,
                units=units,
                credits_remaining=remaining,
            )
            return 0, remaining

        return units, remaining


async def _deliver_late(
    service: str, task: "asyncio.Future[Any]", handler: LateResultHandler
) -> None:
    """Hand a result that arrived after the deadline to its handler."""
    try:
        value = await task
    except Exception as exc:
        logger.warning("late_result_failed", feature=service, error=str(exc))
        return

    try:
        await handler(value)
    except Exception as exc:
        logger.error("late_result_handler_failed", feature=service, error=str(exc))
        return

    logger.info("late_result_delivered", feature=service)


def _abandon(
    service: str, task: "asyncio.Future[Any]", handler: LateResultHandler | None
) -> None:
    """Give up on work the caller no longer waits for."""
    if handler is None:
        task.cancel()
        return
    delivery = asyncio.ensure_future(_deliver_late(service, task, handler))
    _late_deliveries.add(delivery)
    delivery.add_done_callback(_late_deliveries.discard)
