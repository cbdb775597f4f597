"""
Payment Settlement - converts confirmed external payments into ledger credits.

NO DICTIONARIES - All operations use strongly typed domain models.

A payment session is applied to the ledger at most once, no matter how many
times the client, the webhook, or a retry asks for it.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.db.atomic import run_atomic
from fable_ledger.db.models import PaymentSettlement, utc_now
from fable_ledger.exceptions import PaymentNotConfirmedError, StorageConflictError
from fable_ledger.models.api import LedgerReason, PaymentStatus
from fable_ledger.models.domain import LedgerEntryIntent, SettlementResult
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics
from fable_ledger.services.ledger import BalanceProjector, LedgerStore
from fable_ledger.services.payment_provider import CheckoutSessionStatus, PaymentProvider

logger = get_logger(__name__)


class PaymentSettlementReconciler:
    """
    Settles payment sessions into the ledger.

    The provider is asked for payment status outside the database
    transaction; the ledger append and the settlement record are written
    together.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        ledger: LedgerStore | None = None,
    ) -> None:
        self.session = session
        self.provider = provider
        self.ledger = ledger or LedgerStore(session)
        self.projector: BalanceProjector = self.ledger.projector

    async def settle(self, user_id: str, session_id: str, credit_amount: int) -> SettlementResult:
        """
        Credit credit_amount to user_id for a paid session, exactly once.

        Raises:
            PaymentNotConfirmedError: Session is not paid or belongs to another user
            PaymentProviderError: Processor could not be reached
        """
        if credit_amount <= 0:
            raise ValueError("credit_amount must be positive")

        replay = await self._replay_if_settled(user_id, session_id)
        if replay is not None:
            return replay

        status = await self.provider.get_session_status(session_id)
        self._ensure_confirmed(user_id, status)
        return await self._apply(user_id, session_id, credit_amount)

    async def settle_from_provider(self, user_id: str, session_id: str) -> SettlementResult:
        """
        Settle a session using the credit amount recorded in its metadata.

        Raises:
            PaymentNotConfirmedError: Session is not paid, belongs to another
                user, or carries no credit amount
            PaymentProviderError: Processor could not be reached
        """
        replay = await self._replay_if_settled(user_id, session_id)
        if replay is not None:
            return replay

        status = await self.provider.get_session_status(session_id)
        self._ensure_confirmed(user_id, status)
        if status.credits is None:
            raise PaymentNotConfirmedError(session_id, "session has no credit amount")
        return await self._apply(user_id, session_id, status.credits)

    async def settle_verified(self, status: CheckoutSessionStatus) -> SettlementResult:
        """
        Settle a session whose status arrived in a signature-verified webhook.

        Raises:
            PaymentNotConfirmedError: Session is not paid or lacks user/credits metadata
        """
        if status.user_id is None or status.credits is None:
            raise PaymentNotConfirmedError(status.session_id, "session metadata incomplete")

        replay = await self._replay_if_settled(status.user_id, status.session_id)
        if replay is not None:
            return replay

        self._ensure_confirmed(status.user_id, status)
        return await self._apply(status.user_id, status.session_id, status.credits)

    # ========================================================================
    # Internals
    # ========================================================================

    def _ensure_confirmed(self, user_id: str, status: CheckoutSessionStatus) -> None:
        """Refuse settlement unless the processor reports the session paid for this user."""
        if status.payment_status != PaymentStatus.PAID:
            metrics.record_settlement("not_confirmed")
            logger.info(
                "settlement_not_confirmed",
                user_id=user_id,
                session_id=status.session_id,
                payment_status=status.payment_status.value,
            )
            raise PaymentNotConfirmedError(
                status.session_id, f"payment status is {status.payment_status.value}"
            )
        if status.user_id is not None and status.user_id != user_id:
            metrics.record_settlement("wrong_user")
            logger.warning(
                "settlement_user_mismatch",
                user_id=user_id,
                session_id=status.session_id,
                session_user_id=status.user_id,
            )
            raise PaymentNotConfirmedError(status.session_id, "session belongs to another user")

    async def _replay_if_settled(self, user_id: str, session_id: str) -> SettlementResult | None:
        """Return the prior outcome when the session was already settled."""
        record = await self._find_settlement(session_id)
        if record is None:
            # Release the connection before the processor round trip
            await self.session.rollback()
            return None
        if record.user_id != user_id:
            metrics.record_settlement("wrong_user")
            raise PaymentNotConfirmedError(session_id, "session belongs to another user")

        balance = await self.projector.get_balance(user_id)
        metrics.record_settlement("replayed")
        logger.info("settlement_replayed", user_id=user_id, session_id=session_id)
        return SettlementResult(
            applied=False,
            new_balance=balance,
            session_id=session_id,
            credits=record.credits,
            ledger_entry_id=record.ledger_entry_id,
        )

    async def _apply(self, user_id: str, session_id: str, credit_amount: int) -> SettlementResult:
        """Append the purchase entry and the settlement record in one transaction."""

        async def _settle() -> SettlementResult:
            record = await self._find_settlement(session_id)
            if record is not None:
                if record.user_id != user_id:
                    raise PaymentNotConfirmedError(session_id, "session belongs to another user")
                balance = await self.projector.balance_in_transaction(user_id)
                return SettlementResult(
                    applied=False,
                    new_balance=balance,
                    session_id=session_id,
                    credits=record.credits,
                    ledger_entry_id=record.ledger_entry_id,
                )

            await self.projector.ensure_account_in_transaction(user_id)
            appended = await self.ledger.append_in_transaction(
                LedgerEntryIntent(
                    user_id=user_id,
                    amount=credit_amount,
                    reason=LedgerReason.PURCHASE,
                    description=f"Purchased {credit_amount} credits",
                    external_ref=session_id,
                )
            )

            inserted = await self._insert_settlement(
                session_id=session_id,
                user_id=user_id,
                ledger_entry_id=appended.entry.entry_id,
                credits=appended.entry.amount,
                balance_after=appended.entry.balance_after,
            )
            if not inserted:
                # Another writer settled the session between our check and insert
                raise StorageConflictError("settle_payment")

            return SettlementResult(
                applied=appended.created,
                new_balance=appended.balance,
                session_id=session_id,
                credits=appended.entry.amount,
                ledger_entry_id=appended.entry.entry_id,
            )

        result = await run_atomic(self.session, "settle_payment", _settle)

        metrics.record_settlement("applied" if result.applied else "replayed")
        logger.info(
            "settlement_applied" if result.applied else "settlement_replayed",
            user_id=user_id,
            session_id=session_id,
            credits=result.credits,
            new_balance=result.new_balance,
        )
        return result

    async def _insert_settlement(
        self,
        session_id: str,
        user_id: str,
        ledger_entry_id: UUID,
        credits: int,
        balance_after: int,
    ) -> bool:
        """Insert the settlement record; False when one already exists."""
        stmt = (
            pg_insert(PaymentSettlement)
            .values(
                session_id=session_id,
                user_id=user_id,
                ledger_entry_id=ledger_entry_id,
                credits=credits,
                balance_after=balance_after,
                created_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=[PaymentSettlement.session_id])
            .returning(PaymentSettlement.session_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _find_settlement(self, session_id: str) -> PaymentSettlement | None:
        """Find settlement record by session id."""
        stmt = select(PaymentSettlement).where(PaymentSettlement.session_id == session_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
