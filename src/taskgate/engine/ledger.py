"""Credit ledger and admission control."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskgate.db.repositories import LedgerRepository
from taskgate.engine.errors import (
    InsufficientCredit,
    ReservationNotFound,
    TaskGateSystemError,
    ValidationError,
)
from taskgate.engine.locks import KeyedLock
from taskgate.models import AccountCredits, CreditLedgerEntry, LedgerEntryKind
from taskgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


class CreditLedger:
    """Append-only credit ledger.

    Every task holds exactly one reservation from creation until it is either
    debited (completed) or refunded (failed or canceled). Reservations are
    linearized per account with an in-process lock that callers hold until
    their transaction commits. Debits and refunds take no account lock;
    availability is read as balance and held from one statement, so a
    concurrent settlement is seen either completely or not at all.

    The ``*_in`` variants run inside a caller-owned session so the ledger
    write commits atomically with the task's status change.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._account_locks = KeyedLock()

    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        """Serialize reservations for one account.

        Acquire before opening the transaction that calls reserve_in and
        release only after it commits.
        """
        async with self._account_locks.hold(account_id):
            yield

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Ledger store error: %s", exc)
            raise TaskGateSystemError("Credit ledger unavailable") from exc

    # =========================================================================
    # Session-scoped operations
    # =========================================================================

    async def reserve_in(
        self,
        session: AsyncSession,
        account_id: str,
        amount: int,
        reference_task_id: UUID,
    ) -> CreditLedgerEntry:
        """Hold amount credits for a task. Caller must hold account_lock."""
        if amount <= 0:
            raise ValidationError("Reservation amount must be positive", field="amount")

        ledger = LedgerRepository(session)
        existing = await ledger.entries_for_reference(reference_task_id)
        if LedgerEntryKind.RESERVE in existing:
            raise ValidationError(
                f"Task {reference_task_id} already holds a reservation",
                code="DUPLICATE_RESERVATION",
            )

        balance, held = await ledger.totals(account_id)
        available = balance - held
        if available < amount:
            metrics.inc_counter("ledger.reserve.rejected")
            raise InsufficientCredit(account_id, amount, available)

        entry = await ledger.append(
            account_id,
            LedgerEntryKind.RESERVE,
            amount=amount,
            delta=0,
            reference_task_id=reference_task_id,
        )
        metrics.inc_counter("ledger.reserve")
        return entry

    async def debit_in(
        self,
        session: AsyncSession,
        account_id: str,
        amount: int,
        reference_task_id: UUID,
    ) -> CreditLedgerEntry | None:
        """Convert a reservation into a charge.

        Returns the debit entry, or None when the reservation was already
        settled by an earlier debit or refund.
        """
        ledger = LedgerRepository(session)
        existing = await ledger.entries_for_reference(reference_task_id)
        reservation = existing.get(LedgerEntryKind.RESERVE)
        if reservation is None or reservation.account_id != account_id:
            raise ReservationNotFound(account_id, str(reference_task_id))
        if LedgerEntryKind.DEBIT in existing:
            return existing[LedgerEntryKind.DEBIT]
        if LedgerEntryKind.REFUND in existing:
            return None
        if amount <= 0 or amount > reservation.amount:
            raise ValidationError(
                f"Debit of {amount} does not fit reservation of {reservation.amount}",
                field="amount",
            )

        entry = await ledger.append(
            account_id,
            LedgerEntryKind.DEBIT,
            amount=amount,
            delta=-amount,
            reference_task_id=reference_task_id,
        )
        metrics.inc_counter("ledger.debit")
        return entry

    async def refund_in(
        self,
        session: AsyncSession,
        account_id: str,
        amount: int,
        reference_task_id: UUID,
    ) -> CreditLedgerEntry | None:
        """Release a reservation without charging.

        Returns None when the reservation was already settled.
        """
        ledger = LedgerRepository(session)
        existing = await ledger.entries_for_reference(reference_task_id)
        reservation = existing.get(LedgerEntryKind.RESERVE)
        if reservation is None or reservation.account_id != account_id:
            raise ReservationNotFound(account_id, str(reference_task_id))
        if LedgerEntryKind.REFUND in existing:
            return existing[LedgerEntryKind.REFUND]
        if LedgerEntryKind.DEBIT in existing:
            return None

        entry = await ledger.append(
            account_id,
            LedgerEntryKind.REFUND,
            amount=min(amount, reservation.amount) if amount > 0 else reservation.amount,
            delta=0,
            reference_task_id=reference_task_id,
        )
        metrics.inc_counter("ledger.refund")
        return entry

    # =========================================================================
    # Standalone operations
    # =========================================================================

    async def reserve(self, account_id: str, amount: int, reference_task_id: UUID) -> UUID:
        """Reserve credits in their own transaction; returns the entry id."""
        async with self.account_lock(account_id):
            async with self._unit_of_work() as session:
                entry = await self.reserve_in(session, account_id, amount, reference_task_id)
        return entry.entry_id

    async def debit(
        self, account_id: str, amount: int, reference_task_id: UUID
    ) -> CreditLedgerEntry | None:
        async with self._unit_of_work() as session:
            return await self.debit_in(session, account_id, amount, reference_task_id)

    async def refund(
        self, account_id: str, amount: int, reference_task_id: UUID
    ) -> CreditLedgerEntry | None:
        async with self._unit_of_work() as session:
            return await self.refund_in(session, account_id, amount, reference_task_id)

    async def topup(self, account_id: str, amount: int, note: str | None = None) -> CreditLedgerEntry:
        """Grant credits to an account."""
        if amount <= 0:
            raise ValidationError("Top-up amount must be positive", field="amount")
        async with self._unit_of_work() as session:
            entry = await LedgerRepository(session).append(
                account_id,
                LedgerEntryKind.TOPUP,
                amount=amount,
                delta=amount,
                note=note,
            )
        metrics.inc_counter("ledger.topup")
        logger.info("Account %s topped up by %d", account_id, amount)
        return entry

    # =========================================================================
    # Reads
    # =========================================================================

    async def balance(self, account_id: str) -> int:
        async with self._unit_of_work() as session:
            return await LedgerRepository(session).balance(account_id)

    async def held(self, account_id: str) -> int:
        async with self._unit_of_work() as session:
            return await LedgerRepository(session).held(account_id)

    async def available(self, account_id: str) -> int:
        credits = await self.credits(account_id)
        return credits.available

    async def credits(self, account_id: str) -> AccountCredits:
        """Balance, held and available from one statement."""
        async with self._unit_of_work() as session:
            balance, held = await LedgerRepository(session).totals(account_id)
        return AccountCredits(
            account_id=account_id,
            balance=balance,
            held=held,
            available=balance - held,
        )

    async def entries(self, account_id: str, limit: int | None = None) -> list[CreditLedgerEntry]:
        async with self._unit_of_work() as session:
            return await LedgerRepository(session).list(account_id, limit=limit)
