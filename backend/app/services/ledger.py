"""Credit ledger: append-only transaction log with a projected balance.

The balance column on `users` is only ever moved in the same storage
transaction as the insert of the matching `credit_transactions` row, so
SUM(amount) per user equals `credit_balance` at every commit.

Debits use a conditional decrement (`... WHERE credit_balance >= n`) so two
concurrent spends can never overdraw. Duplicate protection is layered: a
lookup short-circuits the common replay, and the unique constraints on
`external_ref` and (`generation_id`, `type`) reject the racing loser.

The `*_in` helpers take an open session and raise; other services use them
to fold ledger writes into their own transaction. The public methods open
their own transaction and return a Result.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import SessionFactory
from app.errors import InsufficientCreditsError, NotFoundError, ValidationError, returns_result
from app.models.contracts import CreditTransaction, LedgerReceipt, TransactionType
from app.models.db import CreditTransactionRow, User

logger = structlog.get_logger()

MAX_HISTORY = 100


async def _balance_of(session: AsyncSession, user_id: str) -> int | None:
    return await session.scalar(select(User.credit_balance).where(User.id == user_id))


async def _find_existing(
    session: AsyncSession,
    *,
    external_ref: str | None,
    generation_id: uuid.UUID | None,
    tx_type: str,
) -> CreditTransactionRow | None:
    if external_ref is not None:
        row = await session.scalar(
            select(CreditTransactionRow).where(CreditTransactionRow.external_ref == external_ref)
        )
        if row is not None:
            return row
    if generation_id is not None:
        return await session.scalar(
            select(CreditTransactionRow).where(
                CreditTransactionRow.generation_id == generation_id,
                CreditTransactionRow.type == tx_type,
            )
        )
    return None


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")


async def debit_in(
    session: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    *,
    generation_id: uuid.UUID | None = None,
    tx_type: TransactionType = "generation",
) -> LedgerReceipt:
    """Spend credits inside the caller's transaction.

    Raises InsufficientCreditsError (nothing written) when the balance is too
    low, NotFoundError for an unknown user.
    """
    _check_amount(amount)
    existing = await _find_existing(
        session, external_ref=None, generation_id=generation_id, tx_type=tx_type
    )
    if existing is not None:
        balance = await _balance_of(session, user_id)
        return LedgerReceipt(balance=balance or 0, transaction_id=existing.id, duplicate=True)

    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.credit_balance >= amount)
        .values(credit_balance=User.credit_balance - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = await _balance_of(session, user_id)
        if current is None:
            raise NotFoundError(f"User {user_id} not found")
        raise InsufficientCreditsError(current=current, required=amount)

    row = CreditTransactionRow(
        id=uuid.uuid4(),
        user_id=user_id,
        amount=-amount,
        type=tx_type,
        description=reason,
        generation_id=generation_id,
    )
    session.add(row)
    await session.flush()
    balance = await _balance_of(session, user_id)
    logger.info(
        "credits_debited",
        user_id=user_id,
        amount=amount,
        tx_type=tx_type,
        generation_id=str(generation_id) if generation_id else None,
        balance=balance,
    )
    return LedgerReceipt(balance=balance or 0, transaction_id=row.id)


async def credit_in(
    session: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    *,
    tx_type: TransactionType = "purchase",
    external_ref: str | None = None,
    generation_id: uuid.UUID | None = None,
) -> LedgerReceipt:
    """Add credits inside the caller's transaction.

    A replay of an already applied `external_ref` (or `generation_id` + type)
    is a no-op reported with `duplicate=True`.
    """
    _check_amount(amount)
    existing = await _find_existing(
        session, external_ref=external_ref, generation_id=generation_id, tx_type=tx_type
    )
    if existing is not None:
        balance = await _balance_of(session, user_id)
        logger.info(
            "credits_duplicate_ignored",
            user_id=user_id,
            tx_type=tx_type,
            external_ref=external_ref,
        )
        return LedgerReceipt(balance=balance or 0, transaction_id=existing.id, duplicate=True)

    result = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(credit_balance=User.credit_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"User {user_id} not found")

    row = CreditTransactionRow(
        id=uuid.uuid4(),
        user_id=user_id,
        amount=amount,
        type=tx_type,
        description=reason,
        external_ref=external_ref,
        generation_id=generation_id,
    )
    session.add(row)
    await session.flush()
    balance = await _balance_of(session, user_id)
    logger.info(
        "credits_added",
        user_id=user_id,
        amount=amount,
        tx_type=tx_type,
        external_ref=external_ref,
        balance=balance,
    )
    return LedgerReceipt(balance=balance or 0, transaction_id=row.id)


async def refund_generation_in(
    session: AsyncSession, generation_id: uuid.UUID
) -> LedgerReceipt | None:
    """Refund the generation debit recorded for `generation_id`, once.

    Returns None when nothing was charged for this generation.
    """
    debit = await session.scalar(
        select(CreditTransactionRow).where(
            CreditTransactionRow.generation_id == generation_id,
            CreditTransactionRow.type == "generation",
        )
    )
    if debit is None:
        logger.warning("refund_without_debit", generation_id=str(generation_id))
        return None
    return await credit_in(
        session,
        debit.user_id,
        -debit.amount,
        f"Refund for failed generation {generation_id}",
        tx_type="refund",
        generation_id=generation_id,
    )


class CreditLedger:
    """Result-returning facade over the ledger helpers."""

    def __init__(self, sessions: SessionFactory, *, signup_bonus: int | None = None) -> None:
        self._sessions = sessions
        self._signup_bonus = (
            settings.signup_bonus_credits if signup_bonus is None else signup_bonus
        )

    @returns_result
    async def get_balance(self, user_id: str) -> int:
        async with self._sessions() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(CreditTransactionRow.amount), 0)).where(
                    CreditTransactionRow.user_id == user_id
                )
            )
        return int(total or 0)

    @returns_result
    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        generation_id: uuid.UUID | None = None,
        tx_type: TransactionType = "generation",
    ) -> LedgerReceipt:
        try:
            async with self._sessions.begin() as session:
                return await debit_in(
                    session, user_id, amount, reason, generation_id=generation_id, tx_type=tx_type
                )
        except IntegrityError:
            # Lost a race against a debit for the same generation
            logger.info(
                "debit_duplicate_race",
                user_id=user_id,
                generation_id=str(generation_id) if generation_id else None,
            )
            async with self._sessions() as session:
                balance = await _balance_of(session, user_id)
            return LedgerReceipt(balance=balance or 0, duplicate=True)

    @returns_result
    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        tx_type: TransactionType = "purchase",
        external_ref: str | None = None,
        generation_id: uuid.UUID | None = None,
    ) -> LedgerReceipt:
        try:
            async with self._sessions.begin() as session:
                return await credit_in(
                    session,
                    user_id,
                    amount,
                    reason,
                    tx_type=tx_type,
                    external_ref=external_ref,
                    generation_id=generation_id,
                )
        except IntegrityError:
            # Lost a race against an identical credit; the winner's row stands
            logger.info("credits_duplicate_race", user_id=user_id, external_ref=external_ref)
            async with self._sessions() as session:
                balance = await _balance_of(session, user_id)
            return LedgerReceipt(balance=balance or 0, duplicate=True)

    @returns_result
    async def get_history(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        limit = max(1, min(limit, MAX_HISTORY))
        async with self._sessions() as session:
            rows = await session.scalars(
                select(CreditTransactionRow)
                .where(CreditTransactionRow.user_id == user_id)
                .order_by(CreditTransactionRow.created_at.desc())
                .limit(limit)
            )
            return [CreditTransaction.model_validate(row) for row in rows]

    @returns_result
    async def open_account(self, user_id: str, email: str) -> LedgerReceipt:
        """Create the user on first sight and grant the signup bonus once."""
        async with self._sessions() as session:
            balance = await _balance_of(session, user_id)
        if balance is not None:
            return LedgerReceipt(balance=balance, duplicate=True)

        try:
            async with self._sessions.begin() as session:
                session.add(User(id=user_id, email=email, credit_balance=0))
                await session.flush()
                receipt = LedgerReceipt(balance=0)
                if self._signup_bonus > 0:
                    receipt = await credit_in(
                        session,
                        user_id,
                        self._signup_bonus,
                        "Welcome bonus",
                        tx_type="bonus",
                        external_ref=f"signup:{user_id}",
                    )
        except IntegrityError:
            async with self._sessions() as session:
                balance = await _balance_of(session, user_id)
            return LedgerReceipt(balance=balance or 0, duplicate=True)
        logger.info("account_opened", user_id=user_id, balance=receipt.balance)
        return receipt

    @returns_result
    async def refund_generation(self, generation_id: uuid.UUID) -> LedgerReceipt | None:
        try:
            async with self._sessions.begin() as session:
                return await refund_generation_in(session, generation_id)
        except IntegrityError:
            logger.info("refund_duplicate_race", generation_id=str(generation_id))
            return None
