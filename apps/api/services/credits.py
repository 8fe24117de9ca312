"""Credit ledger: append-only transaction log plus a denormalized balance row."""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignore_conflict
from models.credit_account import CreditAccount
from models.credit_transaction import TRANSACTION_SOURCES, CreditTransaction
from services.errors import InsufficientFundsError, PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HISTORY_PAGE_SIZE = 100


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    transaction_id: str
    replayed: bool = False


def _normalize_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amount must be a whole number of credits, got {amount!r}")
    value = int(amount)
    if value <= 0:
        raise ValueError("Amount must be positive")
    return value


def _require_reference(reference_id: Optional[str]) -> str:
    cleaned = (reference_id or "").strip()
    if not cleaned:
        raise ValueError("reference_id is required for ledger writes")
    return cleaned


async def _load_account(user_id: str, db: AsyncSession) -> Optional[CreditAccount]:
    result = await db.execute(
        select(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _find_by_reference(reference_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.reference_id == reference_id))
    return result.scalar_one_or_none()


def _replayed(existing: CreditTransaction, user_id: str) -> LedgerResult:
    if existing.user_id != user_id:
        raise ValueError(f"reference_id {existing.reference_id} already belongs to another account")
    logger.info("Ledger replay for reference %s; returning recorded balance", existing.reference_id)
    return LedgerResult(new_balance=int(existing.balance_after), transaction_id=existing.id, replayed=True)


async def get_or_create_credit_account(user_id: str, db: AsyncSession) -> CreditAccount:
    """Return the user's account, inserting a zero-balance row on first access."""
    account = await _load_account(user_id, db)
    if account:
        return account

    try:
        await insert_ignore_conflict(
            db,
            CreditAccount,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "balance": 0,
                "frozen_balance": 0,
                "total_earned": 0,
                "total_spent": 0,
            },
            conflict_columns=["user_id"],
        )
        await db.commit()
        account = await _load_account(user_id, db)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not load credit account for user {user_id}") from exc

    if account is None:
        raise PersistenceError(f"Credit account for user {user_id} vanished after creation")
    return account


async def _write_entry(
    user_id: str,
    db: AsyncSession,
    *,
    transaction_type: str,
    amount: int,
    source: str,
    description: Optional[str],
    reference_id: Optional[str],
    metadata: Optional[Dict[str, Any]],
    changes: Dict[str, Any],
    guard: List[Any],
    shortfall: Callable[[CreditAccount, int], Exception],
) -> LedgerResult:
    """
    Apply one balance change and its transaction row in a single database transaction.

    The balance update is a guarded ``UPDATE ... RETURNING`` so concurrent
    writers serialize on the account row and the floor is checked against the
    latest committed balance. The transaction row is inserted with
    ``ON CONFLICT DO NOTHING`` on ``reference_id``; losing that race rolls the
    balance change back and replays the winner's result.
    """
    debit = _normalize_amount(amount)
    reference = _require_reference(reference_id)
    if source not in TRANSACTION_SOURCES:
        raise ValueError(f"Unknown credit source: {source}")

    existing = await _find_by_reference(reference, db)
    if existing is not None:
        return _replayed(existing, user_id)

    await get_or_create_credit_account(user_id, db)

    try:
        result = await db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, *guard)
            .values(**changes)
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            await db.rollback()
            account = await get_or_create_credit_account(user_id, db)
            raise shortfall(account, debit)

        transaction_id = await insert_ignore_conflict(
            db,
            CreditTransaction,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "transaction_type": transaction_type,
                "amount": debit,
                "balance_after": int(new_balance),
                "source": source,
                "description": description,
                "reference_id": reference,
                "metadata_json": metadata or None,
                # Stamped after the row lock is held so created_at order matches balance order.
                "created_at": datetime.now(timezone.utc),
            },
            conflict_columns=["reference_id"],
        )
        if transaction_id is None:
            await db.rollback()
            existing = await _find_by_reference(reference, db)
            if existing is None:
                raise PersistenceError(f"Reference {reference} conflicted but no transaction was found")
            return _replayed(existing, user_id)

        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Ledger write for reference {reference} failed") from exc

    logger.info(
        "Ledger %s of %d credits for user %s (%s, ref=%s) -> balance %d",
        transaction_type,
        debit,
        user_id,
        source,
        reference,
        new_balance,
    )
    return LedgerResult(new_balance=int(new_balance), transaction_id=transaction_id)


def _insufficient_available(account: CreditAccount, amount: int) -> Exception:
    return InsufficientFundsError(account.user_id, amount, account.available_balance)


def _insufficient_frozen(account: CreditAccount, amount: int) -> Exception:
    return InsufficientFundsError(account.user_id, amount, int(account.frozen_balance or 0))


async def earn_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source: str,
    description: Optional[str],
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Credit the account. Replaying a reference id returns the recorded balance."""
    value = _normalize_amount(amount)
    return await _write_entry(
        user_id,
        db,
        transaction_type="earn",
        amount=value,
        source=source,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
        changes={
            "balance": CreditAccount.balance + value,
            "total_earned": CreditAccount.total_earned + value,
        },
        guard=[],
        shortfall=_insufficient_available,
    )


async def spend_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source: str,
    description: Optional[str],
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    from_frozen: bool = False,
) -> LedgerResult:
    """
    Debit the account.

    By default the debit must fit in the available balance. With
    ``from_frozen`` the amount is taken out of a previous hold instead, so
    ``balance`` and ``frozen_balance`` drop together.
    """
    value = _normalize_amount(amount)
    changes: Dict[str, Any] = {
        "balance": CreditAccount.balance - value,
        "total_spent": CreditAccount.total_spent + value,
    }
    if from_frozen:
        changes["frozen_balance"] = CreditAccount.frozen_balance - value
        guard = [CreditAccount.frozen_balance >= value]
        shortfall = _insufficient_frozen
    else:
        guard = [CreditAccount.balance - CreditAccount.frozen_balance >= value]
        shortfall = _insufficient_available

    return await _write_entry(
        user_id,
        db,
        transaction_type="spend",
        amount=value,
        source=source,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
        changes=changes,
        guard=guard,
        shortfall=shortfall,
    )


async def freeze_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source: str,
    description: Optional[str],
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Reserve part of the available balance. Totals are untouched."""
    value = _normalize_amount(amount)
    return await _write_entry(
        user_id,
        db,
        transaction_type="freeze",
        amount=value,
        source=source,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
        changes={"frozen_balance": CreditAccount.frozen_balance + value},
        guard=[CreditAccount.balance - CreditAccount.frozen_balance >= value],
        shortfall=_insufficient_available,
    )


async def unfreeze_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source: str,
    description: Optional[str],
    reference_id: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Return a hold to the available balance."""
    value = _normalize_amount(amount)
    return await _write_entry(
        user_id,
        db,
        transaction_type="unfreeze",
        amount=value,
        source=source,
        description=description,
        reference_id=reference_id,
        metadata=metadata,
        changes={"frozen_balance": CreditAccount.frozen_balance - value},
        guard=[CreditAccount.frozen_balance >= value],
        shortfall=_insufficient_frozen,
    )


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    """Spendable credits (balance minus holds)."""
    account = await get_or_create_credit_account(user_id, db)
    return account.available_balance


async def has_enough_credits(user_id: str, db: AsyncSession, amount: int) -> bool:
    return await get_credit_balance(user_id, db) >= max(int(amount), 0)


async def get_transaction_history(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[CreditTransaction]:
    """Most-recent-first page of the user's transactions."""
    page_size = max(1, min(int(limit), MAX_HISTORY_PAGE_SIZE))
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(page_size)
        .offset(max(int(offset), 0))
    )
    return list(result.scalars().all())


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.transaction_type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "source": entry.source,
        "description": entry.description,
        "reference_id": entry.reference_id,
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    account = await get_or_create_credit_account(user_id, db)
    return {
        "balance": int(account.balance),
        "frozen_balance": int(account.frozen_balance),
        "available_balance": account.available_balance,
        "total_earned": int(account.total_earned),
        "total_spent": int(account.total_spent),
        "costs": {
            "image": {model: max(int(cost), 0) for model, cost in settings.IMAGE_MODEL_COSTS.items()},
            "video": {model: max(int(cost), 0) for model, cost in settings.VIDEO_MODEL_COSTS.items()},
        },
    }


async def retry_ledger_call(call: Callable[[], Awaitable[T]], *, attempts: Optional[int] = None) -> T:
    """Run an idempotent ledger call, retrying PersistenceError with jittered backoff."""
    max_attempts = max(int(attempts or settings.LEDGER_MAX_RETRIES), 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except PersistenceError as exc:
            if attempt >= max_attempts:
                raise
            delay = random.uniform(0.1, 0.5) * attempt
            logger.warning(
                "Ledger call failed (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise PersistenceError("Ledger retry loop exited without a result")
