"""Generation orchestration around the lock manager and the credit ledger.

Each billable request runs the same protocol:

1. take the (user, asset type) lock, or fail fast with ``LockHeldError``;
2. freeze the model cost under ``hold_<asset>_<request>``;
3. create the provider task, attach its id to the lock and poll it;
4. on success spend the hold under ``generation_<asset>_<task>``, on any
   failure unfreeze it under ``refund_<asset>_<request>``;
5. release the lock, whatever happened above.

A successful generation also pays the user's referrer, if one is pending.

Every step opens its own short session so a provider poll never holds a
database transaction open.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import update
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from models.generated_asset import GeneratedAsset
from models.generation_lock import ASSET_TYPES, GenerationLock
from services.credits import (
    freeze_credits,
    retry_ledger_call,
    spend_credits,
    unfreeze_credits,
)
from services.errors import (
    GenerationFailedError,
    InsufficientFundsError,
    LockHeldError,
    PersistenceError,
)
from services.generation_lock import (
    acquire_generation_lock,
    release_generation_lock,
    update_generation_lock,
)
from services.generation_provider import (
    GenerationProviderClient,
    GenerationProviderError,
    ProviderTaskStatus,
    get_generation_provider,
)
from services.referrals import reward_referrer

logger = logging.getLogger(__name__)

GENERATION_SOURCE = "api_call"


@dataclass(frozen=True)
class GenerationOutcome:
    asset_id: str
    request_id: str
    task_id: str
    result_url: str
    credits_spent: int
    new_balance: int


def hold_reference(asset_type: str, request_id: str) -> str:
    return f"hold_{asset_type}_{request_id}"


def refund_reference(asset_type: str, request_id: str) -> str:
    return f"refund_{asset_type}_{request_id}"


def charge_reference(asset_type: str, task_id: str) -> str:
    return f"generation_{asset_type}_{task_id}"


def get_generation_cost(asset_type: str, model: str) -> int:
    """Credits charged for one generation with ``model``."""
    if asset_type not in ASSET_TYPES:
        raise ValueError(f"asset_type must be one of {', '.join(ASSET_TYPES)}")
    table = settings.IMAGE_MODEL_COSTS if asset_type == "image" else settings.VIDEO_MODEL_COSTS
    if model not in table:
        raise ValueError(f"Unsupported {asset_type} model: {model}")
    return max(int(table[model]), 1)


def _ledger_call(call: Callable[..., Awaitable[Any]], user_id: str, **kwargs: Any) -> Callable[[], Awaitable[Any]]:
    async def _attempt():
        async with async_session_maker() as db:
            return await call(user_id, db, **kwargs)

    return _attempt


async def _ledger_entry_exists(reference_id: str) -> bool:
    async with async_session_maker() as db:
        result = await db.execute(select(CreditTransaction.id).where(CreditTransaction.reference_id == reference_id))
        return result.scalar_one_or_none() is not None


async def _update_asset(asset_id: str, **values: Any) -> None:
    values.setdefault("updated_at", datetime.now(timezone.utc))
    async with async_session_maker() as db:
        await db.execute(
            update(GeneratedAsset)
            .where(GeneratedAsset.id == asset_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def _create_asset(
    user_id: str,
    *,
    asset_type: str,
    model: str,
    prompt: str,
    request_id: str,
    metadata: Optional[Dict[str, Any]],
) -> str:
    async with async_session_maker() as db:
        existing = await db.execute(select(GeneratedAsset.id).where(GeneratedAsset.request_id == request_id))
        if existing.scalar_one_or_none():
            raise ValueError(f"request_id {request_id} was already used")
        asset = GeneratedAsset(
            user_id=user_id,
            asset_type=asset_type,
            model=model,
            prompt=prompt,
            status="processing",
            request_id=request_id,
            credits_spent=0,
            hold_reference_id=hold_reference(asset_type, request_id),
            metadata_json=metadata or None,
            created_at=datetime.now(timezone.utc),
        )
        db.add(asset)
        await db.commit()
        return asset.id


async def _wait_for_task(provider: GenerationProviderClient, task_id: str) -> ProviderTaskStatus:
    interval = max(float(settings.GENERATION_POLL_INTERVAL_SECONDS), 0.0)
    timeout = max(float(settings.GENERATION_POLL_TIMEOUT_SECONDS), 0.0)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        status = await provider.get_task_status(task_id)
        if status.is_success or status.is_failure:
            return status
        if loop.time() >= deadline:
            raise GenerationProviderError(f"Task {task_id} did not finish within {int(timeout)}s")
        await asyncio.sleep(interval)


async def _refund_hold(user_id: str, *, asset_type: str, request_id: str, cost: int, reason: str) -> None:
    await retry_ledger_call(
        _ledger_call(
            unfreeze_credits,
            user_id,
            amount=cost,
            source=GENERATION_SOURCE,
            description=f"Refund {asset_type} generation hold",
            reference_id=refund_reference(asset_type, request_id),
            metadata={"request_id": request_id, "reason": reason[:500]},
        )
    )


async def _generate_under_lock(
    user_id: str,
    *,
    lock_id: str,
    asset_type: str,
    model: str,
    prompt: str,
    request_id: str,
    cost: int,
    provider: GenerationProviderClient,
    aspect_ratio: Optional[str],
    image_url: Optional[str],
) -> GenerationOutcome:
    asset_id = await _create_asset(
        user_id,
        asset_type=asset_type,
        model=model,
        prompt=prompt,
        request_id=request_id,
        metadata={"aspect_ratio": aspect_ratio, "image_url": image_url},
    )

    try:
        await retry_ledger_call(
            _ledger_call(
                freeze_credits,
                user_id,
                amount=cost,
                source=GENERATION_SOURCE,
                description=f"Hold for {asset_type} generation ({model})",
                reference_id=hold_reference(asset_type, request_id),
                metadata={"request_id": request_id, "asset_id": asset_id, "model": model},
            )
        )
    except Exception as exc:
        await _update_asset(
            asset_id,
            status="failed",
            error_message=str(exc)[:500],
            completed_at=datetime.now(timezone.utc),
        )
        raise

    task_id: Optional[str] = None
    try:
        task_id = await provider.create_task(
            asset_type=asset_type,
            model=model,
            prompt=prompt,
            aspect_ratio=aspect_ratio,
            image_url=image_url,
        )
        async with async_session_maker() as db:
            await update_generation_lock(
                lock_id,
                db,
                task_id=task_id,
                extend_ms=int(settings.GENERATION_LOCK_TTL_MS),
            )
        await _update_asset(asset_id, task_id=task_id)

        status = await _wait_for_task(provider, task_id)
        if not status.is_success:
            raise GenerationProviderError(status.error or f"Task {task_id} ended in state {status.state}")
        if not status.result_url:
            raise GenerationProviderError(f"Task {task_id} succeeded without a result url")
        await _update_asset(asset_id, result_url=status.result_url)
    except Exception as exc:
        reason = str(exc) or exc.__class__.__name__
        logger.warning("%s generation %s for user %s failed: %s", asset_type, request_id, user_id, reason)
        await _refund_hold(user_id, asset_type=asset_type, request_id=request_id, cost=cost, reason=reason)
        await _update_asset(
            asset_id,
            status="failed",
            error_message=reason[:500],
            completed_at=datetime.now(timezone.utc),
        )
        if isinstance(exc, GenerationProviderError):
            raise GenerationFailedError(asset_id, reason) from exc
        raise

    # The frozen pool is shared across requests; once this request's hold was
    # returned, only the available balance may pay for it.
    hold_returned = await _ledger_entry_exists(refund_reference(asset_type, request_id))
    if hold_returned:
        logger.warning("Hold for %s generation %s was already returned; charging available balance", asset_type, request_id)
    try:
        charge = await retry_ledger_call(
            _ledger_call(
                spend_credits,
                user_id,
                amount=cost,
                source=GENERATION_SOURCE,
                description=f"{asset_type.capitalize()} generation ({model})",
                reference_id=charge_reference(asset_type, task_id),
                metadata={"request_id": request_id, "asset_id": asset_id, "task_id": task_id, "model": model},
                from_frozen=not hold_returned,
            )
        )
    except InsufficientFundsError as exc:
        await _update_asset(
            asset_id,
            status="failed",
            error_message=str(exc)[:500],
            completed_at=datetime.now(timezone.utc),
        )
        raise
    await _update_asset(
        asset_id,
        status="completed",
        credits_spent=cost,
        completed_at=datetime.now(timezone.utc),
    )
    async with async_session_maker() as db:
        await reward_referrer(user_id, db, trigger="first_generation")
    logger.info(
        "%s generation %s for user %s completed (task %s, %d credits)",
        asset_type,
        request_id,
        user_id,
        task_id,
        cost,
    )
    return GenerationOutcome(
        asset_id=asset_id,
        request_id=request_id,
        task_id=task_id,
        result_url=status.result_url,
        credits_spent=cost,
        new_balance=charge.new_balance,
    )


async def run_generation(
    user_id: str,
    *,
    asset_type: str,
    model: str,
    prompt: str,
    request_id: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    image_url: Optional[str] = None,
    provider: Optional[GenerationProviderClient] = None,
) -> GenerationOutcome:
    """
    Run one billable generation for ``user_id``.

    Raises ``LockHeldError`` when another generation of the same asset type is
    in flight, ``InsufficientFundsError`` when the cost cannot be held, and
    ``GenerationFailedError`` when the provider fails (the hold is returned).
    """
    cost = get_generation_cost(asset_type, model)
    request_id = (request_id or "").strip() or str(uuid.uuid4())
    provider = provider or get_generation_provider()

    async with async_session_maker() as db:
        acquired = await acquire_generation_lock(
            user_id,
            db,
            asset_type=asset_type,
            request_id=request_id,
            metadata={"model": model, "cost": cost},
        )
    if not acquired.acquired:
        raise LockHeldError(user_id, asset_type, acquired.existing_lock)

    try:
        return await _generate_under_lock(
            user_id,
            lock_id=acquired.lock_id,
            asset_type=asset_type,
            model=model,
            prompt=prompt,
            request_id=request_id,
            cost=cost,
            provider=provider,
            aspect_ratio=aspect_ratio,
            image_url=image_url,
        )
    finally:
        try:
            async with async_session_maker() as db:
                await release_generation_lock(acquired.lock_id, db)
        except PersistenceError:
            # Expiry reclaims the row on the next acquire.
            logger.exception("Could not release generation lock %s for user %s", acquired.lock_id, user_id)


async def get_generated_asset(asset_id: str, user_id: str) -> Optional[GeneratedAsset]:
    async with async_session_maker() as db:
        result = await db.execute(
            select(GeneratedAsset).where(GeneratedAsset.id == asset_id, GeneratedAsset.user_id == user_id)
        )
        return result.scalar_one_or_none()


def serialize_asset(asset: GeneratedAsset) -> Dict[str, Any]:
    return {
        "id": asset.id,
        "asset_type": asset.asset_type,
        "model": asset.model,
        "prompt": asset.prompt,
        "status": asset.status,
        "request_id": asset.request_id,
        "task_id": asset.task_id,
        "result_url": asset.result_url,
        "credits_spent": int(asset.credits_spent or 0),
        "error_message": asset.error_message,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
        "completed_at": asset.completed_at.isoformat() if asset.completed_at else None,
    }


async def _holds_live_lock(asset: GeneratedAsset, db) -> bool:
    result = await db.execute(
        select(GenerationLock.id).where(
            GenerationLock.user_id == asset.user_id,
            GenerationLock.asset_type == asset.asset_type,
            GenerationLock.request_id == asset.request_id,
            GenerationLock.expires_at > datetime.now(timezone.utc),
        )
    )
    return result.scalar_one_or_none() is not None


async def recover_stalled_generations(max_age_ms: Optional[int] = None) -> int:
    """
    Fail assets stuck in ``processing`` past the lock TTL and return their holds.

    An asset whose request still owns a live lock is running and is left alone.
    """
    ttl_ms = int(settings.GENERATION_LOCK_TTL_MS)
    age_ms = int(max_age_ms if max_age_ms is not None else ttl_ms)
    if age_ms < ttl_ms:
        raise ValueError(f"max_age_ms must be at least the lock TTL ({ttl_ms} ms)")
    cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=age_ms)
    async with async_session_maker() as db:
        result = await db.execute(
            select(GeneratedAsset).where(
                GeneratedAsset.status == "processing",
                GeneratedAsset.created_at < cutoff,
            )
        )
        stalled = list(result.scalars().all())

    recovered = 0
    for asset in stalled:
        async with async_session_maker() as db:
            if await _holds_live_lock(asset, db):
                logger.info("Asset %s is still generating under its lock; skipping", asset.id)
                continue
            hold = await db.execute(
                select(CreditTransaction.amount).where(CreditTransaction.reference_id == asset.hold_reference_id)
            )
            held_amount = hold.scalar_one_or_none()
            charged = None
            if asset.task_id:
                charge = await db.execute(
                    select(CreditTransaction.amount).where(
                        CreditTransaction.reference_id == charge_reference(asset.asset_type, asset.task_id)
                    )
                )
                charged = charge.scalar_one_or_none()

        if charged:
            # Charged but never marked complete; the hold is already spent.
            await _update_asset(
                asset.id,
                status="completed",
                credits_spent=int(charged),
                completed_at=datetime.now(timezone.utc),
            )
            recovered += 1
            continue

        if held_amount:
            try:
                await _refund_hold(
                    asset.user_id,
                    asset_type=asset.asset_type,
                    request_id=asset.request_id,
                    cost=int(held_amount),
                    reason="generation interrupted",
                )
            except InsufficientFundsError as exc:
                logger.warning("Skipping refund for stalled asset %s: %s", asset.id, exc)
        await _update_asset(
            asset.id,
            status="failed",
            error_message="Generation was interrupted. No credits were charged.",
            completed_at=datetime.now(timezone.utc),
        )
        recovered += 1
    if recovered:
        logger.info("Recovered %d stalled generations", recovered)
    return recovered
