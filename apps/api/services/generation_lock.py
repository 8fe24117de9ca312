"""Per-user generation lock backed by a unique (user_id, asset_type) row."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignore_conflict
from models.generation_lock import ASSET_TYPES, GenerationLock
from services.errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_MS = 15 * 60 * 1000
# One stale-lock reclaim per call; a second conflict means a live holder won the race.
MAX_ACQUIRE_ATTEMPTS = 2


@dataclass(frozen=True)
class GenerationLockInfo:
    id: str
    asset_type: str
    request_id: Optional[str]
    task_id: Optional[str]
    expires_at: datetime
    created_at: Optional[datetime]
    metadata: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    lock_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    existing_lock: Optional[GenerationLockInfo] = None


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lock_info(lock: GenerationLock) -> GenerationLockInfo:
    return GenerationLockInfo(
        id=lock.id,
        asset_type=lock.asset_type,
        request_id=lock.request_id,
        task_id=lock.task_id,
        expires_at=_utc(lock.expires_at),
        created_at=_utc(lock.created_at),
        metadata=lock.metadata_json,
    )


def _validate_asset_type(asset_type: str) -> str:
    if asset_type not in ASSET_TYPES:
        raise ValueError(f"asset_type must be one of {', '.join(ASSET_TYPES)}")
    return asset_type


async def _find_lock(user_id: str, asset_type: str, db: AsyncSession) -> Optional[GenerationLock]:
    result = await db.execute(
        select(GenerationLock)
        .where(GenerationLock.user_id == user_id, GenerationLock.asset_type == asset_type)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def acquire_generation_lock(
    user_id: str,
    db: AsyncSession,
    *,
    asset_type: str,
    request_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ttl_ms: Optional[int] = None,
) -> AcquireResult:
    """
    Try to take the (user, asset type) lock.

    The insert either wins the unique constraint or does nothing. On conflict
    the holder is inspected: an expired holder is deleted and the insert is
    retried once, a live holder is returned so callers can report when to try
    again.
    """
    _validate_asset_type(asset_type)
    ttl = int(ttl_ms if ttl_ms is not None else (settings.GENERATION_LOCK_TTL_MS or DEFAULT_LOCK_TTL_MS))
    holder: Optional[GenerationLock] = None

    try:
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            now = datetime.now(timezone.utc)
            expires_at = now + timedelta(milliseconds=max(ttl, 0))
            lock_id = str(uuid.uuid4())

            inserted = await insert_ignore_conflict(
                db,
                GenerationLock,
                {
                    "id": lock_id,
                    "user_id": user_id,
                    "asset_type": asset_type,
                    "request_id": request_id,
                    "metadata_json": metadata,
                    "expires_at": expires_at,
                    "created_at": now,
                    "updated_at": now,
                },
                conflict_columns=["user_id", "asset_type"],
            )
            await db.commit()
            if inserted:
                return AcquireResult(acquired=True, lock_id=lock_id, expires_at=expires_at)

            holder = await _find_lock(user_id, asset_type, db)
            if holder is None:
                # Released between our insert and read; the next pass can take it.
                continue
            if _utc(holder.expires_at) > now:
                break

            logger.info(
                "Reclaiming expired %s lock %s for user %s (expired %s)",
                asset_type,
                holder.id,
                user_id,
                holder.expires_at,
            )
            await db.execute(delete(GenerationLock).where(GenerationLock.id == holder.id))
            await db.commit()
            holder = None
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not acquire {asset_type} lock for user {user_id}") from exc

    if holder is None:
        holder = await _find_lock(user_id, asset_type, db)
    existing = _lock_info(holder) if holder is not None else None
    logger.info(
        "Generation lock busy for user %s (%s); holder=%s expires_at=%s",
        user_id,
        asset_type,
        existing.id if existing else None,
        existing.expires_at if existing else None,
    )
    return AcquireResult(acquired=False, existing_lock=existing)


async def update_generation_lock(
    lock_id: str,
    db: AsyncSession,
    *,
    task_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    extend_ms: Optional[int] = None,
) -> None:
    """Attach a provider task id, replace metadata, and/or push expiry to now + extend_ms."""
    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {"updated_at": now}
    if task_id:
        values["task_id"] = task_id
    if metadata is not None:
        values["metadata_json"] = metadata
    if extend_ms and extend_ms > 0:
        values["expires_at"] = now + timedelta(milliseconds=int(extend_ms))

    try:
        await db.execute(
            update(GenerationLock)
            .where(GenerationLock.id == lock_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not update generation lock {lock_id}") from exc


async def release_generation_lock(lock_id: str, db: AsyncSession) -> None:
    """Delete the lock row. Unknown or already released ids are a no-op."""
    try:
        await db.execute(
            delete(GenerationLock)
            .where(GenerationLock.id == lock_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not release generation lock {lock_id}") from exc


async def list_active_locks(user_id: str, db: AsyncSession) -> List[GenerationLockInfo]:
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(GenerationLock)
        .where(GenerationLock.user_id == user_id)
        .order_by(GenerationLock.created_at.asc())
    )
    return [
        _lock_info(lock)
        for lock in result.scalars().all()
        if _utc(lock.expires_at) > now
    ]
