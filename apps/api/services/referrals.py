"""Referral program: registration, referrer rewards and stats."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignore_conflict
from models.user import User
from models.user_referral import UserReferral
from services.credits import LedgerResult, earn_credits
from services.errors import PersistenceError

logger = logging.getLogger(__name__)

REFERRAL_TRIGGERS = ("first_generation", "purchase", "subscription")


def referral_reference(referred_id: str) -> str:
    return f"referral_{referred_id}"


def referral_code_for(user_id: str) -> str:
    # Codes are the referrer's user id.
    return user_id


async def _referral_for(referred_id: str, db: AsyncSession) -> Optional[UserReferral]:
    result = await db.execute(
        select(UserReferral)
        .where(UserReferral.referred_id == referred_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def register_referral(referred_id: str, db: AsyncSession, *, referral_code: str) -> Tuple[UserReferral, bool]:
    """
    Record that ``referred_id`` signed up with ``referral_code``.

    Returns (referral, created). A user can be referred once; a second
    registration returns the first one with ``created=False``.
    """
    code = (referral_code or "").strip()
    if not code:
        raise ValueError("Referral code is required")
    if code == referral_code_for(referred_id):
        raise ValueError("Cannot refer yourself")

    existing = await _referral_for(referred_id, db)
    if existing is not None:
        return existing, False

    referrer = await db.execute(select(User.id).where(User.id == code))
    referrer_id = referrer.scalar_one_or_none()
    if referrer_id is None:
        raise ValueError("Unknown referral code")

    try:
        inserted = await insert_ignore_conflict(
            db,
            UserReferral,
            {
                "id": str(uuid.uuid4()),
                "referrer_id": referrer_id,
                "referred_id": referred_id,
                "referral_code": code,
                "credits_awarded": False,
                "first_generation_completed": False,
            },
            conflict_columns=["referred_id"],
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not register referral for user {referred_id}") from exc

    referral = await _referral_for(referred_id, db)
    if referral is None:
        raise PersistenceError(f"Referral for user {referred_id} vanished after creation")
    if inserted is not None:
        logger.info("User %s registered as referred by %s", referred_id, referrer_id)
    return referral, inserted is not None


async def award_referral_reward(referred_id: str, db: AsyncSession, *, trigger: str) -> Optional[LedgerResult]:
    """
    Pay the referrer of ``referred_id`` once.

    Returns ``None`` when the user was not referred or the referrer was already
    paid. The ledger entry is keyed by the referred user, so concurrent
    triggers credit the referrer a single time.
    """
    if trigger not in REFERRAL_TRIGGERS:
        raise ValueError(f"trigger must be one of {', '.join(REFERRAL_TRIGGERS)}")

    referral = await _referral_for(referred_id, db)
    if referral is None or referral.credits_awarded:
        return None

    result = await earn_credits(
        referral.referrer_id,
        db,
        amount=int(settings.REFERRAL_REWARD_CREDITS),
        source="referral",
        description="Referral reward - invited user completed first generation"
        if trigger == "first_generation"
        else f"Referral reward - invited user made a {trigger}",
        reference_id=referral_reference(referred_id),
        metadata={"referral_id": referral.id, "referred_user_id": referred_id, "trigger": trigger},
    )

    try:
        await db.execute(
            update(UserReferral)
            .where(UserReferral.id == referral.id)
            .values(
                credits_awarded=True,
                credits_awarded_at=datetime.now(timezone.utc),
                first_generation_completed=bool(referral.first_generation_completed) or trigger == "first_generation",
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not mark referral {referral.id} as paid") from exc

    if not result.replayed:
        logger.info(
            "Awarded %d referral credits to %s for referral %s (%s)",
            int(settings.REFERRAL_REWARD_CREDITS),
            referral.referrer_id,
            referral.id,
            trigger,
        )
    return result


async def reward_referrer(referred_id: str, db: AsyncSession, *, trigger: str) -> Optional[LedgerResult]:
    """``award_referral_reward`` for callers whose own operation already succeeded."""
    try:
        return await award_referral_reward(referred_id, db, trigger=trigger)
    except (PersistenceError, SQLAlchemyError) as exc:
        logger.warning("Referral reward for user %s (%s) failed: %s", referred_id, trigger, exc)
        return None


def _serialize_referral(referral: UserReferral, referred: Optional[User]) -> Dict[str, Any]:
    return {
        "id": referral.id,
        "referred_id": referral.referred_id,
        "referred_email": referred.email if referred else None,
        "referred_name": referred.name if referred else None,
        "credits_awarded": bool(referral.credits_awarded),
        "first_generation_completed": bool(referral.first_generation_completed),
        "created_at": referral.created_at.isoformat() if referral.created_at else None,
        "credits_awarded_at": referral.credits_awarded_at.isoformat() if referral.credits_awarded_at else None,
    }


async def get_referral_stats(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(UserReferral, User)
        .outerjoin(User, User.id == UserReferral.referred_id)
        .where(UserReferral.referrer_id == user_id)
        .order_by(UserReferral.created_at.desc())
    )
    rows = result.all()
    successful = sum(1 for referral, _ in rows if referral.credits_awarded)
    return {
        "referral_code": referral_code_for(user_id),
        "total_referrals": len(rows),
        "successful_referrals": successful,
        "pending_referrals": len(rows) - successful,
        "total_earned_credits": successful * int(settings.REFERRAL_REWARD_CREDITS),
        "referrals": [_serialize_referral(referral, referred) for referral, referred in rows],
    }
