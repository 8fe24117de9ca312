"""Credit rewards: signup bonus, daily check-in streaks and manual grants."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from models.user import User
from services.credits import LedgerResult, earn_credits, retry_ledger_call
from services.referrals import reward_referrer

logger = logging.getLogger(__name__)

GRANT_SOURCES = ("purchase", "subscription", "admin")
PAID_GRANT_SOURCES = ("purchase", "subscription")


@dataclass(frozen=True)
class CheckinResult:
    checkin_date: str
    consecutive_days: int
    credits_earned: int
    weekly_bonus_earned: bool
    new_balance: int
    already_checked_in: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "checkin_date": self.checkin_date,
            "consecutive_days": self.consecutive_days,
            "credits_earned": self.credits_earned,
            "weekly_bonus_earned": self.weekly_bonus_earned,
            "new_balance": self.new_balance,
            "already_checked_in": self.already_checked_in,
        }


def signup_reference(user_id: str) -> str:
    return f"signup_{user_id}"


def checkin_reference(user_id: str, day: date) -> str:
    return f"checkin_{user_id}_{day.isoformat()}"


async def grant_signup_bonus(user_id: str, db: AsyncSession) -> LedgerResult:
    """Award the one-time signup bonus. Safe to call any number of times."""
    return await earn_credits(
        user_id,
        db,
        amount=int(settings.SIGNUP_BONUS_CREDITS),
        source="bonus",
        description="Signup bonus",
        reference_id=signup_reference(user_id),
        metadata={"reason": "signup"},
    )


async def _checkin_entry(user_id: str, day: date, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.reference_id == checkin_reference(user_id, day))
    )
    return result.scalar_one_or_none()


def _result_from_entry(entry: CreditTransaction, day: date, *, already: bool) -> CheckinResult:
    meta = entry.metadata_json or {}
    return CheckinResult(
        checkin_date=day.isoformat(),
        consecutive_days=int(meta.get("consecutive_days") or 1),
        credits_earned=int(entry.amount),
        weekly_bonus_earned=bool(meta.get("weekly_bonus_earned")),
        new_balance=int(entry.balance_after),
        already_checked_in=already,
    )


async def daily_checkin(user_id: str, db: AsyncSession, *, today: Optional[date] = None) -> CheckinResult:
    """
    Record today's check-in and award its credits.

    The streak continues when yesterday's check-in exists; every
    ``CHECKIN_STREAK_DAYS``-th consecutive day also earns the weekly bonus.
    A second check-in on the same day returns the first one unchanged.
    """
    day = today or datetime.now(timezone.utc).date()

    existing = await _checkin_entry(user_id, day, db)
    if existing is not None:
        return _result_from_entry(existing, day, already=True)

    previous = await _checkin_entry(user_id, day - timedelta(days=1), db)
    streak = 1
    if previous is not None:
        streak = int((previous.metadata_json or {}).get("consecutive_days") or 1) + 1

    streak_days = max(int(settings.CHECKIN_STREAK_DAYS), 1)
    weekly_bonus = streak % streak_days == 0
    credits = int(settings.CHECKIN_DAILY_CREDITS)
    if weekly_bonus:
        credits += int(settings.CHECKIN_WEEKLY_BONUS_CREDITS)

    description = f"Daily check-in (day {streak})"
    if weekly_bonus:
        description += " + weekly bonus"

    result = await earn_credits(
        user_id,
        db,
        amount=credits,
        source="checkin",
        description=description,
        reference_id=checkin_reference(user_id, day),
        metadata={
            "checkin_date": day.isoformat(),
            "consecutive_days": streak,
            "weekly_bonus_earned": weekly_bonus,
        },
    )
    if result.replayed:
        entry = await _checkin_entry(user_id, day, db)
        if entry is not None:
            return _result_from_entry(entry, day, already=True)

    return CheckinResult(
        checkin_date=day.isoformat(),
        consecutive_days=streak,
        credits_earned=credits,
        weekly_bonus_earned=weekly_bonus,
        new_balance=result.new_balance,
    )


async def get_checkin_status(user_id: str, db: AsyncSession, *, today: Optional[date] = None) -> Dict[str, Any]:
    day = today or datetime.now(timezone.utc).date()
    current = await _checkin_entry(user_id, day, db)
    if current is not None:
        streak = int((current.metadata_json or {}).get("consecutive_days") or 1)
    else:
        previous = await _checkin_entry(user_id, day - timedelta(days=1), db)
        streak = int((previous.metadata_json or {}).get("consecutive_days") or 1) if previous else 0
    return {
        "checked_in_today": current is not None,
        "consecutive_days": streak,
        "today": day.isoformat(),
    }


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    source: str,
    reference_id: str,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """
    Credit a purchase, subscription renewal or admin adjustment.

    A paid grant also pays the user's referrer, if they have an unpaid one.
    """
    if source not in GRANT_SOURCES:
        raise ValueError(f"source must be one of {', '.join(GRANT_SOURCES)}")
    result = await earn_credits(
        user_id,
        db,
        amount=amount,
        source=source,
        description=description or f"{source.capitalize()} credits",
        reference_id=reference_id,
        metadata=metadata,
    )
    if source in PAID_GRANT_SOURCES:
        await reward_referrer(user_id, db, trigger=source)
    return result


async def backfill_signup_bonuses(window_hours: int = 24) -> Dict[str, int]:
    """Grant the signup bonus to recent users that never received it."""
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max(int(window_hours), 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(User.id)
            .outerjoin(
                CreditTransaction,
                and_(
                    CreditTransaction.user_id == User.id,
                    CreditTransaction.source == "bonus",
                    CreditTransaction.reference_id == "signup_" + User.id,
                ),
            )
            .where(User.created_at >= cutoff, CreditTransaction.id.is_(None))
        )
        user_ids = [row[0] for row in result.all()]

    granted = 0
    failed = 0
    for user_id in user_ids:

        async def _grant(uid: str = user_id) -> LedgerResult:
            async with async_session_maker() as db:
                return await grant_signup_bonus(uid, db)

        try:
            outcome = await retry_ledger_call(_grant)
        except Exception as exc:
            failed += 1
            logger.warning("Signup bonus backfill failed for user %s: %s", user_id, exc)
            continue
        if not outcome.replayed:
            granted += 1

    if user_ids:
        logger.info("Signup bonus backfill: checked=%d granted=%d failed=%d", len(user_ids), granted, failed)
    return {"checked": len(user_ids), "granted": granted, "failed": failed}
