"""Credits for sharing generated content on social platforms."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignore_conflict
from models.generated_asset import GeneratedAsset
from models.social_share import SHARE_PLATFORMS, SocialShare
from services.credits import earn_credits
from services.errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareResult:
    share_id: str
    platform: str
    credits_earned: int
    new_balance: int
    already_rewarded: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "share_id": self.share_id,
            "platform": self.platform,
            "credits_earned": self.credits_earned,
            "new_balance": self.new_balance,
            "already_rewarded": self.already_rewarded,
        }


def share_id_for(user_id: str, reference_id: str) -> str:
    """Stable share id, so replays of one share land on the same ledger entry."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"social-share:{user_id}:{reference_id}"))


def share_reference(share_id: str) -> str:
    return f"social_share_{share_id}"


async def record_social_share(
    user_id: str,
    db: AsyncSession,
    *,
    platform: str,
    reference_id: Optional[str] = None,
    asset_id: Optional[str] = None,
    share_url: Optional[str] = None,
) -> ShareResult:
    """
    Reward one share. ``reference_id`` (for example the platform post id)
    makes the reward idempotent; without it every call is a new share.
    """
    if platform not in SHARE_PLATFORMS:
        raise ValueError(f"Invalid platform. Must be one of: {', '.join(SHARE_PLATFORMS)}")
    if asset_id:
        owned = await db.execute(
            select(GeneratedAsset.id).where(GeneratedAsset.id == asset_id, GeneratedAsset.user_id == user_id)
        )
        if owned.scalar_one_or_none() is None:
            raise ValueError("Asset not found")

    reference = (reference_id or "").strip() or str(uuid.uuid4())
    share_id = share_id_for(user_id, reference)
    credits = int(settings.SOCIAL_SHARE_CREDITS)

    result = await earn_credits(
        user_id,
        db,
        amount=credits,
        source="social_share",
        description=f"Social media share on {platform}",
        reference_id=share_reference(share_id),
        metadata={"platform": platform, "asset_id": asset_id, "share_url": share_url, "reference_id": reference},
    )

    # Also repairs a share row lost between a previous ledger write and this insert.
    try:
        await insert_ignore_conflict(
            db,
            SocialShare,
            {
                "id": share_id,
                "user_id": user_id,
                "asset_id": asset_id,
                "platform": platform,
                "share_url": share_url,
                "credits_earned": credits,
                "reference_id": reference,
            },
            conflict_columns=["user_id", "reference_id"],
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not record share {share_id}") from exc

    if result.replayed:
        logger.info("Share %s by user %s was already rewarded", reference, user_id)
    return ShareResult(
        share_id=share_id,
        platform=platform,
        credits_earned=0 if result.replayed else credits,
        new_balance=result.new_balance,
        already_rewarded=result.replayed,
    )


async def get_share_history(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(SocialShare).where(SocialShare.user_id == user_id).order_by(SocialShare.created_at.asc())
    )
    shares = list(result.scalars().all())
    return {
        "total_shares": len(shares),
        "total_credits_earned": sum(int(share.credits_earned or 0) for share in shares),
        "shares": [
            {
                "id": share.id,
                "platform": share.platform,
                "asset_id": share.asset_id,
                "share_url": share.share_url,
                "credits_earned": int(share.credits_earned or 0),
                "reference_id": share.reference_id,
                "created_at": share.created_at.isoformat() if share.created_at else None,
            }
            for share in shares
        ],
    }
