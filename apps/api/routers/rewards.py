"""Rewards router: referral program and social share credits."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user
from routers.rate_limit import rate_limit
from services.errors import PersistenceError
from services.referrals import get_referral_stats, register_referral
from services.shares import get_share_history, record_social_share

router = APIRouter()
logger = logging.getLogger(__name__)

REWARDS_UNAVAILABLE = "Rewards are temporarily unavailable. Please try again."


class ReferralRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=128)


class ShareRequest(BaseModel):
    platform: str = Field(min_length=1, max_length=32)
    asset_id: Optional[str] = Field(default=None, max_length=64)
    share_url: Optional[str] = Field(default=None, max_length=2000)
    reference_id: Optional[str] = Field(default=None, max_length=255)


@router.get("/referral")
async def referral_stats(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_referral_stats(auth.user_id, db)


@router.post("/referral")
async def register_referral_code(
    request: ReferralRequest,
    _rate_limit: None = Depends(rate_limit("rewards_referral", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        referral, created = await register_referral(auth.user_id, db, referral_code=request.referral_code)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Referral registration failed for %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail=REWARDS_UNAVAILABLE) from exc

    payload = {"referral_id": referral.id, "referrer_id": referral.referrer_id, "referred_id": referral.referred_id}
    if not created:
        raise HTTPException(status_code=409, detail={"message": "Referral already registered", "referral": payload})
    return payload


@router.get("/share")
async def share_history(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_share_history(auth.user_id, db)


@router.post("/share")
async def share(
    request: ShareRequest,
    _rate_limit: None = Depends(rate_limit("rewards_share", limit=20, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await record_social_share(
            auth.user_id,
            db,
            platform=request.platform,
            reference_id=request.reference_id,
            asset_id=request.asset_id,
            share_url=request.share_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Share reward failed for %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail=REWARDS_UNAVAILABLE) from exc

    if result.already_rewarded:
        raise HTTPException(
            status_code=409,
            detail={"message": "This share has already been rewarded", "share": result.as_dict()},
        )
    return result.as_dict()
