"""Credits router: balance, history, daily check-in and internal grants."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user, require_cron_secret
from routers.rate_limit import rate_limit
from services.credits import (
    get_credit_summary,
    get_transaction_history,
    retry_ledger_call,
    serialize_transaction,
)
from services.errors import PersistenceError
from services.rewards import daily_checkin, get_checkin_status, grant_credits
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)

STORAGE_UNAVAILABLE = "Credits are temporarily unavailable. Please try again."


class CreditHistoryResponse(BaseModel):
    transactions: List[Dict[str, Any]]
    limit: int
    offset: int


class CreditGrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    amount: int = Field(ge=1, le=100000)
    source: Literal["purchase", "subscription", "admin"] = "admin"
    reference_id: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=500)
    email: Optional[str] = None


@router.get("/balance")
async def credit_balance(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_credit_summary(auth.user_id, db)
    except PersistenceError as exc:
        logger.error("Balance lookup failed for %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail=STORAGE_UNAVAILABLE) from exc


@router.get("/history", response_model=CreditHistoryResponse)
async def credit_history(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    entries = await get_transaction_history(auth.user_id, db, limit=limit, offset=offset)
    return CreditHistoryResponse(
        transactions=[serialize_transaction(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )


@router.get("/checkin")
async def checkin_status(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_checkin_status(auth.user_id, db)


@router.post("/checkin")
async def checkin(
    _rate_limit: None = Depends(rate_limit("credits_checkin", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await daily_checkin(auth.user_id, db)
    except PersistenceError as exc:
        logger.error("Check-in failed for %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail=STORAGE_UNAVAILABLE) from exc

    if result.already_checked_in:
        raise HTTPException(
            status_code=409,
            detail={"message": "Already checked in today", "checkin": result.as_dict()},
        )
    return result.as_dict()


@router.post("/grant")
async def grant(
    request: CreditGrantRequest,
    _cron: None = Depends(require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """Internal credit grant for purchases, subscription renewals and admin fixes."""

    async def _grant():
        return await grant_credits(
            request.user_id,
            db,
            amount=request.amount,
            source=request.source,
            reference_id=request.reference_id,
            description=request.description,
        )

    try:
        await ensure_user(request.user_id, db, email=request.email)
        result = await retry_ledger_call(_grant)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Credit grant %s failed: %s", request.reference_id, exc)
        raise HTTPException(status_code=503, detail=STORAGE_UNAVAILABLE) from exc

    return {
        "ok": True,
        "user_id": request.user_id,
        "credits_added": 0 if result.replayed else request.amount,
        "balance_after": result.new_balance,
        "transaction_id": result.transaction_id,
        "replayed": result.replayed,
    }
