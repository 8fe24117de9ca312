"""Image and video generation router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_current_user
from routers.rate_limit import rate_limit
from services.errors import (
    GenerationFailedError,
    InsufficientFundsError,
    LockHeldError,
    PersistenceError,
)
from services.generation import get_generated_asset, run_generation, serialize_asset
from services.generation_lock import list_active_locks

router = APIRouter()
logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    model: str = Field(min_length=1, max_length=100)
    request_id: Optional[str] = Field(default=None, max_length=128)
    aspect_ratio: Optional[str] = Field(default=None, max_length=20)
    image_url: Optional[str] = Field(default=None, max_length=2000)


class GenerationResponse(BaseModel):
    asset_id: str
    request_id: str
    task_id: str
    result_url: str
    credits_spent: int
    balance_after: int


async def _generate(asset_type: str, request: GenerationRequest, auth: AuthContext) -> GenerationResponse:
    try:
        outcome = await run_generation(
            auth.user_id,
            asset_type=asset_type,
            model=request.model,
            prompt=request.prompt,
            request_id=request.request_id,
            aspect_ratio=request.aspect_ratio,
            image_url=request.image_url,
        )
    except LockHeldError as exc:
        retry_after = exc.retry_after_seconds()
        raise HTTPException(
            status_code=429,
            detail={
                "message": f"A {asset_type} generation is already in progress. Try again in {retry_after} seconds.",
                "retry_after": retry_after,
                "request_id": exc.existing_lock.request_id if exc.existing_lock else None,
                "task_id": exc.existing_lock.task_id if exc.existing_lock else None,
            },
            headers={"Retry-After": str(retry_after)},
        ) from exc
    except InsufficientFundsError as exc:
        raise HTTPException(
            status_code=402,
            detail={"message": str(exc), "required": exc.required, "available": exc.available},
        ) from exc
    except GenerationFailedError as exc:
        raise HTTPException(
            status_code=502,
            detail={"message": "Generation failed, no credits charged.", "asset_id": exc.asset_id},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("%s generation for %s hit a storage failure: %s", asset_type, auth.user_id, exc)
        raise HTTPException(status_code=503, detail="Generation is temporarily unavailable. Please try again.") from exc

    return GenerationResponse(
        asset_id=outcome.asset_id,
        request_id=outcome.request_id,
        task_id=outcome.task_id,
        result_url=outcome.result_url,
        credits_spent=outcome.credits_spent,
        balance_after=outcome.new_balance,
    )


@router.post("/image", response_model=GenerationResponse)
async def generate_image(
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation_image", limit=30, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
):
    return await _generate("image", request, auth)


@router.post("/video", response_model=GenerationResponse)
async def generate_video(
    request: GenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation_video", limit=10, window_seconds=60)),
    auth: AuthContext = Depends(get_current_user),
):
    return await _generate("video", request, auth)


@router.get("/locks")
async def active_locks(
    auth: AuthContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    locks = await list_active_locks(auth.user_id, db)
    return {
        "locks": [
            {
                "id": lock.id,
                "asset_type": lock.asset_type,
                "request_id": lock.request_id,
                "task_id": lock.task_id,
                "expires_at": lock.expires_at.isoformat(),
                "created_at": lock.created_at.isoformat() if lock.created_at else None,
            }
            for lock in locks
        ]
    }


@router.get("/assets/{asset_id}")
async def generated_asset(
    asset_id: str,
    auth: AuthContext = Depends(get_current_user),
):
    asset = await get_generated_asset(asset_id, auth.user_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="Asset not found.")
    return serialize_asset(asset)
