"""Scheduled maintenance endpoints, called by the platform scheduler with CRON_SECRET."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from routers.auth_scope import require_cron_secret
from services.errors import PersistenceError
from services.generation import recover_stalled_generations
from services.rewards import backfill_signup_bonuses

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


@router.post("/signup-credits")
async def signup_credits(window_hours: int = Query(default=24, ge=1, le=24 * 30)):
    result = await backfill_signup_bonuses(window_hours=window_hours)
    return {"ok": True, **result}


@router.post("/recover-generations")
async def recover_generations(max_age_ms: Optional[int] = Query(default=None, ge=1)):
    try:
        recovered = await recover_stalled_generations(max_age_ms=max_age_ms)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Stalled generation recovery failed: %s", exc)
        raise HTTPException(status_code=503, detail="Recovery is temporarily unavailable.") from exc
    return {"ok": True, "recovered": recovered}
