"""
Content Studio - FastAPI Backend
Credit ledger and generation lock service for AI product imagery and video.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    generation,
    rewards,
    cron,
)
from services.generation import recover_stalled_generations
from services.rewards import backfill_signup_bonuses


async def _periodic_signup_backfill() -> None:
    interval_minutes = max(int(settings.SIGNUP_BACKFILL_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await backfill_signup_bonuses()
            if result.get("granted"):
                print(
                    f"🎁 Signup bonus backfill: checked={result.get('checked', 0)} "
                    f"granted={result.get('granted', 0)} failed={result.get('failed', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Signup bonus backfill tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Content Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_generations()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled generations after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    backfill_task = None
    if int(settings.SIGNUP_BACKFILL_INTERVAL_MINUTES) > 0:
        backfill_task = asyncio.create_task(_periodic_signup_backfill())
        print(
            "📅 Signup bonus backfill loop enabled "
            f"(every {int(settings.SIGNUP_BACKFILL_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if backfill_task is not None:
        backfill_task.cancel()
        try:
            await backfill_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Content Studio API",
    description="Credit ledger and per-user generation locks for AI image and video generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(generation.router, prefix="/generation", tags=["Generation"])
app.include_router(rewards.router, prefix="/rewards", tags=["Rewards"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Content Studio API",
        "version": "0.1.0",
        "status": "running"
    }
