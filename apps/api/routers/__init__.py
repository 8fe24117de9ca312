"""Routers package."""

from . import (
    health,
    credits,
    generation,
    rewards,
    cron,
)
