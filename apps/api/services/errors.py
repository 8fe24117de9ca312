"""Errors raised by the credit ledger, generation lock and orchestration services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from services.generation_lock import GenerationLockInfo


class PersistenceError(RuntimeError):
    """Raised when the backing store fails for a reason other than a handled conflict."""


class InsufficientFundsError(RuntimeError):
    """Raised when a debit or hold would drive the available balance below zero."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")


class LockHeldError(RuntimeError):
    """Raised when a live generation lock already exists for (user, asset type)."""

    def __init__(self, user_id: str, asset_type: str, existing_lock: Optional["GenerationLockInfo"] = None):
        self.user_id = user_id
        self.asset_type = asset_type
        self.existing_lock = existing_lock
        super().__init__(f"A {asset_type} generation is already in progress.")

    @property
    def expires_at(self) -> Optional[datetime]:
        return self.existing_lock.expires_at if self.existing_lock else None

    def retry_after_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.expires_at:
            return 1
        current = now or datetime.now(timezone.utc)
        remaining = (self.expires_at - current).total_seconds()
        return max(int(remaining) + 1, 1)


class GenerationFailedError(RuntimeError):
    """Raised when the provider could not produce an asset; any hold has been returned."""

    def __init__(self, asset_id: Optional[str], reason: str):
        self.asset_id = asset_id
        self.reason = reason
        super().__init__(f"Generation failed, no credits charged. {reason}".strip())
