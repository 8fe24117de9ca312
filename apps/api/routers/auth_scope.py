"""Authentication dependencies: session users and internal cron callers."""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.errors import PersistenceError
from services.rewards import grant_signup_bonus
from services.session_token import decode_session_token
from services.users import ensure_user


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated user from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email, name=claims.name)


async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """Authenticated user with a persisted row; first sight also grants the signup bonus."""
    try:
        _, created = await ensure_user(auth.user_id, db, email=auth.email, name=auth.name)
        if created:
            result = await grant_signup_bonus(auth.user_id, db)
            logger.info("New user %s received signup bonus (balance %d)", auth.user_id, result.new_balance)
        # Hand the connection back before long-running handlers such as a provider poll.
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Could not bootstrap user %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail="Service temporarily unavailable.") from exc
    except PersistenceError as exc:
        logger.error("Could not bootstrap user %s: %s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail="Service temporarily unavailable.") from exc
    return auth


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> None:
    """Internal endpoints accept only ``Authorization: Bearer <CRON_SECRET>``."""
    expected = (settings.CRON_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured.")
    supplied = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
