"""User row bootstrap for identities issued by the external auth provider."""

from __future__ import annotations

from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.errors import PersistenceError


def _placeholder_email(user_id: str) -> str:
    return f"{user_id}@users.invalid"


async def ensure_user(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> Tuple[User, bool]:
    """Return (user, created). Creates the row the first time an identity is seen."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user, False

    user = User(id=user_id, email=email or _placeholder_email(user_id), name=name)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the same user first.
        await db.rollback()
        result = await db.execute(select(User).where(User.id == user_id))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise PersistenceError(f"Could not create user {user_id}")
        return existing, False
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Could not create user {user_id}") from exc
    return user, True
