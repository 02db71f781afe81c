"""User role store — the only place user rows are written."""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.exceptions import PersistenceError
from paygate.models.user import User

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    """Look up a user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_email(db: AsyncSession, user_id: uuid.UUID) -> str | None:
    """Return the user's email, or None if the user is unknown locally."""
    result = await db.execute(select(User.email).where(User.id == user_id))
    return result.scalar_one_or_none()


async def set_role(db: AsyncSession, user_id: uuid.UUID, role: str) -> bool:
    """Set the user's role. Returns True only if the stored role changed.

    Admins keep their role: entitlement changes never demote or promote them.
    """
    stmt = (
        update(User)
        .where(User.id == user_id, User.role != role, User.role != "admin")
        .values(role=role)
        .execution_options(synchronize_session="fetch")
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Role update for user {user_id} failed: {e}") from e

    changed = result.rowcount > 0
    if changed:
        logger.info("User %s role set to %s", user_id, role)
    else:
        logger.debug("User %s role already %s (or user unknown/admin)", user_id, role)
    return changed
