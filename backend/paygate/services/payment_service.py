"""Read side of the payment ledger: a user's payments and invoices."""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.exceptions import PersistenceError
from paygate.models.invoice import Invoice
from paygate.models.payment import Payment

logger = logging.getLogger(__name__)


async def _list_for_user(
    db: AsyncSession,
    model: type[Invoice] | type[Payment],
    user_id: uuid.UUID,
    status: str | None,
    skip: int,
    limit: int,
) -> tuple[list, int]:
    base_filter = [model.user_id == user_id]
    if status:
        base_filter.append(model.status == status)

    count_query = select(func.count()).select_from(model).where(*base_filter)
    items_query = (
        select(model).where(*base_filter).order_by(model.created_at.desc(), model.id).offset(skip).limit(limit)
    )
    try:
        total = (await db.execute(count_query)).scalar_one()
        items = list((await db.execute(items_query)).scalars().all())
    except SQLAlchemyError as e:
        raise PersistenceError(f"Listing {model.__tablename__} for user {user_id} failed: {e}") from e

    logger.debug("Listed %d of %d %s for user %s", len(items), total, model.__tablename__, user_id)
    return items, total


async def list_user_payments(
    db: AsyncSession,
    user_id: uuid.UUID,
    status: str | None = None,
    skip: int = 0,
    limit: int = 10,
) -> tuple[list[Payment], int]:
    """Return one page of the user's payments (newest first) and the total count."""
    return await _list_for_user(db, Payment, user_id, status, skip, limit)


async def list_user_invoices(
    db: AsyncSession,
    user_id: uuid.UUID,
    status: str | None = None,
    skip: int = 0,
    limit: int = 10,
) -> tuple[list[Invoice], int]:
    """Return one page of the user's invoices (newest first) and the total count."""
    return await _list_for_user(db, Invoice, user_id, status, skip, limit)
