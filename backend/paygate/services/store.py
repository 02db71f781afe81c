"""Subscription store — lookups and atomic upserts.

Writes use the database's ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
so concurrent webhook and user-action writes for the same user serialise on
the unique key instead of losing updates.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.database import Base
from paygate.exceptions import PersistenceError
from paygate.models.invoice import Invoice
from paygate.models.subscription import Subscription

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_for(db: AsyncSession):
    """Pick the dialect-specific INSERT that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    try:
        return _UPSERT_INSERTS[dialect]
    except KeyError:
        raise PersistenceError(f"Upsert is not supported on the {dialect!r} dialect") from None


async def find_subscription(db: AsyncSession, *clauses: Any, **criteria: Any) -> Subscription | None:
    """Return the first subscription matching equality ``criteria`` and extra ``clauses``."""
    stmt = select(Subscription).filter_by(**criteria).where(*clauses).limit(1)
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Subscription lookup failed: {e}") from e
    return result.scalars().first()


async def find_invoice(db: AsyncSession, stripe_invoice_id: str) -> Invoice | None:
    """Return the local invoice mirrored from ``stripe_invoice_id``, if any."""
    try:
        result = await db.execute(select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id))
    except SQLAlchemyError as e:
        raise PersistenceError(f"Invoice lookup failed: {e}") from e
    return result.scalar_one_or_none()


async def upsert_row(
    db: AsyncSession,
    model: type[Base],
    conflict_column: str,
    values: dict[str, Any],
    increments: dict[str, Any] | None = None,
) -> Any:
    """Insert ``values`` or update the row that collides on ``conflict_column``.

    Only the keys present in ``values`` are overwritten on conflict; other
    columns keep their stored value. ``increments`` maps numeric columns to
    an amount added inside the same statement (``col = col + amount``), so
    concurrent writers never lose each other's additions; a new row starts
    at the amount. Returns the persisted ORM object with its attributes
    refreshed from the database.
    """
    increments = increments or {}
    insert = _insert_for(db)
    stmt = insert(model).values([{**values, **increments}])
    updatable = {key: stmt.excluded[key] for key in values if key != conflict_column}
    for key in increments:
        updatable[key] = func.coalesce(getattr(model, key), 0) + stmt.excluded[key]
    stmt = stmt.on_conflict_do_update(
        index_elements=[getattr(model, conflict_column)],
        set_=updatable,
    )
    try:
        result = await db.scalars(
            stmt.returning(model),
            execution_options={"populate_existing": True},
        )
        row = result.one()
    except SQLAlchemyError as e:
        raise PersistenceError(
            f"Upsert of {model.__tablename__} on {conflict_column}={values.get(conflict_column)!r} failed: {e}"
        ) from e
    return row


async def upsert_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    values: dict[str, Any],
    increments: dict[str, Any] | None = None,
) -> Subscription:
    """Atomic find-one-and-update keyed by ``user_id`` (created if missing)."""
    row = await upsert_row(db, Subscription, "user_id", {**values, "user_id": user_id}, increments)
    logger.debug("Upserted subscription for user %s: %s", user_id, sorted({**values, **(increments or {})}))
    return row
