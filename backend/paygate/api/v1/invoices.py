"""Invoice history API router."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.deps import ensure_self_or_admin, get_current_user, get_db
from paygate.exceptions import PersistenceError
from paygate.models.user import User
from paygate.schemas.billing import InvoiceListResponse
from paygate.services import payment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/invoices", tags=["invoices"])


async def _invoices_page(
    db: AsyncSession, user_id: uuid.UUID, status_filter: str | None, skip: int, limit: int
) -> dict:
    try:
        items, total = await payment_service.list_user_invoices(
            db, user_id, status=status_filter, skip=skip, limit=limit
        )
    except PersistenceError as e:
        logger.error("Invoice history request failed: %s", e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error") from e
    return {"items": items, "total": total}


@router.get("", response_model=InvoiceListResponse, summary="List my invoices")
async def list_my_invoices(
    status_filter: str | None = Query(None, alias="status", description="Filter by invoice status"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(10, ge=1, le=100, description="Pagination limit"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Return a paginated list of the current user's invoices, newest first."""
    return await _invoices_page(db, current_user.id, status_filter, skip, limit)


@router.get("/user/{user_id}", response_model=InvoiceListResponse, summary="List a user's invoices")
async def list_user_invoices(
    user_id: uuid.UUID,
    status_filter: str | None = Query(None, alias="status", description="Filter by invoice status"),
    skip: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(10, ge=1, le=100, description="Pagination limit"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> dict:
    """Return a user's invoices (admins, or the user themself)."""
    ensure_self_or_admin(current_user, user_id)
    return await _invoices_page(db, user_id, status_filter, skip, limit)
