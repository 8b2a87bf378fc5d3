"""Order routes: placement, lookups and status changes."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request, status

from app.core.rate_limit import limiter
from app.core.rbac import CurrentUser, OptionalCurrentUser
from app.db.session import DbSession
from app.schemas.order import (
    BulkStatusUpdateRequest,
    BulkStatusUpdateResponse,
    CancelRequest,
    OrderAnalyticsResponse,
    OrderCreate,
    OrderResponse,
    OrderStatsResponse,
    StatusUpdateRequest,
)
from app.services.fulfillment_service import build_order_events
from app.services.order_service import OrderService
from app.services.order_status_service import GuestContact, OrderStatusMachine

logger = logging.getLogger(__name__)

router = APIRouter()


def _order_service(db) -> OrderService:
    return OrderService(db, events=build_order_events(db))


def _status_machine(db) -> OrderStatusMachine:
    return OrderStatusMachine(db, events=build_order_events(db))


@router.post("/new", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def place_order(
    request: Request,
    db: DbSession,
    order_in: OrderCreate,
    current_user: OptionalCurrentUser,
):
    """Place an order. Guests must include guest_info (name, phone, email)."""
    return _order_service(db).place_order(
        order_in.restaurant_id,
        [item.model_dump() for item in order_in.items],
        principal=current_user,
        guest_info=order_in.guest_info.model_dump() if order_in.guest_info else None,
        notes=order_in.notes,
    )


@router.get("/history", response_model=List[OrderResponse])
@limiter.limit("60/minute")
def order_history(request: Request, db: DbSession, current_user: CurrentUser):
    """The caller's own orders, newest first."""
    return _order_service(db).history(current_user)


@router.get("/restaurant/{restaurant_id}/active", response_model=List[OrderResponse])
@limiter.limit("60/minute")
def active_orders(request: Request, restaurant_id: int, db: DbSession, current_user: CurrentUser):
    """Orders not yet delivered or cancelled, oldest first."""
    return _order_service(db).active_orders(restaurant_id, current_user)


@router.get("/restaurant/{restaurant_id}/stats", response_model=OrderStatsResponse)
@limiter.limit("60/minute")
def order_stats(request: Request, restaurant_id: int, db: DbSession, current_user: CurrentUser):
    return _order_service(db).stats(restaurant_id, current_user)


@router.get("/restaurant/{restaurant_id}/analytics", response_model=OrderAnalyticsResponse)
@limiter.limit("30/minute")
def order_analytics(
    request: Request,
    restaurant_id: int,
    db: DbSession,
    current_user: CurrentUser,
    start_date: Optional[datetime] = Query(None, description="Earliest created_at, inclusive"),
    end_date: Optional[datetime] = Query(None, description="Latest created_at, inclusive"),
    period: str = Query("daily", description="hourly, daily, weekly or monthly"),
):
    """Revenue trends, popular items, customer figures and peak hours."""
    return _order_service(db).analytics(
        restaurant_id, current_user, start=start_date, end=end_date, period=period
    )


@router.patch("/bulk/status", response_model=BulkStatusUpdateResponse)
@limiter.limit("30/minute")
def bulk_update_status(
    request: Request,
    update_in: BulkStatusUpdateRequest,
    db: DbSession,
    current_user: CurrentUser,
):
    """Apply one status to many orders. Always 200; per-order failures are listed in ``failed``."""
    result = _status_machine(db).bulk_update_status(
        update_in.order_ids,
        update_in.status,
        current_user,
        estimated_time=update_in.estimated_time,
        reason=update_in.reason,
    )
    return BulkStatusUpdateResponse(
        updated=[OrderResponse.model_validate(order) for order in result.updated],
        failed=result.failed,
    )


@router.post("/reorder/{order_id}", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def reorder(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    return _order_service(db).reorder(order_id, current_user)


@router.get("/{order_id}", response_model=OrderResponse)
@limiter.limit("60/minute")
def get_order(
    request: Request,
    order_id: int,
    db: DbSession,
    current_user: OptionalCurrentUser,
    email: Optional[str] = Query(None, description="Guest email"),
    phone: Optional[str] = Query(None, description="Guest phone"),
):
    """Get an order. Guests identify themselves with email and phone."""
    return _order_service(db).get_order(
        order_id, current_user, guest_contact=GuestContact(email=email, phone=phone)
    )


@router.patch("/{order_id}/status", response_model=OrderResponse)
@limiter.limit("60/minute")
def update_order_status(
    request: Request,
    order_id: int,
    update_in: StatusUpdateRequest,
    db: DbSession,
    current_user: OptionalCurrentUser,
):
    return _status_machine(db).update_status(
        order_id,
        update_in.status,
        current_user,
        estimated_time=update_in.estimated_time,
        reason=update_in.reason,
    )


@router.post("/{order_id}/cancel", response_model=OrderResponse)
@limiter.limit("30/minute")
def cancel_order(
    request: Request,
    order_id: int,
    cancel_in: CancelRequest,
    db: DbSession,
    current_user: OptionalCurrentUser,
):
    """Cancel an order that has not reached the kitchen."""
    return _status_machine(db).cancel(
        order_id,
        cancel_in.reason,
        current_user,
        guest_contact=GuestContact(email=cancel_in.email, phone=cancel_in.phone),
    )
