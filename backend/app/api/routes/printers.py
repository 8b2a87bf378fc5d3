"""Printer and print queue API routes."""

import asyncio
import logging
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Query, Request, status

from app.core.rate_limit import limiter
from app.core.rbac import RequireStaff, require_restaurant_staff
from app.db.session import DbSession
from app.schemas.printer import (
    ConnectionTestResponse,
    PrinterCreate,
    PrinterResponse,
    PrinterUpdate,
    PrintJobResponse,
    PrintOrderRequest,
    PurgeResponse,
)
from app.services.fulfillment_service import FulfillmentCoordinator
from app.services.order_service import OrderService
from app.services.print_dispatcher_service import notify_printer
from app.services.print_queue_service import PrintJobQueue
from app.services.printer_registry_service import PrinterRegistry

logger = logging.getLogger(__name__)

router = APIRouter()


def _registry(db) -> PrinterRegistry:
    return PrinterRegistry(db, notifier=notify_printer)


def _queue(db) -> PrintJobQueue:
    return PrintJobQueue(db, notifier=notify_printer)


# ============================================================================
# Printers
# ============================================================================

@router.get("/restaurants/{restaurant_id}/printers", response_model=List[PrinterResponse])
@limiter.limit("60/minute")
def list_printers(
    request: Request,
    restaurant_id: int,
    db: DbSession,
    current_user: RequireStaff,
    enabled_only: bool = Query(False),
):
    require_restaurant_staff(db, current_user, restaurant_id)
    return _registry(db).list(restaurant_id, enabled_only=enabled_only)


@router.post(
    "/restaurants/{restaurant_id}/printers",
    response_model=PrinterResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
def create_printer(
    request: Request,
    restaurant_id: int,
    printer_in: PrinterCreate,
    db: DbSession,
    current_user: RequireStaff,
):
    """Add a printer. A 400 response lists every configuration problem."""
    require_restaurant_staff(db, current_user, restaurant_id)
    return _registry(db).create(restaurant_id, printer_in.model_dump())


@router.put("/restaurants/{restaurant_id}/printers/{printer_id}", response_model=PrinterResponse)
@limiter.limit("30/minute")
def update_printer(
    request: Request,
    restaurant_id: int,
    printer_id: int,
    printer_in: PrinterUpdate,
    db: DbSession,
    current_user: RequireStaff,
):
    require_restaurant_staff(db, current_user, restaurant_id)
    return _registry(db).update(restaurant_id, printer_id, printer_in.model_dump(exclude_unset=True))


@router.delete("/restaurants/{restaurant_id}/printers/{printer_id}")
@limiter.limit("30/minute")
def delete_printer(
    request: Request,
    restaurant_id: int,
    printer_id: int,
    db: DbSession,
    current_user: RequireStaff,
):
    require_restaurant_staff(db, current_user, restaurant_id)
    failed_jobs = _registry(db).delete(restaurant_id, printer_id)
    return {"message": "Printer deleted", "failed_jobs": failed_jobs}


@router.post(
    "/restaurants/{restaurant_id}/printers/{printer_id}/test",
    response_model=ConnectionTestResponse,
)
@limiter.limit("10/minute")
async def test_printer_connection(
    request: Request,
    restaurant_id: int,
    printer_id: int,
    db: DbSession,
    current_user: RequireStaff,
):
    """Probe the printer. An unreachable printer is reported with success=false."""
    await asyncio.to_thread(require_restaurant_staff, db, current_user, restaurant_id)
    return await _registry(db).test_connection(restaurant_id, printer_id)


# ============================================================================
# Printing
# ============================================================================

@router.post(
    "/orders/{order_id}/print",
    response_model=PrintJobResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("60/minute")
def print_order(
    request: Request,
    order_id: int,
    print_in: PrintOrderRequest,
    db: DbSession,
    current_user: RequireStaff,
):
    order = OrderService(db).get_order(order_id, current_user)
    require_restaurant_staff(db, current_user, order.restaurant_id)
    coordinator = FulfillmentCoordinator(db, _queue(db))
    return coordinator.print_order(order_id, print_in.printer_id, print_in.print_type)


@router.get("/print-queue/{restaurant_id}", response_model=List[PrintJobResponse])
@limiter.limit("60/minute")
def list_print_queue(request: Request, restaurant_id: int, db: DbSession, current_user: RequireStaff):
    """All print jobs of the restaurant, newest first."""
    require_restaurant_staff(db, current_user, restaurant_id)
    return _queue(db).list_queue(restaurant_id)


@router.post("/print-queue/{restaurant_id}/{job_id}/retry", response_model=PrintJobResponse)
@limiter.limit("30/minute")
def retry_print_job(
    request: Request,
    restaurant_id: int,
    job_id: int,
    db: DbSession,
    current_user: RequireStaff,
):
    require_restaurant_staff(db, current_user, restaurant_id)
    return _queue(db).retry(job_id, restaurant_id=restaurant_id)


@router.post("/print-queue/{restaurant_id}/{job_id}/cancel", response_model=PrintJobResponse)
@limiter.limit("30/minute")
def cancel_print_job(
    request: Request,
    restaurant_id: int,
    job_id: int,
    db: DbSession,
    current_user: RequireStaff,
):
    require_restaurant_staff(db, current_user, restaurant_id)
    return _queue(db).cancel(job_id, restaurant_id=restaurant_id)


@router.delete("/print-queue/{restaurant_id}/completed", response_model=PurgeResponse)
@limiter.limit("10/minute")
def purge_completed_jobs(
    request: Request,
    restaurant_id: int,
    db: DbSession,
    current_user: RequireStaff,
    older_than_hours: int = Query(24, ge=0),
):
    require_restaurant_staff(db, current_user, restaurant_id)
    deleted = _queue(db).purge_completed(restaurant_id, timedelta(hours=older_than_hours))
    return PurgeResponse(deleted=deleted)
