"""API routes."""

import logging
from fastapi import APIRouter

from app.api.routes import orders, printers

logger = logging.getLogger(__name__)

api_router = APIRouter()

# Orders: placement, lookups, status machine
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])

# Printers and the print queue
api_router.include_router(printers.router, prefix="/printers", tags=["printers"])
