"""Order schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.models.order import OrderStatus


class OrderItem(BaseModel):
    """A line of an order."""

    name: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., ge=0, decimal_places=2)
    quantity: int = Field(default=1, ge=1)
    modifications: List[str] = Field(default_factory=list)
    category: Optional[str] = None

    @field_validator("modifications")
    @classmethod
    def unique_modifications(cls, v: List[str]) -> List[str]:
        """Modifications are a set; keep the first occurrence of each."""
        seen = []
        for mod in v:
            mod = mod.strip()
            if mod and mod not in seen:
                seen.append(mod)
        return seen


class GuestInfo(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=3, max_length=50)
    email: EmailStr


class OrderCreate(BaseModel):
    """Order placement request."""

    restaurant_id: int
    items: List[OrderItem] = Field(..., min_length=1)
    guest_info: Optional[GuestInfo] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class OrderResponse(BaseModel):
    id: int
    restaurant_id: int
    customer_id: Optional[int] = None
    guest_info: Optional[dict] = None
    items: List[dict]
    total_price: Decimal
    status: OrderStatus
    notes: Optional[str] = None
    estimated_ready_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    estimated_time: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class BulkStatusUpdateRequest(StatusUpdateRequest):
    order_ids: List[int] = Field(..., min_length=1)


class BulkStatusUpdateResponse(BaseModel):
    """Bulk outcome: ids that failed never appear in ``updated``."""

    updated: List[OrderResponse]
    failed: List[int]


class CancelRequest(BaseModel):
    """Cancellation request. Guests identify themselves with email and phone."""

    reason: str = Field(..., max_length=500)
    email: Optional[str] = None
    phone: Optional[str] = None


class OrderStatsResponse(BaseModel):
    restaurant_id: int
    total_orders: int
    by_status: Dict[str, int]
    today_orders: int
    today_revenue: Decimal


class RevenueTrendPoint(BaseModel):
    date: str
    revenue: Decimal
    orders: int


class PopularItem(BaseModel):
    name: str
    quantity: int
    revenue: Decimal
    orders: int


class CustomerAnalytics(BaseModel):
    total_customers: int
    returning_customers: int
    guest_orders: int
    customer_retention_rate: float
    average_orders_per_customer: float
    average_customer_value: Decimal


class PeakHour(BaseModel):
    hour: int
    orders: int
    revenue: Decimal


class AnalyticsSummary(BaseModel):
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    completed_orders: int
    cancelled_orders: int


class OrderAnalyticsResponse(BaseModel):
    """Sales analytics of one restaurant over an optional date range."""

    restaurant_id: int
    period: str
    revenue_trends: List[RevenueTrendPoint]
    popular_items: List[PopularItem]
    customer_analytics: CustomerAnalytics
    peak_hours: List[PeakHour]
    summary: AnalyticsSummary
