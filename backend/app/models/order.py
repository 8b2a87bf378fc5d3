"""Customer order model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin, VersionMixin
from app.models.validators import non_negative, validate_dict, validate_list


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    RECEIVED = "received"
    CONFIRMED = "confirmed"
    IN_KITCHEN = "in_kitchen"
    READY_FOR_PICKUP = "ready_for_pickup"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


class Order(Base, TimestampMixin, VersionMixin):
    """An order placed by a customer or a guest.

    ``items`` is a list of ``{name, price, quantity, modifications, category}``
    dicts with prices stored as decimal strings. ``total_price`` is fixed when
    the order is created.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    guest_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus), default=OrderStatus.RECEIVED, nullable=False, index=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimated_ready_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    restaurant: Mapped["Restaurant"] = relationship("Restaurant")

    @validates("total_price")
    def _validate_total(self, key, value):
        return non_negative(key, value)

    @validates("items")
    def _validate_items(self, key, value):
        return validate_list(key, value)

    @validates("guest_info")
    def _validate_guest_info(self, key, value):
        return validate_dict(key, value)

    @property
    def customer_name(self) -> Optional[str]:
        if self.guest_info:
            return self.guest_info.get("name")
        return None


from app.models.restaurant import Restaurant  # noqa: E402
