"""Order status machine.

Orders move forward along ``received -> confirmed -> in_kitchen ->
ready_for_pickup -> delivered`` and may be cancelled only before they reach
the kitchen. Every write is a compare-and-set on ``Order.version``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_naive_utc, system_clock
from app.core.exceptions import (
    Conflict, Forbidden, InvalidTransition, NotFound, OrderDeskError, ValidationError,
)
from app.core.rbac import TokenData, UserRole, can_manage_restaurant
from app.models.order import Order, OrderStatus
from app.services.order_events import OrderEvents, OrderStatusChanged

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.RECEIVED: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.IN_KITCHEN, OrderStatus.CANCELLED},
    OrderStatus.IN_KITCHEN: {OrderStatus.READY_FOR_PICKUP},
    OrderStatus.READY_FOR_PICKUP: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def coerce_status(value: Union[OrderStatus, str]) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError([f"Invalid status: {value}"])


@dataclass
class GuestContact:
    """Contact details a guest proves ownership of an order with."""
    email: Optional[str] = None
    phone: Optional[str] = None

    def matches(self, guest_info: Optional[dict]) -> bool:
        """Both email and phone must be supplied and match the order."""
        if not guest_info or not self.email or not self.phone:
            return False
        email = (guest_info.get("email") or "").strip().lower()
        phone = (guest_info.get("phone") or "").strip()
        return self.email.strip().lower() == email and self.phone.strip() == phone


@dataclass
class BulkStatusResult:
    updated: List[Order] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class OrderStatusMachine:
    """Validates and applies order status transitions."""

    max_cas_retries = 3

    def __init__(self, db: Session, events: Optional[OrderEvents] = None, clock: Clock = system_clock):
        self.db = db
        self.events = events or OrderEvents()
        self.clock = clock

    def _get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _authorize(
        self,
        order: Order,
        new_status: OrderStatus,
        principal: Optional[TokenData],
        guest_contact: Optional[GuestContact],
    ) -> None:
        if can_manage_restaurant(principal, order.restaurant):
            return
        if new_status == OrderStatus.CANCELLED:
            if (
                principal is not None
                and principal.role == UserRole.CUSTOMER
                and order.customer_id is not None
                and order.customer_id == principal.id
            ):
                return
            if guest_contact is not None and guest_contact.matches(order.guest_info):
                return
        raise Forbidden("Not authorized to update this order")

    def _compare_and_set(
        self,
        order: Order,
        new_status: OrderStatus,
        estimated_time: Optional[datetime],
        reason: Optional[str],
    ) -> bool:
        values = {
            "status": new_status,
            "version": Order.version + 1,
            "updated_at": self.clock.now(),
        }
        if estimated_time is not None:
            values["estimated_ready_time"] = as_naive_utc(estimated_time)
        if reason and new_status == OrderStatus.CANCELLED:
            values["cancellation_reason"] = reason
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.version == order.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def update_status(
        self,
        order_id: int,
        new_status: Union[OrderStatus, str],
        principal: Optional[TokenData],
        estimated_time: Optional[datetime] = None,
        reason: Optional[str] = None,
        guest_contact: Optional[GuestContact] = None,
    ) -> Order:
        """Apply one transition.

        Raises NotFound, InvalidTransition or Forbidden, checked in that order.
        A lost compare-and-set re-reads the order and validates again.
        """
        new_status = coerce_status(new_status)

        for _ in range(self.max_cas_retries):
            order = self._get_order(order_id)
            old_status = order.status
            if not can_transition(old_status, new_status):
                raise InvalidTransition(old_status.value, new_status.value)
            self._authorize(order, new_status, principal, guest_contact)

            if self._compare_and_set(order, new_status, estimated_time, reason):
                self.db.commit()
                self.db.refresh(order)
                logger.info(f"Order {order_id}: {old_status.value} -> {new_status.value}")
                self.events.publish(OrderStatusChanged(
                    order_id=order.id,
                    restaurant_id=order.restaurant_id,
                    old_status=old_status,
                    new_status=new_status,
                ))
                return order

            self.db.rollback()
            logger.info(f"Order {order_id} changed concurrently, re-validating")

        raise Conflict(f"Order {order_id} is being updated concurrently")

    def bulk_update_status(
        self,
        order_ids: Iterable[int],
        new_status: Union[OrderStatus, str],
        principal: Optional[TokenData],
        estimated_time: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> BulkStatusResult:
        """Apply the same transition to each order independently.

        Never raises for per-order problems: those ids are reported in
        ``failed`` and their pending changes are rolled back.
        """
        new_status = coerce_status(new_status)
        result = BulkStatusResult()
        for order_id in dict.fromkeys(order_ids):
            try:
                result.updated.append(self.update_status(
                    order_id, new_status, principal,
                    estimated_time=estimated_time, reason=reason,
                ))
            except OrderDeskError as e:
                self.db.rollback()
                result.failed.append(order_id)
                logger.info(f"Bulk status update skipped order {order_id}: {e.message}")

        logger.info(
            f"Bulk status update to {new_status.value}: "
            f"{len(result.updated)} updated, {len(result.failed)} failed"
        )
        return result

    def cancel(
        self,
        order_id: int,
        reason: str,
        principal: Optional[TokenData],
        guest_contact: Optional[GuestContact] = None,
    ) -> Order:
        if not reason or not reason.strip():
            raise ValidationError(["Cancellation reason is required"])
        return self.update_status(
            order_id, OrderStatus.CANCELLED, principal,
            reason=reason.strip(), guest_contact=guest_contact,
        )
