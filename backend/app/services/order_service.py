"""Order placement and lookups."""

import logging
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.clock import Clock, as_naive_utc, system_clock
from app.core.exceptions import Forbidden, NotFound, ValidationError
from app.core.rbac import TokenData, can_manage_restaurant
from app.models.order import TERMINAL_STATUSES, Order, OrderStatus
from app.models.restaurant import Restaurant
from app.services.order_events import OrderEvents, OrderStatusChanged
from app.services.order_status_service import GuestContact

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ANALYTICS_PERIODS = ("hourly", "daily", "weekly", "monthly")
POPULAR_ITEMS_LIMIT = 10


def order_total(items: List[Dict[str, Any]]) -> Decimal:
    """Exact sum of price * quantity over the items."""
    total = sum((Decimal(str(item["price"])) * int(item["quantity"]) for item in items), Decimal("0"))
    return total.quantize(CENTS)


def normalize_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Validate order lines and return them in stored form (prices as strings)."""
    errors = []
    if not items:
        errors.append("At least one item is required")

    normalized = []
    for index, item in enumerate(items or [], start=1):
        name = str(item.get("name") or "").strip()
        if not name:
            errors.append(f"Item {index}: name is required")
        try:
            price = Decimal(str(item.get("price")))
        except ArithmeticError:
            price = None
        if price is None or not price.is_finite() or price < 0:
            errors.append(f"Item {index}: price must be a non-negative amount")
        quantity = item.get("quantity", 1)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            errors.append(f"Item {index}: quantity must be at least 1")

        modifications = []
        for mod in item.get("modifications") or []:
            if mod not in modifications:
                modifications.append(mod)

        if not errors:
            normalized.append({
                "name": name,
                "price": str(price.quantize(CENTS)),
                "quantity": quantity,
                "modifications": modifications,
                "category": item.get("category"),
            })

    if errors:
        raise ValidationError(errors)
    return normalized


class OrderService:
    """Places orders and answers order queries for customers, guests and staff."""

    def __init__(self, db: Session, events: Optional[OrderEvents] = None, clock: Clock = system_clock):
        self.db = db
        self.events = events or OrderEvents()
        self.clock = clock

    def _get_restaurant(self, restaurant_id: int) -> Restaurant:
        restaurant = self.db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {restaurant_id} not found")
        return restaurant

    def _get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _require_staff(self, restaurant: Restaurant, principal: Optional[TokenData]) -> None:
        if not can_manage_restaurant(principal, restaurant):
            raise Forbidden("Not authorized for this restaurant")

    def place_order(
        self,
        restaurant_id: int,
        items: List[Dict[str, Any]],
        principal: Optional[TokenData] = None,
        guest_info: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Create a ``received`` order. Guests must identify themselves."""
        self._get_restaurant(restaurant_id)
        line_items = normalize_items(items)

        if principal is None:
            missing = [key for key in ("name", "phone", "email") if not (guest_info or {}).get(key)]
            if missing:
                raise ValidationError(
                    [f"Guest {key} is required for guest orders" for key in missing]
                )

        order = Order(
            restaurant_id=restaurant_id,
            customer_id=principal.id if principal is not None else None,
            guest_info=dict(guest_info) if principal is None else None,
            items=line_items,
            total_price=order_total(line_items),
            status=OrderStatus.RECEIVED,
            notes=notes,
        )
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)

        logger.info(f"Order {order.id} placed at restaurant {restaurant_id} (total {order.total_price})")
        self.events.publish(OrderStatusChanged(
            order_id=order.id,
            restaurant_id=restaurant_id,
            old_status=None,
            new_status=OrderStatus.RECEIVED,
        ))
        return order

    def get_order(
        self,
        order_id: int,
        principal: Optional[TokenData] = None,
        guest_contact: Optional[GuestContact] = None,
    ) -> Order:
        order = self._get_order(order_id)
        if can_manage_restaurant(principal, order.restaurant):
            return order
        if principal is not None and order.customer_id is not None and order.customer_id == principal.id:
            return order
        if guest_contact is not None and guest_contact.matches(order.guest_info):
            return order
        raise Forbidden("Not authorized to view this order")

    def history(self, principal: TokenData) -> List[Order]:
        """The principal's own orders, newest first."""
        return (
            self.db.query(Order)
            .filter(Order.customer_id == principal.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def reorder(self, order_id: int, principal: TokenData) -> Order:
        """Place the items of one of the principal's past orders again, at the stored prices."""
        original = self._get_order(order_id)
        if original.customer_id is None or original.customer_id != principal.id:
            raise Forbidden("Only the customer who placed an order can reorder it")
        return self.place_order(
            original.restaurant_id,
            [dict(item) for item in original.items],
            principal=principal,
        )

    def active_orders(self, restaurant_id: int, principal: Optional[TokenData]) -> List[Order]:
        """Orders still being fulfilled, oldest first."""
        self._require_staff(self._get_restaurant(restaurant_id), principal)
        return (
            self.db.query(Order)
            .filter(
                Order.restaurant_id == restaurant_id,
                Order.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(Order.created_at, Order.id)
            .all()
        )

    def stats(self, restaurant_id: int, principal: Optional[TokenData]) -> Dict[str, Any]:
        self._require_staff(self._get_restaurant(restaurant_id), principal)

        by_status = {s.value: 0 for s in OrderStatus}
        rows = (
            self.db.query(Order.status, func.count(Order.id))
            .filter(Order.restaurant_id == restaurant_id)
            .group_by(Order.status)
            .all()
        )
        for order_status, count in rows:
            by_status[order_status.value] = count

        start_of_day = datetime.combine(self.clock.now().date(), time.min)
        today = (
            self.db.query(Order)
            .filter(Order.restaurant_id == restaurant_id, Order.created_at >= start_of_day)
            .all()
        )
        today_revenue = sum(
            (Decimal(str(order.total_price)) for order in today if order.status != OrderStatus.CANCELLED),
            Decimal("0"),
        )

        return {
            "restaurant_id": restaurant_id,
            "total_orders": sum(by_status.values()),
            "by_status": by_status,
            "today_orders": len(today),
            "today_revenue": today_revenue.quantize(CENTS),
        }

    def analytics(
        self,
        restaurant_id: int,
        principal: Optional[TokenData],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        period: str = "daily",
    ) -> Dict[str, Any]:
        """Revenue trends, popular items, customer figures and peak hours.

        ``start`` and ``end`` bound ``created_at`` inclusively. Revenue only
        counts orders that were not cancelled; order counts include them.
        """
        self._require_staff(self._get_restaurant(restaurant_id), principal)
        if period not in ANALYTICS_PERIODS:
            raise ValidationError([f"Period must be one of: {', '.join(ANALYTICS_PERIODS)}"])
        start, end = as_naive_utc(start), as_naive_utc(end)
        if start is not None and end is not None and start > end:
            raise ValidationError(["Start date must not be after end date"])

        query = self.db.query(Order).filter(Order.restaurant_id == restaurant_id)
        if start is not None:
            query = query.filter(Order.created_at >= start)
        if end is not None:
            query = query.filter(Order.created_at <= end)
        orders = query.order_by(Order.created_at, Order.id).all()

        billed = [order for order in orders if order.status != OrderStatus.CANCELLED]
        total_revenue = sum((_amount(order.total_price) for order in billed), Decimal("0"))
        average = total_revenue / len(billed) if billed else Decimal("0")

        return {
            "restaurant_id": restaurant_id,
            "period": period,
            "revenue_trends": _revenue_trends(orders, period),
            "popular_items": _popular_items(billed),
            "customer_analytics": _customer_analytics(orders),
            "peak_hours": _peak_hours(orders),
            "summary": {
                "total_orders": len(orders),
                "total_revenue": total_revenue.quantize(CENTS),
                "average_order_value": average.quantize(CENTS),
                "completed_orders": sum(1 for o in orders if o.status == OrderStatus.DELIVERED),
                "cancelled_orders": len(orders) - len(billed),
            },
        }


# ============== Analytics helpers ==============

def _amount(value: Any) -> Decimal:
    return Decimal(str(value))


def _bucket(created_at: datetime, period: str) -> str:
    if period == "hourly":
        return created_at.strftime("%Y-%m-%d %H:00")
    if period == "weekly":
        # weeks start on Sunday
        week_start = created_at.date() - timedelta(days=(created_at.weekday() + 1) % 7)
        return week_start.isoformat()
    if period == "monthly":
        return created_at.strftime("%Y-%m")
    return created_at.date().isoformat()


def _revenue_trends(orders: List[Order], period: str) -> List[Dict[str, Any]]:
    trends: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        bucket = trends.setdefault(
            _bucket(order.created_at, period), {"revenue": Decimal("0"), "orders": 0}
        )
        bucket["orders"] += 1
        if order.status != OrderStatus.CANCELLED:
            bucket["revenue"] += _amount(order.total_price)

    return [
        {"date": key, "revenue": data["revenue"].quantize(CENTS), "orders": data["orders"]}
        for key, data in sorted(trends.items())
    ]


def _popular_items(orders: List[Order]) -> List[Dict[str, Any]]:
    """Top items by quantity sold; ``orders`` counts the orders containing the item."""
    stats: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        for item in order.items or []:
            entry = stats.setdefault(
                item["name"], {"name": item["name"], "quantity": 0, "revenue": Decimal("0"), "orders": 0}
            )
            quantity = int(item.get("quantity", 1))
            entry["quantity"] += quantity
            entry["revenue"] += _amount(item["price"]) * quantity
            entry["orders"] += 1

    ranked = sorted(stats.values(), key=lambda entry: (-entry["quantity"], entry["name"]))
    for entry in ranked:
        entry["revenue"] = entry["revenue"].quantize(CENTS)
    return ranked[:POPULAR_ITEMS_LIMIT]


def _customer_analytics(orders: List[Order]) -> Dict[str, Any]:
    """Registered customers are counted by ``customer_id``; guests only by order."""
    per_customer: Dict[int, Dict[str, Any]] = {}
    guest_orders = 0
    for order in orders:
        if order.customer_id is None:
            guest_orders += 1
            continue
        entry = per_customer.setdefault(order.customer_id, {"orders": 0, "revenue": Decimal("0")})
        entry["orders"] += 1
        if order.status != OrderStatus.CANCELLED:
            entry["revenue"] += _amount(order.total_price)

    customers = len(per_customer)
    returning = sum(1 for entry in per_customer.values() if entry["orders"] > 1)
    customer_orders = sum(entry["orders"] for entry in per_customer.values())
    customer_revenue = sum((entry["revenue"] for entry in per_customer.values()), Decimal("0"))

    return {
        "total_customers": customers,
        "returning_customers": returning,
        "guest_orders": guest_orders,
        "customer_retention_rate": round(returning / customers * 100, 2) if customers else 0.0,
        "average_orders_per_customer": round(customer_orders / customers, 2) if customers else 0.0,
        "average_customer_value": (customer_revenue / customers).quantize(CENTS) if customers else Decimal("0.00"),
    }


def _peak_hours(orders: List[Order]) -> List[Dict[str, Any]]:
    """All 24 hours, busiest first."""
    hours = [{"hour": hour, "orders": 0, "revenue": Decimal("0")} for hour in range(24)]
    for order in orders:
        slot = hours[order.created_at.hour]
        slot["orders"] += 1
        if order.status != OrderStatus.CANCELLED:
            slot["revenue"] += _amount(order.total_price)

    for slot in hours:
        slot["revenue"] = slot["revenue"].quantize(CENTS)
    return sorted(hours, key=lambda slot: -slot["orders"])
