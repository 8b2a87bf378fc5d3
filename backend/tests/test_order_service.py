"""Tests for order placement, lookups, reorder, stats and analytics."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import Forbidden, NotFound, ValidationError
from app.core.rbac import TokenData, UserRole
from app.models.order import OrderStatus
from app.services.order_events import OrderEvents
from app.services.order_service import OrderService, normalize_items, order_total
from app.services.order_status_service import GuestContact


@pytest.fixture
def service(db_session):
    return OrderService(db_session)


ITEMS = [
    {"name": "Margherita", "price": "15.99", "quantity": 1},
    {"name": "Garlic Bread", "price": "8.99", "quantity": 2, "modifications": ["extra butter", "extra butter"]},
]


# ============== Totals and item validation ==============

class TestOrderTotals:

    def test_total_is_exact(self):
        assert order_total(normalize_items(ITEMS)) == Decimal("33.97")

    def test_no_float_drift(self):
        items = normalize_items([{"name": "Soda", "price": "0.10", "quantity": 3}])
        assert order_total(items) == Decimal("0.30")

    def test_modifications_deduplicated(self):
        items = normalize_items(ITEMS)
        assert items[1]["modifications"] == ["extra butter"]
        assert items[0]["price"] == "15.99"

    def test_all_item_problems_reported(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_items([
                {"name": "", "price": "1.00", "quantity": 1},
                {"name": "Tea", "price": "-2", "quantity": 0},
            ])

        errors = exc_info.value.details["errors"]
        assert "Item 1: name is required" in errors
        assert "Item 2: price must be a non-negative amount" in errors
        assert "Item 2: quantity must be at least 1" in errors

    def test_empty_order_rejected(self):
        with pytest.raises(ValidationError):
            normalize_items([])


# ============== Placement ==============

class TestPlaceOrder:

    def test_customer_order(self, service, restaurant, customer):
        order = service.place_order(restaurant.id, ITEMS, principal=customer)

        assert order.total_price == Decimal("33.97")
        assert order.status == OrderStatus.RECEIVED
        assert order.customer_id == customer.id
        assert order.guest_info is None
        assert order.version == 1

    def test_guest_order(self, service, restaurant, guest_info):
        order = service.place_order(restaurant.id, ITEMS, guest_info=guest_info, notes="ring twice")

        assert order.customer_id is None
        assert order.guest_info["email"] == guest_info["email"]
        assert order.customer_name == guest_info["name"]
        assert order.notes == "ring twice"

    def test_guest_must_identify(self, service, restaurant):
        with pytest.raises(ValidationError) as exc_info:
            service.place_order(restaurant.id, ITEMS, guest_info={"name": "Anon"})

        errors = exc_info.value.details["errors"]
        assert "Guest phone is required for guest orders" in errors
        assert "Guest email is required for guest orders" in errors

    def test_unknown_restaurant(self, service, customer):
        with pytest.raises(NotFound):
            service.place_order(5555, ITEMS, principal=customer)

    def test_placement_publishes_received_event(self, db_session, restaurant, customer):
        seen = []
        events = OrderEvents()
        events.subscribe(seen.append)

        order = OrderService(db_session, events=events).place_order(restaurant.id, ITEMS, principal=customer)

        assert len(seen) == 1
        assert seen[0].order_id == order.id
        assert seen[0].old_status is None
        assert seen[0].new_status == OrderStatus.RECEIVED


# ============== Lookups ==============

class TestGetOrder:

    def test_staff_sees_restaurant_orders(self, service, guest_order, staff):
        assert service.get_order(guest_order.id, staff).id == guest_order.id

    def test_customer_sees_own_order(self, service, customer_order, customer):
        assert service.get_order(customer_order.id, customer).id == customer_order.id

    def test_other_customer_is_forbidden(self, service, customer_order):
        stranger = TokenData(user_id=4242, role=UserRole.CUSTOMER)
        with pytest.raises(Forbidden):
            service.get_order(customer_order.id, stranger)

    def test_guest_with_matching_contact(self, service, guest_order, guest_info):
        contact = GuestContact(email=guest_info["email"], phone=guest_info["phone"])
        assert service.get_order(guest_order.id, None, guest_contact=contact).id == guest_order.id

    def test_guest_with_partial_contact(self, service, guest_order, guest_info):
        with pytest.raises(Forbidden):
            service.get_order(guest_order.id, None, guest_contact=GuestContact(email=guest_info["email"]))

    def test_missing_order(self, service, staff):
        with pytest.raises(NotFound):
            service.get_order(999999, staff)


class TestHistoryAndReorder:

    def test_history_newest_first(self, service, restaurant, customer, make_order):
        first = make_order(customer_id=customer.id)
        second = make_order(customer_id=customer.id)
        make_order(customer_id=customer.id + 1)

        history = service.history(customer)

        assert [order.id for order in history] == [second.id, first.id]

    def test_reorder_copies_items(self, service, customer_order, customer):
        again = service.reorder(customer_order.id, customer)

        assert again.id != customer_order.id
        assert again.status == OrderStatus.RECEIVED
        assert again.items == customer_order.items
        assert again.total_price == customer_order.total_price

    def test_reorder_someone_elses_order(self, service, guest_order, customer):
        with pytest.raises(Forbidden):
            service.reorder(guest_order.id, customer)


# ============== Kitchen views ==============

class TestRestaurantViews:

    def test_active_orders_oldest_first(self, service, make_order, staff):
        received = make_order()
        in_kitchen = make_order(status=OrderStatus.IN_KITCHEN)
        make_order(status=OrderStatus.DELIVERED)
        make_order(status=OrderStatus.CANCELLED)

        active = service.active_orders(received.restaurant_id, staff)

        assert [order.id for order in active] == [received.id, in_kitchen.id]

    def test_active_orders_needs_staff(self, service, restaurant, customer):
        with pytest.raises(Forbidden):
            service.active_orders(restaurant.id, customer)

    def test_stats(self, service, make_order, restaurant, owner):
        make_order()
        make_order(status=OrderStatus.CONFIRMED)
        make_order(status=OrderStatus.CANCELLED)

        stats = service.stats(restaurant.id, owner)

        assert stats["total_orders"] == 3
        assert stats["by_status"]["received"] == 1
        assert stats["by_status"]["confirmed"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["by_status"]["delivered"] == 0
        assert stats["today_orders"] == 3
        assert stats["today_revenue"] == Decimal("67.94")


# ============== Analytics ==============

class TestAnalytics:

    @pytest.fixture
    def sales(self, make_order, guest_info):
        """Orders over two weeks: two registered customers and one cancelled guest order."""
        return [
            make_order(customer_id=100, status=OrderStatus.DELIVERED, created_at=datetime(2024, 6, 3, 12, 15)),
            make_order(
                customer_id=100,
                items=[{"name": "Fries", "price": "7.99", "quantity": 3}],
                created_at=datetime(2024, 6, 3, 18, 40),
            ),
            make_order(guest_info=guest_info, status=OrderStatus.CANCELLED, created_at=datetime(2024, 6, 9, 12, 5)),
            make_order(
                customer_id=200,
                status=OrderStatus.DELIVERED,
                items=[{"name": "Soup", "price": "6.50", "quantity": 1}],
                created_at=datetime(2024, 6, 10, 9, 30),
            ),
        ]

    def test_summary_leaves_cancelled_orders_out_of_revenue(self, service, restaurant, owner, sales):
        summary = service.analytics(restaurant.id, owner)["summary"]

        assert summary == {
            "total_orders": 4,
            "total_revenue": Decimal("64.44"),
            "average_order_value": Decimal("21.48"),
            "completed_orders": 2,
            "cancelled_orders": 1,
        }

    def test_daily_trends(self, service, restaurant, staff, sales):
        trends = service.analytics(restaurant.id, staff)["revenue_trends"]

        assert trends == [
            {"date": "2024-06-03", "revenue": Decimal("57.94"), "orders": 2},
            {"date": "2024-06-09", "revenue": Decimal("0.00"), "orders": 1},
            {"date": "2024-06-10", "revenue": Decimal("6.50"), "orders": 1},
        ]

    def test_weekly_trends_start_on_sunday(self, service, restaurant, staff, sales):
        trends = service.analytics(restaurant.id, staff, period="weekly")["revenue_trends"]

        assert [(t["date"], t["orders"]) for t in trends] == [("2024-06-02", 2), ("2024-06-09", 2)]

    def test_hourly_and_monthly_keys(self, service, restaurant, staff, sales):
        hourly = service.analytics(restaurant.id, staff, period="hourly")["revenue_trends"]
        monthly = service.analytics(restaurant.id, staff, period="monthly")["revenue_trends"]

        assert hourly[0]["date"] == "2024-06-03 12:00"
        assert monthly == [{"date": "2024-06", "revenue": Decimal("64.44"), "orders": 4}]

    def test_popular_items_by_quantity(self, service, restaurant, staff, sales):
        items = service.analytics(restaurant.id, staff)["popular_items"]

        assert [(i["name"], i["quantity"], i["orders"]) for i in items] == [
            ("Fries", 4, 2),
            ("Burger", 2, 1),
            ("Soup", 1, 1),
        ]
        assert items[0]["revenue"] == Decimal("31.96")

    def test_customer_analytics(self, service, restaurant, staff, sales):
        customers = service.analytics(restaurant.id, staff)["customer_analytics"]

        assert customers == {
            "total_customers": 2,
            "returning_customers": 1,
            "guest_orders": 1,
            "customer_retention_rate": 50.0,
            "average_orders_per_customer": 1.5,
            "average_customer_value": Decimal("32.22"),
        }

    def test_peak_hours_busiest_first(self, service, restaurant, staff, sales):
        hours = service.analytics(restaurant.id, staff)["peak_hours"]

        assert len(hours) == 24
        assert [h["hour"] for h in hours[:3]] == [12, 9, 18]
        assert hours[0]["orders"] == 2
        assert hours[0]["revenue"] == Decimal("33.97")
        assert hours[3]["orders"] == 0

    def test_date_range(self, service, restaurant, staff, sales):
        aware_start = datetime(2024, 6, 9, 2, 0, tzinfo=timezone(timedelta(hours=2)))

        result = service.analytics(restaurant.id, staff, start=aware_start, end=datetime(2024, 6, 30))

        assert result["summary"]["total_orders"] == 2
        assert result["summary"]["total_revenue"] == Decimal("6.50")

    def test_no_orders(self, service, restaurant, staff):
        result = service.analytics(restaurant.id, staff)

        assert result["revenue_trends"] == []
        assert result["popular_items"] == []
        assert result["summary"]["average_order_value"] == Decimal("0.00")
        assert result["customer_analytics"]["customer_retention_rate"] == 0.0
        assert all(hour["orders"] == 0 for hour in result["peak_hours"])

    def test_unknown_period(self, service, restaurant, staff):
        with pytest.raises(ValidationError) as exc_info:
            service.analytics(restaurant.id, staff, period="yearly")
        assert "Period must be one of" in exc_info.value.errors[0]

    def test_start_after_end(self, service, restaurant, staff):
        with pytest.raises(ValidationError):
            service.analytics(restaurant.id, staff, start=datetime(2024, 6, 2), end=datetime(2024, 6, 1))

    def test_needs_staff(self, service, restaurant, customer):
        with pytest.raises(Forbidden):
            service.analytics(restaurant.id, customer)
