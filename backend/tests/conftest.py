"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; keep tests off the on-disk database and
# away from the background print dispatcher.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("PRINT_DISPATCHER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.clock import Clock
from app.core.rate_limit import limiter
from app.core.rbac import TokenData, UserRole
from app.core.security import create_access_token, token_claims
from app.db.base import Base
from app.db.session import build_engine, get_db
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.models.order import Order, OrderStatus
from app.models.printer import ConnectionType, Printer, PrinterStatus, PrinterType
from app.models.restaurant import Restaurant

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

OWNER_ID = 1
STAFF_ID = 10
CUSTOMER_ID = 100


class FakeClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, 0)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============== Restaurants ==============

@pytest.fixture
def restaurant(db_session: Session) -> Restaurant:
    """Create a restaurant owned by OWNER_ID."""
    restaurant = Restaurant(name="Test Bistro", owner_id=OWNER_ID)
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def other_restaurant(db_session: Session) -> Restaurant:
    """A restaurant none of the test principals work for."""
    restaurant = Restaurant(name="Other Diner", owner_id=999)
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


# ============== Principals ==============

@pytest.fixture
def owner(restaurant: Restaurant) -> TokenData:
    return TokenData(user_id=OWNER_ID, role=UserRole.OWNER)


@pytest.fixture
def staff(restaurant: Restaurant) -> TokenData:
    return TokenData(user_id=STAFF_ID, role=UserRole.STAFF, restaurant_id=restaurant.id)


@pytest.fixture
def customer() -> TokenData:
    return TokenData(user_id=CUSTOMER_ID, role=UserRole.CUSTOMER, email="diner@example.com")


def _headers(principal: TokenData) -> dict:
    claims = token_claims(principal.user_id, principal.role.value, principal.restaurant_id, principal.email)
    return {"Authorization": f"Bearer {create_access_token(data=claims)}"}


@pytest.fixture
def owner_headers(owner: TokenData) -> dict:
    return _headers(owner)


@pytest.fixture
def staff_headers(staff: TokenData) -> dict:
    return _headers(staff)


@pytest.fixture
def customer_headers(customer: TokenData) -> dict:
    return _headers(customer)


# ============== Orders ==============

GUEST_INFO = {"name": "Jamie Guest", "phone": "+15550001111", "email": "jamie@example.com"}


@pytest.fixture
def make_order(db_session: Session, restaurant: Restaurant):
    """Factory inserting orders directly, in any status."""

    def _make(status=OrderStatus.RECEIVED, customer_id=None, guest_info=None, items=None, **kwargs):
        items = items or [
            {"name": "Burger", "price": "12.99", "quantity": 2, "modifications": ["no onions"], "category": "Mains"},
            {"name": "Fries", "price": "7.99", "quantity": 1, "modifications": [], "category": "Sides"},
        ]
        total = sum(Decimal(i["price"]) * i["quantity"] for i in items)
        order = Order(
            restaurant_id=kwargs.pop("restaurant_id", restaurant.id),
            customer_id=customer_id,
            guest_info=guest_info,
            items=items,
            total_price=total,
            status=status,
            **kwargs,
        )
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make


@pytest.fixture
def guest_info() -> dict:
    return dict(GUEST_INFO)


@pytest.fixture
def guest_order(make_order, guest_info) -> Order:
    return make_order(guest_info=guest_info)


@pytest.fixture
def customer_order(make_order) -> Order:
    return make_order(customer_id=CUSTOMER_ID)


# ============== Printers ==============

@pytest.fixture
def make_printer(db_session: Session, restaurant: Restaurant):
    """Factory inserting printers directly."""

    def _make(
        name="Kitchen 1",
        printer_type=PrinterType.KITCHEN,
        connection_type=ConnectionType.NETWORK,
        ip_address="192.168.1.50",
        port=9100,
        usb_device=None,
        auto_print_orders=False,
        enabled=True,
        restaurant_id=None,
    ):
        printer = Printer(
            restaurant_id=restaurant_id or restaurant.id,
            name=name,
            type=printer_type,
            connection_type=connection_type,
            ip_address=ip_address if connection_type == ConnectionType.NETWORK else None,
            port=port if connection_type == ConnectionType.NETWORK else None,
            usb_device=usb_device,
            auto_print_orders=auto_print_orders,
            enabled=enabled,
            status=PrinterStatus.UNKNOWN,
        )
        db_session.add(printer)
        db_session.commit()
        db_session.refresh(printer)
        return printer

    return _make


@pytest.fixture
def kitchen_printer(make_printer) -> Printer:
    return make_printer(auto_print_orders=True)
