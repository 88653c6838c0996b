"""
Pytest configuration and fixtures for group settlement tests.
"""

import threading
from collections.abc import Sequence
from dataclasses import dataclass

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.config.settings import Settings
from shared.infrastructure.db import create_db_engine
from shared.infrastructure.events import Event
from shared.infrastructure.locks import KeyedLockManager
from shared.utils.exceptions import NotFoundError
from group_settlement.models import Base, Order, Participant, TableSession
from group_settlement.services.domain import (
    BillSummaryService,
    OrderService,
    SessionService,
    SettlementService,
)
from group_settlement.services.pricing import PriceQuote


# SQLite in-memory database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)


# Menu used by the pricing fake (cents)
MENU_PRICES = {
    1: 2500,  # 25.00
    2: 4200,  # 42.00
    3: 1800,  # 18.00
    4: 1000,  # 10.00
    5: 333,   # 3.33
}
SURCHARGES = {
    "extra cheese": 150,
    "gluten free": 200,
    "no onion": 0,
}


class StaticMenuPricing:
    """Menu/pricing collaborator backed by dictionaries."""

    def __init__(self, prices=None, surcharges=None):
        self.prices = dict(prices or MENU_PRICES)
        self.surcharges = dict(surcharges or SURCHARGES)
        self.quotes = 0

    def quote(self, menu_item_id: int, customizations: Sequence[str]) -> PriceQuote:
        self.quotes += 1
        if menu_item_id not in self.prices:
            raise NotFoundError("Menu item", menu_item_id)
        unknown = [c for c in customizations if c not in self.surcharges]
        if unknown:
            raise NotFoundError("Customization", ", ".join(unknown))
        return PriceQuote(
            unit_price_cents=self.prices[menu_item_id],
            surcharges={c: self.surcharges[c] for c in customizations},
        )


class RecordingNotifier:
    """Notifier that keeps every event in memory."""

    def __init__(self):
        self.sent: list[tuple[int | str, Event]] = []
        self._lock = threading.Lock()

    def notify(self, target: int | str, event: Event) -> None:
        with self._lock:
            self.sent.append((target, event))

    def of_type(self, event_type: str, target: int | str | None = None) -> list[Event]:
        with self._lock:
            return [
                e for t, e in self.sent
                if e.type == event_type and (target is None or t == target)
            ]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()


@dataclass
class Services:
    registry: SessionService
    orders: OrderService
    settlement: SettlementService
    bills: BillSummaryService


def build_services(
    db: Session,
    locks: KeyedLockManager,
    notifier: RecordingNotifier,
    pricing: StaticMenuPricing | None = None,
    config: Settings | None = None,
) -> Services:
    kwargs = {"locks": locks, "notifier": notifier, "config": config}
    return Services(
        registry=SessionService(db, **kwargs),
        orders=OrderService(db, pricing=pricing or StaticMenuPricing(), **kwargs),
        settlement=SettlementService(db, **kwargs),
        bills=BillSummaryService(db),
    )


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Uses SQLite in-memory for isolation.
    """
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Factory for extra sessions on the in-memory database."""
    return TestingSessionLocal


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File-backed SQLite for multi-threaded tests: every thread gets its own
    connection, like request workers against a real database.
    """
    file_engine = create_db_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=file_engine
    )
    yield factory
    file_engine.dispose()


@pytest.fixture
def locks():
    return KeyedLockManager(timeout_seconds=10.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pricing():
    return StaticMenuPricing()


@pytest.fixture
def config():
    return Settings(leave_fallback_policy="reject", tax_rate_bps=1000)


@pytest.fixture
def services(db_session, locks, notifier, pricing, config) -> Services:
    return build_services(db_session, locks, notifier, pricing, config)


@pytest.fixture
def make_services(db_session, locks, notifier, pricing):
    """Build services with custom settings."""
    def _make(**overrides) -> Services:
        return build_services(db_session, locks, notifier, pricing, Settings(**overrides))
    return _make


def seat_party(svc: Services, count: int, table_id: int = 1) -> tuple[TableSession, list[Participant]]:
    """Check in a table and join ``count`` named diners in order."""
    table_session = svc.registry.check_in(table_id)
    participants = [
        svc.registry.join(table_session.id, requested_name=f"Diner {i + 1}")
        for i in range(count)
    ]
    return table_session, participants


def place_order(svc: Services, participant: Participant, *items: tuple[int, int], confirm: bool = True) -> Order:
    """Fill the participant's cart with (menu_item_id, quantity) lines."""
    cart = svc.orders.open_cart(participant.session_id, participant.id)
    for menu_item_id, quantity in items:
        svc.orders.add_item(cart.id, menu_item_id, quantity)
    if confirm:
        cart = svc.orders.confirm(cart.id)
    return cart


def deliver(svc: Services, order: Order) -> Order:
    """Walk a confirmed order through the kitchen."""
    for status in ("preparing", "ready", "delivered"):
        order = svc.orders.advance(order.id, status)
    return order


@pytest.fixture
def seat(services):
    def _seat(count: int, table_id: int = 1):
        return seat_party(services, count, table_id)
    return _seat


@pytest.fixture
def order_for(services):
    def _order(participant: Participant, *items: tuple[int, int], confirm: bool = True) -> Order:
        return place_order(services, participant, *items, confirm=confirm)
    return _order
