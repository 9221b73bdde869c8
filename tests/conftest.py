"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- Database fixtures (in-memory SQLite shared across one test)
- Shipment store
- Common test data generators (orders, addresses, labels)
"""

from collections.abc import Callable, Generator
from typing import Any

import pytest
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shipdesk.db.models import Base
from shipdesk.services.carrier_models import Address
from shipdesk.services.order_source import Order
from shipdesk.services.shipment_service import ShipmentService


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


def _enable_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine; one connection shared by every session."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine) -> Generator[Session, None, None]:
    """Session on the in-memory database."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def store(db_session: Session) -> ShipmentService:
    """Shipment store over the in-memory database."""
    return ShipmentService(db_session)


# ============================================================================
# Test Data
# ============================================================================


@pytest.fixture
def ship_from() -> Address:
    """Warehouse origin address."""
    return Address(
        name="SmartBlinds Inc.",
        company="SmartBlinds Inc.",
        street1="123 Warehouse Dr",
        city="Indianapolis",
        state_code="IN",
        postal_code="46201",
        country_code="US",
        phone="800-555-1234",
    )


@pytest.fixture
def make_order() -> Callable[..., Order]:
    """Factory for storefront orders in the camelCase wire shape."""

    def _make(order_id: str, status: str = "Processing", **overrides: Any) -> Order:
        raw: dict[str, Any] = {
            "id": order_id,
            "orderNumber": f"SB-{order_id}",
            "status": status,
            "orderDate": "2026-03-02T10:00:00Z",
            "customer": {"name": "Jane Doe", "email": "jane@example.com"},
            "shippingAddress": {
                "name": "Jane Doe",
                "street1": "42 Elm St",
                "city": "Austin",
                "stateCode": "TX",
                "postalCode": "78701",
                "countryCode": "US",
                "phone": "512-555-0100",
            },
            "items": [
                {"productName": "Roller Blind", "quantity": 2, "weight": 1.5},
            ],
        }
        raw.update(overrides)
        return Order.model_validate(raw)

    return _make
