"""
Pytest configuration and fixtures.
"""

import sys
import os
import uuid
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

# Add app to path
sys.path.append(os.getcwd())

from app.api.deps import get_gateway
from app.database import Base, get_db, make_session_factory
import app.models  # noqa: F401  (registers tables)
from app.fsm.machine import ORDER_STATE_FOR_PAYMENT
from app.fsm.states import PaymentStatus
from app.models.order import Order
from app.services.gateway import CheckoutLink
from app.services.order_ledger import OrderLedger
from app.services.order_service import OrderService
from app.services.payment_ledger import PaymentLedger
from app.services.payment_service import PaymentService

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


class FakeGateway:
    """
    In-memory stand-in for RazorpayGateway.

    Gateway order ids are gw_1, gw_2, ... in creation order. A signature is
    valid when it equals sign(order_id, payment_id).
    """

    def __init__(self):
        self.orders: List[Dict] = []
        self.links: List[Dict] = []
        self.error: Optional[Exception] = None

    @staticmethod
    def sign(gateway_order_id: str, gateway_payment_id: str) -> str:
        return f"sig:{gateway_order_id}|{gateway_payment_id}"

    async def create_order(self, reference_id, amount_minor_units, currency, metadata):
        if self.error:
            raise self.error
        self.orders.append({
            "reference_id": reference_id,
            "amount": amount_minor_units,
            "currency": currency,
            "notes": metadata,
        })
        return f"gw_{len(self.orders)}"

    async def verify_payment_signature(self, gateway_order_id, gateway_payment_id, signature):
        if self.error:
            raise self.error
        return signature == self.sign(gateway_order_id, gateway_payment_id)

    async def create_payment_link(self, reference_id, amount_minor_units, currency, description, customer, metadata):
        if self.error:
            raise self.error
        self.links.append({
            "reference_id": reference_id,
            "amount": amount_minor_units,
            "currency": currency,
            "customer": customer,
            "notes": metadata,
        })
        n = len(self.links)
        return CheckoutLink(id=f"plink_{n}", url=f"https://rzp.io/i/link{n}")


@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory schema per test."""
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = make_session_factory(test_engine)

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def payment_ledger(db) -> PaymentLedger:
    return PaymentLedger(db)


@pytest.fixture
def order_ledger(db) -> OrderLedger:
    return OrderLedger(db)


@pytest.fixture
def payment_service(payment_ledger, order_ledger, gateway) -> PaymentService:
    return PaymentService(payment_ledger, order_ledger, gateway)


@pytest.fixture
def order_service(order_ledger) -> OrderService:
    return OrderService(order_ledger)


@pytest.fixture
def make_order(order_ledger):
    """Factory for orders in status created."""

    async def _make_order(
        order_number: Optional[str] = None,
        total_amount: Decimal = Decimal("1500.00"),
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Order:
        if user_id is None and session_id is None:
            session_id = "guest-session-1"
        return await order_ledger.create(
            order_number=order_number or f"ORD-{uuid.uuid4().hex[:8].upper()}",
            total_amount=total_amount,
            items=[{
                "product_id": "sku-1",
                "name": "Mango pickle",
                "quantity": 1,
                "unit_price": str(total_amount),
            }],
            shipping_address={
                "name": "Asha Rao",
                "phone": "9876543210",
                "address_line1": "12 MG Road",
                "city": "Bengaluru",
                "state": "KA",
                "pincode": "560001",
            },
            user_id=user_id,
            session_id=session_id,
        )

    return _make_order


@pytest.fixture
def assert_consistent(payment_ledger, order_ledger):
    """Check the order mirrors its payment's status."""

    async def _assert_consistent(payment_id: uuid.UUID) -> None:
        payment = await payment_ledger.get_by_id(payment_id)
        order = await order_ledger.get_by_id(payment.order_id)
        status = PaymentStatus(payment.status)
        expected_status, expected_payment_status = ORDER_STATE_FOR_PAYMENT[status]

        if status == PaymentStatus.PENDING:
            return
        assert order.status == expected_status.value
        assert order.payment_status == expected_payment_status.value

    return _assert_consistent


@pytest_asyncio.fixture
async def client(db, gateway) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, bound to the test session and FakeGateway."""
    from app.main import app

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
