"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP client over the ASGI app
- Fake Redis for domain event publishing
- Actors, tokens and order/delivery factories
"""
# הגדרת סודות לפני ייבוא app - הולידטור דורש JWT_SECRET_KEY כש-DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-payment-webhook-secret")
os.environ.setdefault("PAYOUT_WEBHOOK_SECRET", "test-payout-webhook-secret")

import json
import uuid
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import Actor, ActorRole, create_access_token
from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.delivery import DeliveryStatus
from app.db.models.order import OrderStatus
from app.db.models.wallet import OwnerType, Wallet
from app.domain.services.dispatch_service import DispatchService
from app.domain.services.order_service import OrderLine, OrderService
from app.domain.services.wallet_service import WalletService
from app.main import app
from app.state_machine.states import DELIVERY_SEQUENCE


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


def enable_sqlite_transactions(engine, begin_statement: str = "BEGIN") -> None:
    """
    pysqlite/aiosqlite emit BEGIN lazily, which breaks SAVEPOINT semantics.
    Let SQLAlchemy own the transaction boundaries instead.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql(begin_statement)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    enable_sqlite_transactions(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """In-memory stand-in for the Redis client; records published messages"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, dict]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 0

    def channels(self) -> list[str]:
        return [channel for channel, _ in self.published]

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.event_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Actors
# ============================================================================

def make_actor(role: ActorRole, actor_id: uuid.UUID | None = None) -> Actor:
    return Actor(id=actor_id or uuid.uuid4(), role=role)


def auth_headers(actor: Actor) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(actor.id, actor.role)}"}


@pytest.fixture
def customer() -> Actor:
    return make_actor(ActorRole.CUSTOMER)


@pytest.fixture
def vendor() -> Actor:
    return make_actor(ActorRole.VENDOR)


@pytest.fixture
def rider() -> Actor:
    return make_actor(ActorRole.RIDER)


@pytest.fixture
def admin() -> Actor:
    return make_actor(ActorRole.ADMIN)


# ============================================================================
# Test Data Factories
# ============================================================================

DEFAULT_LINES = [
    OrderLine(product_name="Jollof rice", quantity=2, unit_price=Decimal("3000"), carbon_impact=Decimal("1.5")),
    OrderLine(product_name="Zobo", quantity=4, unit_price=Decimal("1000"), carbon_impact=Decimal("0.5")),
]


async def build_order(
    db: AsyncSession,
    customer_actor: Actor,
    vendor_actor: Actor,
    until: OrderStatus = OrderStatus.PENDING,
    lines: list[OrderLine] | None = None,
    delivery_fee: Decimal = Decimal("1000"),
    distance_km: Decimal = Decimal("4"),
    vehicle_type: str | None = None,
):
    """
    Create an order and walk it forward through the real services.

    ``until`` is one of pending, processing (paid), confirmed, preparing or
    ready. With ``vehicle_type`` the delivery opened on confirmation is
    replaced by one published for that vehicle, so the eco bonus applies.
    """
    service = OrderService(db)
    order = await service.create_order(
        customer_id=customer_actor.id,
        vendor_id=vendor_actor.id,
        items=lines or DEFAULT_LINES,
        delivery_fee=delivery_fee,
        distance_km=distance_km,
    )
    if until == OrderStatus.PENDING:
        return order

    order = await service.confirm_payment(order.id, f"ref-{order.id}")
    for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY):
        if order.status == until:
            break
        order = await service.transition(order.id, status, vendor_actor)
        if status == OrderStatus.CONFIRMED and vehicle_type:
            dispatch = DispatchService(db)
            opened = await dispatch.get_active_delivery(order.id)
            await dispatch.cancel(opened.id, vendor_actor, reason="vehicle chosen", republish=False)
            await dispatch.publish(order.id, vendor_actor, vehicle_type=vehicle_type)
            order = await service.get_order(order.id)
    return order


@pytest.fixture
def order_factory(db_session: AsyncSession, customer: Actor, vendor: Actor):
    async def _create_order(
        until: OrderStatus = OrderStatus.PENDING,
        customer_actor: Actor | None = None,
        vendor_actor: Actor | None = None,
        **kwargs,
    ):
        return await build_order(
            db_session, customer_actor or customer, vendor_actor or vendor, until=until, **kwargs
        )

    return _create_order


async def run_delivery(
    db: AsyncSession,
    order_id: uuid.UUID,
    rider_actor: Actor,
    until: DeliveryStatus = DeliveryStatus.DELIVERED,
):
    """
    Accept the order's active delivery and advance it step by step up to
    ``until``. The final hand-off uses the code the customer holds.
    """
    dispatch = DispatchService(db)
    delivery = await dispatch.get_active_delivery(order_id)
    delivery = await dispatch.accept(delivery.id, rider_actor.id)
    for status in DELIVERY_SEQUENCE[2:]:
        if delivery.status == until:
            break
        code = None
        if status == DeliveryStatus.DELIVERED:
            code = (await OrderService(db).get_order(order_id)).verification_code
        delivery = await dispatch.advance(delivery.id, rider_actor.id, status, verification_code=code)
    return delivery


@pytest.fixture
def deliver(db_session: AsyncSession, rider: Actor):
    async def _deliver(order_id, rider_actor: Actor | None = None, until: DeliveryStatus = DeliveryStatus.DELIVERED):
        return await run_delivery(db_session, order_id, rider_actor or rider, until)

    return _deliver


async def wallet_of(db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType):
    """Fresh read of an owner's wallet (None if it was never created)"""
    result = await db.execute(
        select(Wallet)
        .where(Wallet.owner_id == owner_id, Wallet.owner_type == owner_type)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def available(db: AsyncSession, owner_id: uuid.UUID, owner_type: OwnerType) -> Decimal:
    wallet = await wallet_of(db, owner_id, owner_type)
    return Decimal(str(wallet.available_balance)) if wallet else Decimal("0.00")


async def platform_available(db: AsyncSession) -> Decimal:
    return await available(db, settings.PLATFORM_OWNER_ID, OwnerType.PLATFORM)


@pytest.fixture
def assert_reconciled(db_session: AsyncSession):
    """Every wallet's cached balances equal a replay of its ledger"""
    async def _assert():
        reports = await WalletService(db_session).reconcile_all()
        for report in reports:
            assert report.consistent, f"wallet {report.wallet_id} diverged: {report.mismatches}"
        return reports

    return _assert
