"""
Test Configuration — Fixtures for a file-backed async DB and seed data.

Each test gets its own SQLite file under tmp_path. A file (rather than
:memory:) lets the aggregator open several sessions against the same
database, the way it does against Postgres.
"""

import itertools
import uuid
from datetime import datetime, timedelta

import pytest

from db.models import CancellationLog, CancellationReason, Order, OrderStatus, Outlet, SalesRep
from db.session import Base, build_engine, build_session_factory
from metrics.computations import AuditWindow

JANUARY = AuditWindow.parse("2025-01-01", "2025-01-31")


@pytest.fixture
async def test_engine(tmp_path):
    """Create a test database engine and build all tables."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def january():
    return JANUARY


class Seeder:
    """Commits fixture rows through short-lived sessions so every reader sees them."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._numbers = itertools.count(1)

    async def _add(self, *rows):
        async with self._session_factory() as db:
            db.add_all(rows)
            await db.commit()
        return rows[0] if len(rows) == 1 else rows

    async def rep(self, code: str, name: str | None = None, is_active: bool = True) -> SalesRep:
        return await self._add(SalesRep(id=uuid.uuid4(), code=code, name=name or f"Rep {code}", is_active=is_active))

    async def outlet(
        self,
        code: str,
        name: str | None = None,
        latitude: float | None = 10.0,
        longitude: float | None = 106.0,
        is_active: bool = True,
    ) -> Outlet:
        return await self._add(
            Outlet(
                id=uuid.uuid4(),
                code=code,
                name=name or f"Outlet {code}",
                latitude=latitude,
                longitude=longitude,
                is_active=is_active,
            )
        )

    async def orders(
        self,
        rep: SalesRep,
        outlet: Outlet,
        amounts: list[float],
        created_at: datetime = datetime(2025, 1, 10, 9, 0),
        status: OrderStatus = OrderStatus.DELIVERED,
    ) -> list[Order]:
        rows = [
            Order(
                id=uuid.uuid4(),
                order_number=f"ORD-{next(self._numbers):04d}",
                status=status.value,
                total_amount=amount,
                created_at=created_at,
                planned_ship_date=created_at + timedelta(days=3),
                sales_rep_id=rep.id,
                outlet_id=outlet.id,
            )
            for amount in amounts
        ]
        async with self._session_factory() as db:
            db.add_all(rows)
            await db.commit()
        return rows

    async def cancelled(
        self,
        rep: SalesRep,
        outlet: Outlet,
        hours_before_ship_date: float | None,
        created_at: datetime = datetime(2025, 1, 10, 9, 0),
        reason: CancellationReason = CancellationReason.CUSTOMER_REQUEST,
        amount: float = 100.0,
    ) -> Order:
        (order,) = await self.orders(rep, outlet, [amount], created_at=created_at, status=OrderStatus.CANCELLED)
        await self._add(
            CancellationLog(
                id=uuid.uuid4(),
                order_id=order.id,
                reason=reason.value,
                cancelled_at=created_at + timedelta(hours=1),
                hours_before_ship_date=hours_before_ship_date,
                cancelled_by_sales_rep_id=rep.id,
            )
        )
        return order


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
