"""
Metrics Aggregator — Order, cancellation and per-entity statistics for an audit window.

Two layers:
  - Pure computations over record lists (summarize_orders, analyze_end_of_month,
    analyze_pre_ship, find_abnormal_orders). No I/O, easy to test.
  - MetricsAggregator: loads records for a window through the storage
    collaborator and applies the computations. Every public call opens its
    own session, so concurrent rule checks never share one.

Values are kept at full precision; to_report() rounds them (4 dp for rates,
2 dp for currency and ratios) when they leave the core.
"""

import calendar
import uuid
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import DependencyFailure, InputError
from db.models import CancellationLog, EntityType, Order, OrderStatus, Outlet, SalesRep
from metrics.stats import median, pct_within, rate, round_currency, round_rate

logger = structlog.get_logger()

END_OF_MONTH_DAYS = 5
# Naive expectation for the last 5 days of a uniform 30-day month (5/30)
EXPECTED_END_OF_MONTH_PCT = 0.1667
END_OF_MONTH_SPIKE_MARKER = 1.5


# ──────────────────────────────────────────────────────────────────────────
# Audit Window
# ──────────────────────────────────────────────────────────────────────────


def _parse_bound(value: str | date | datetime, field_name: str, end_of_day: bool) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.max if end_of_day else time.min)
    elif isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                day = date.fromisoformat(text)
                parsed = datetime.combine(day, time.max if end_of_day else time.min)
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InputError(f"Invalid {field_name} date: {value!r}", field=field_name) from exc
    else:
        raise InputError(f"Invalid {field_name} date: {value!r}", field=field_name)

    # Stored timestamps are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class AuditWindow:
    """Inclusive [start, end] evaluation interval."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise InputError(
                f"Window start {self.start.isoformat()} is after end {self.end.isoformat()}",
                field="from",
            )

    @classmethod
    def parse(cls, date_from: str | date | datetime, date_to: str | date | datetime) -> "AuditWindow":
        """Build a window from ISO dates or datetimes. A date-only upper bound covers that whole day."""
        return cls(
            start=_parse_bound(date_from, "from", end_of_day=False),
            end=_parse_bound(date_to, "to", end_of_day=True),
        )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def as_dict(self) -> dict[str, str]:
        return {"from": self.start.isoformat(), "to": self.end.isoformat()}


# ──────────────────────────────────────────────────────────────────────────
# Records & Results
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OrderRecord:
    id: uuid.UUID
    order_number: str
    status: str
    total_amount: float
    created_at: datetime
    sales_rep_id: uuid.UUID
    outlet_id: uuid.UUID
    planned_ship_date: datetime | None = None


@dataclass(frozen=True)
class CancellationRecord:
    order_id: uuid.UUID
    reason: str
    cancelled_at: datetime
    hours_before_ship_date: float | None
    cancelled_by_sales_rep_id: uuid.UUID | None = None


@dataclass(frozen=True)
class EntityRef:
    id: uuid.UUID
    code: str
    name: str


@dataclass
class OrderMetrics:
    total_orders: int = 0
    created_orders: int = 0
    ready_to_ship_orders: int = 0
    delivered_orders: int = 0
    cancelled_orders: int = 0
    cancel_rate: float = 0.0
    total_revenue: float = 0.0
    avg_order_value: float = 0.0

    def to_report(self) -> dict:
        return {
            "total_orders": self.total_orders,
            "created_orders": self.created_orders,
            "ready_to_ship_orders": self.ready_to_ship_orders,
            "delivered_orders": self.delivered_orders,
            "cancelled_orders": self.cancelled_orders,
            "cancel_rate": round_rate(self.cancel_rate),
            "total_revenue": round_currency(self.total_revenue),
            "avg_order_value": round_currency(self.avg_order_value),
        }


@dataclass
class EntityMetrics:
    """Order summary scoped to one sales rep or one outlet."""

    entity_type: EntityType
    entity_id: uuid.UUID
    code: str
    name: str
    total_orders: int
    cancelled_orders: int
    delivered_orders: int
    cancel_rate: float
    total_revenue: float
    avg_order_value: float

    def to_report(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": str(self.entity_id),
            "code": self.code,
            "name": self.name,
            "total_orders": self.total_orders,
            "cancelled_orders": self.cancelled_orders,
            "delivered_orders": self.delivered_orders,
            "cancel_rate": round_rate(self.cancel_rate),
            "total_revenue": round_currency(self.total_revenue),
            "avg_order_value": round_currency(self.avg_order_value),
        }


SalesRepMetrics = EntityMetrics
OutletMetrics = EntityMetrics


@dataclass
class EndOfMonthAnalysis:
    total_orders: int
    end_of_month_orders: int
    rest_of_month_orders: int
    end_of_month_pct: float
    expected_pct: float
    spike_ratio: float
    has_spike: bool

    def to_report(self) -> dict:
        return {
            "total_orders": self.total_orders,
            "end_of_month_orders": self.end_of_month_orders,
            "rest_of_month_orders": self.rest_of_month_orders,
            "end_of_month_pct": round_rate(self.end_of_month_pct),
            "expected_pct": self.expected_pct,
            "spike_ratio": round_currency(self.spike_ratio),
            "has_spike": self.has_spike,
        }


@dataclass
class PreShipCancelAnalysis:
    total_cancellations: int
    pre_ship_cancellations: int
    pre_ship_pct: float
    threshold_hours: float
    by_reason: dict[str, int] = field(default_factory=dict)

    def to_report(self) -> dict:
        return {
            "total_cancellations": self.total_cancellations,
            "pre_ship_cancellations": self.pre_ship_cancellations,
            "pre_ship_pct": round_rate(self.pre_ship_pct),
            "threshold_hours": self.threshold_hours,
            "by_reason": dict(self.by_reason),
        }


@dataclass
class AbnormalOrderAnalysis:
    order_id: uuid.UUID
    order_number: str
    outlet_id: uuid.UUID
    outlet_name: str
    order_amount: float
    outlet_median: float
    ratio: float
    outlet_order_count: int

    def to_report(self) -> dict:
        return {
            "order_id": str(self.order_id),
            "order_number": self.order_number,
            "outlet_id": str(self.outlet_id),
            "outlet_name": self.outlet_name,
            "order_amount": round_currency(self.order_amount),
            "outlet_median": round_currency(self.outlet_median),
            "ratio": round_currency(self.ratio),
            "outlet_order_count": self.outlet_order_count,
        }


# ──────────────────────────────────────────────────────────────────────────
# Pure Computations
# ──────────────────────────────────────────────────────────────────────────


def summarize_orders(orders: Iterable[OrderRecord]) -> OrderMetrics:
    """Count orders by status; revenue is the sum over DELIVERED orders only."""
    counts: Counter[str] = Counter()
    revenue = 0.0
    for order in orders:
        counts[order.status] += 1
        if order.status == OrderStatus.DELIVERED.value:
            revenue += order.total_amount

    total = sum(counts.values())
    delivered = counts[OrderStatus.DELIVERED.value]
    cancelled = counts[OrderStatus.CANCELLED.value]
    return OrderMetrics(
        total_orders=total,
        created_orders=counts[OrderStatus.CREATED.value],
        ready_to_ship_orders=counts[OrderStatus.READY_TO_SHIP.value],
        delivered_orders=delivered,
        cancelled_orders=cancelled,
        cancel_rate=rate(cancelled, total),
        total_revenue=revenue,
        avg_order_value=rate(revenue, delivered),
    )


def summarize_entity(entity_type: EntityType, ref: EntityRef, orders: Iterable[OrderRecord]) -> EntityMetrics:
    totals = summarize_orders(orders)
    return EntityMetrics(
        entity_type=entity_type,
        entity_id=ref.id,
        code=ref.code,
        name=ref.name,
        total_orders=totals.total_orders,
        cancelled_orders=totals.cancelled_orders,
        delivered_orders=totals.delivered_orders,
        cancel_rate=totals.cancel_rate,
        total_revenue=totals.total_revenue,
        avg_order_value=totals.avg_order_value,
    )


def rank_by_cancel_rate(rows: Iterable[EntityMetrics]) -> list[EntityMetrics]:
    """Cancel rate descending; code then id break ties so re-runs order identically."""
    return sorted(rows, key=lambda row: (-row.cancel_rate, row.code, str(row.entity_id)))


def is_end_of_month(moment: datetime | date) -> bool:
    """True when the date falls in the last END_OF_MONTH_DAYS calendar days of its month."""
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    days_from_end = last_day - moment.day + 1
    return days_from_end <= END_OF_MONTH_DAYS


def analyze_end_of_month(created_ats: Sequence[datetime]) -> EndOfMonthAnalysis:
    total = len(created_ats)
    end_of_month = sum(1 for created_at in created_ats if is_end_of_month(created_at))
    actual_pct = rate(end_of_month, total)
    spike_ratio = rate(actual_pct, EXPECTED_END_OF_MONTH_PCT)
    return EndOfMonthAnalysis(
        total_orders=total,
        end_of_month_orders=end_of_month,
        rest_of_month_orders=total - end_of_month,
        end_of_month_pct=actual_pct,
        expected_pct=EXPECTED_END_OF_MONTH_PCT,
        spike_ratio=spike_ratio,
        has_spike=spike_ratio > END_OF_MONTH_SPIKE_MARKER,
    )


def analyze_pre_ship(cancellations: Sequence[CancellationRecord], threshold_hours: float) -> PreShipCancelAnalysis:
    """
    Share of cancellations made 0..threshold_hours before the planned ship date.

    Negative hours (cancelled after the ship date) and cancellations of
    orders without a planned ship date never count as pre-ship.
    """
    hours = [c.hours_before_ship_date for c in cancellations]
    pre_ship = sum(1 for h in hours if h is not None and 0 <= h <= threshold_hours)
    by_reason = Counter(c.reason for c in cancellations)
    return PreShipCancelAnalysis(
        total_cancellations=len(cancellations),
        pre_ship_cancellations=pre_ship,
        pre_ship_pct=pct_within(hours, 0, threshold_hours),
        threshold_hours=threshold_hours,
        by_reason=dict(sorted(by_reason.items())),
    )


def find_abnormal_orders(
    orders: Sequence[OrderRecord],
    multiplier: float,
    outlet_names: dict[uuid.UUID, str] | None = None,
) -> list[AbnormalOrderAnalysis]:
    """
    Orders whose amount is at least `multiplier` times their outlet's median.

    The median is taken over the same order set, so it includes the order
    under test. Outlets with a zero median are skipped (ratio undefined).
    """
    outlet_names = outlet_names or {}
    amounts_by_outlet: dict[uuid.UUID, list[float]] = defaultdict(list)
    for order in orders:
        amounts_by_outlet[order.outlet_id].append(order.total_amount)
    medians = {outlet_id: median(amounts) for outlet_id, amounts in amounts_by_outlet.items()}

    abnormal = []
    for order in orders:
        outlet_median = medians[order.outlet_id]
        if outlet_median <= 0:
            continue
        ratio = order.total_amount / outlet_median
        if ratio >= multiplier:
            abnormal.append(
                AbnormalOrderAnalysis(
                    order_id=order.id,
                    order_number=order.order_number,
                    outlet_id=order.outlet_id,
                    outlet_name=outlet_names.get(order.outlet_id, ""),
                    order_amount=order.total_amount,
                    outlet_median=outlet_median,
                    ratio=ratio,
                    outlet_order_count=len(amounts_by_outlet[order.outlet_id]),
                )
            )

    return sorted(abnormal, key=lambda a: (-a.ratio, a.order_number))


# ──────────────────────────────────────────────────────────────────────────
# Storage Reads
# ──────────────────────────────────────────────────────────────────────────


def _as_uuid(value: uuid.UUID | str, field_name: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise InputError(f"Malformed {field_name}: {value!r}", field=field_name) from exc


async def _ensure_exists(db: AsyncSession, model, entity_id: uuid.UUID, field_name: str) -> None:
    if await db.get(model, entity_id) is None:
        raise InputError(f"Unknown {field_name}: {entity_id}", field=field_name)


def _order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        total_amount=float(order.total_amount),
        created_at=order.created_at,
        sales_rep_id=order.sales_rep_id,
        outlet_id=order.outlet_id,
        planned_ship_date=order.planned_ship_date,
    )


async def load_orders(
    db: AsyncSession,
    window: AuditWindow,
    sales_rep_id: uuid.UUID | None = None,
    outlet_id: uuid.UUID | None = None,
) -> list[OrderRecord]:
    """Orders created inside the window, optionally scoped to one rep and/or outlet."""
    stmt = select(Order).where(Order.created_at >= window.start, Order.created_at <= window.end)
    if sales_rep_id is not None:
        stmt = stmt.where(Order.sales_rep_id == sales_rep_id)
    if outlet_id is not None:
        stmt = stmt.where(Order.outlet_id == outlet_id)
    result = await db.execute(stmt.order_by(Order.created_at, Order.order_number))
    return [_order_record(order) for order in result.scalars().all()]


async def load_cancellations(
    db: AsyncSession,
    window: AuditWindow,
    sales_rep_id: uuid.UUID | None = None,
) -> list[CancellationRecord]:
    """Cancellations logged inside the window, optionally by the cancelling sales rep."""
    stmt = select(CancellationLog).where(
        CancellationLog.cancelled_at >= window.start,
        CancellationLog.cancelled_at <= window.end,
    )
    if sales_rep_id is not None:
        stmt = stmt.where(CancellationLog.cancelled_by_sales_rep_id == sales_rep_id)
    result = await db.execute(stmt.order_by(CancellationLog.cancelled_at))
    return [
        CancellationRecord(
            order_id=log.order_id,
            reason=log.reason,
            cancelled_at=log.cancelled_at,
            hours_before_ship_date=log.hours_before_ship_date,
            cancelled_by_sales_rep_id=log.cancelled_by_sales_rep_id,
        )
        for log in result.scalars().all()
    ]


async def load_entities(db: AsyncSession, model, active_only: bool = True) -> list[EntityRef]:
    stmt = select(model.id, model.code, model.name)
    if active_only:
        stmt = stmt.where(model.is_active.is_(True))
    result = await db.execute(stmt.order_by(model.code))
    return [EntityRef(id=row.id, code=row.code, name=row.name) for row in result.all()]


# ──────────────────────────────────────────────────────────────────────────
# Aggregator
# ──────────────────────────────────────────────────────────────────────────


class MetricsAggregator:
    """Read-only metrics over a window, backed by the storage collaborator."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("metrics.storage_failed", operation=operation, error=str(exc))
            raise DependencyFailure(operation, exc) from exc

    async def order_metrics(
        self,
        window: AuditWindow,
        sales_rep_id: uuid.UUID | str | None = None,
        outlet_id: uuid.UUID | str | None = None,
    ) -> OrderMetrics:
        rep_id = _as_uuid(sales_rep_id, "sales_rep_id") if sales_rep_id is not None else None
        out_id = _as_uuid(outlet_id, "outlet_id") if outlet_id is not None else None
        async with self._session("order_metrics") as db:
            if rep_id is not None:
                await _ensure_exists(db, SalesRep, rep_id, "sales_rep_id")
            if out_id is not None:
                await _ensure_exists(db, Outlet, out_id, "outlet_id")
            orders = await load_orders(db, window, rep_id, out_id)
        return summarize_orders(orders)

    async def per_sales_rep_metrics(self, window: AuditWindow) -> list[EntityMetrics]:
        """One row per active sales rep, including reps without orders in the window."""
        async with self._session("per_sales_rep_metrics") as db:
            reps = await load_entities(db, SalesRep)
            orders = await load_orders(db, window)

        by_rep: dict[uuid.UUID, list[OrderRecord]] = defaultdict(list)
        for order in orders:
            by_rep[order.sales_rep_id].append(order)

        rows = [summarize_entity(EntityType.SALES_REP, rep, by_rep.get(rep.id, [])) for rep in reps]
        return rank_by_cancel_rate(rows)

    async def per_outlet_metrics(
        self,
        window: AuditWindow,
        sales_rep_id: uuid.UUID | str | None = None,
    ) -> list[EntityMetrics]:
        """Active outlets with at least one order in the window."""
        rep_id = _as_uuid(sales_rep_id, "sales_rep_id") if sales_rep_id is not None else None
        async with self._session("per_outlet_metrics") as db:
            if rep_id is not None:
                await _ensure_exists(db, SalesRep, rep_id, "sales_rep_id")
            outlets = await load_entities(db, Outlet)
            orders = await load_orders(db, window, rep_id)

        by_outlet: dict[uuid.UUID, list[OrderRecord]] = defaultdict(list)
        for order in orders:
            by_outlet[order.outlet_id].append(order)

        rows = [
            summarize_entity(EntityType.OUTLET, outlet, by_outlet[outlet.id])
            for outlet in outlets
            if by_outlet.get(outlet.id)
        ]
        return rank_by_cancel_rate(rows)

    async def end_of_month_spike(
        self,
        window: AuditWindow,
        sales_rep_id: uuid.UUID | str | None = None,
    ) -> EndOfMonthAnalysis:
        rep_id = _as_uuid(sales_rep_id, "sales_rep_id") if sales_rep_id is not None else None
        async with self._session("end_of_month_spike") as db:
            if rep_id is not None:
                await _ensure_exists(db, SalesRep, rep_id, "sales_rep_id")
            orders = await load_orders(db, window, rep_id)
        return analyze_end_of_month([order.created_at for order in orders])

    async def pre_ship_cancel_analysis(
        self,
        window: AuditWindow,
        threshold_hours: float,
        sales_rep_id: uuid.UUID | str | None = None,
    ) -> PreShipCancelAnalysis:
        if threshold_hours < 0:
            raise InputError("threshold_hours must be non-negative", field="threshold_hours")
        rep_id = _as_uuid(sales_rep_id, "sales_rep_id") if sales_rep_id is not None else None
        async with self._session("pre_ship_cancel_analysis") as db:
            if rep_id is not None:
                await _ensure_exists(db, SalesRep, rep_id, "sales_rep_id")
            cancellations = await load_cancellations(db, window, rep_id)
        return analyze_pre_ship(cancellations, threshold_hours)

    async def abnormal_orders(
        self,
        window: AuditWindow,
        multiplier: float,
        sales_rep_id: uuid.UUID | str | None = None,
    ) -> list[AbnormalOrderAnalysis]:
        if multiplier <= 0:
            raise InputError("multiplier must be positive", field="multiplier")
        rep_id = _as_uuid(sales_rep_id, "sales_rep_id") if sales_rep_id is not None else None
        async with self._session("abnormal_orders") as db:
            if rep_id is not None:
                await _ensure_exists(db, SalesRep, rep_id, "sales_rep_id")
            orders = await load_orders(db, window, rep_id)
            outlets = await load_entities(db, Outlet, active_only=False)
        names = {outlet.id: outlet.name for outlet in outlets}
        return find_abnormal_orders(orders, multiplier, names)
