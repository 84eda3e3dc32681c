"""
Narrative Payload — Serializable metrics + flag breakdown for the summary writer.

The narrative service turns this payload into prose. It is a pure consumer:
nothing here calls it. Numbers are rounded for reporting and flag evidence
stays structured; only flag messages carry text.
"""

import asyncio
import uuid
from collections.abc import Sequence

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.flags import FlagDraft, count_flags, get_flags
from audit.rules import RuleConfig, RuleSkip, run_fraud_detection
from db.models import AuditFlag
from metrics.computations import AuditWindow, MetricsAggregator

logger = structlog.get_logger()

TOP_ENTITIES = 5
TOP_ABNORMAL_ORDERS = 10
SUMMARY_PRE_SHIP_HOURS = 24.0
SUMMARY_ABNORMAL_MULTIPLIER = 3.0


class Period(BaseModel):
    date_from: str = Field(serialization_alias="from")
    date_to: str = Field(serialization_alias="to")


class OrderTotals(BaseModel):
    total_orders: int
    created_orders: int
    ready_to_ship_orders: int
    delivered_orders: int
    cancelled_orders: int
    cancel_rate: float
    total_revenue: float
    avg_order_value: float


class EndOfMonthSummary(BaseModel):
    total_orders: int
    end_of_month_orders: int
    rest_of_month_orders: int
    end_of_month_pct: float
    expected_pct: float
    spike_ratio: float
    has_spike: bool


class PreShipSummary(BaseModel):
    total_cancellations: int
    pre_ship_cancellations: int
    pre_ship_pct: float
    threshold_hours: float
    by_reason: dict[str, int] = Field(default_factory=dict)


class EntityCancelRate(BaseModel):
    entity_type: str
    entity_id: str
    code: str
    name: str
    total_orders: int
    cancelled_orders: int
    delivered_orders: int
    cancel_rate: float
    total_revenue: float
    avg_order_value: float


class AbnormalOrderSummary(BaseModel):
    order_id: str
    order_number: str
    outlet_id: str
    outlet_name: str
    order_amount: float
    outlet_median: float
    ratio: float
    outlet_order_count: int


class MetricsSummary(BaseModel):
    period: Period
    order_metrics: OrderTotals
    end_of_month: EndOfMonthSummary
    pre_ship: PreShipSummary
    abnormal_orders: list[AbnormalOrderSummary] = Field(default_factory=list)
    top_sales_reps_by_cancel_rate: list[EntityCancelRate] = Field(default_factory=list)
    top_outlets_by_cancel_rate: list[EntityCancelRate] = Field(default_factory=list)


class FlagLine(BaseModel):
    rule_code: str
    severity: str
    entity_type: str
    message: str


class SkippedRule(BaseModel):
    rule_code: str
    entity_type: str
    entity_id: str
    sample_size: int
    min_required: int
    reason: str


class FlagsBreakdown(BaseModel):
    total: int = 0
    high: int = 0
    warn: int = 0
    info: int = 0
    by_rule_code: dict[str, int] = Field(default_factory=dict)
    flags: list[FlagLine] = Field(default_factory=list)
    # Rules gated on sample size; zero flags alongside skips means "insufficient data", not "clean"
    skipped: list[SkippedRule] = Field(default_factory=list)


class NarrativePayload(BaseModel):
    metrics: MetricsSummary
    flags: FlagsBreakdown
    flags_source: str = "stored"


async def get_metrics_summary(
    aggregator: MetricsAggregator,
    window: AuditWindow,
    sales_rep_id: uuid.UUID | str | None = None,
    outlet_id: uuid.UUID | str | None = None,
) -> MetricsSummary:
    """Headline metrics for a window; top-entity lists are omitted when filtered on that entity."""

    async def _empty() -> list:
        return []

    (
        order_metrics,
        end_of_month,
        pre_ship,
        abnormal,
        rep_rows,
        outlet_rows,
    ) = await asyncio.gather(
        aggregator.order_metrics(window, sales_rep_id, outlet_id),
        aggregator.end_of_month_spike(window, sales_rep_id),
        aggregator.pre_ship_cancel_analysis(window, SUMMARY_PRE_SHIP_HOURS, sales_rep_id),
        aggregator.abnormal_orders(window, SUMMARY_ABNORMAL_MULTIPLIER, sales_rep_id),
        aggregator.per_sales_rep_metrics(window) if sales_rep_id is None else _empty(),
        aggregator.per_outlet_metrics(window, sales_rep_id) if outlet_id is None else _empty(),
    )

    period = window.as_dict()
    return MetricsSummary(
        period=Period(date_from=period["from"], date_to=period["to"]),
        order_metrics=OrderTotals(**order_metrics.to_report()),
        end_of_month=EndOfMonthSummary(**end_of_month.to_report()),
        pre_ship=PreShipSummary(**pre_ship.to_report()),
        abnormal_orders=[AbnormalOrderSummary(**a.to_report()) for a in abnormal[:TOP_ABNORMAL_ORDERS]],
        top_sales_reps_by_cancel_rate=[EntityCancelRate(**r.to_report()) for r in rep_rows[:TOP_ENTITIES]],
        top_outlets_by_cancel_rate=[EntityCancelRate(**o.to_report()) for o in outlet_rows[:TOP_ENTITIES]],
    )


def _line(flag: FlagDraft | AuditFlag) -> FlagLine:
    return FlagLine(
        rule_code=getattr(flag.rule_code, "value", flag.rule_code),
        severity=getattr(flag.severity, "value", flag.severity),
        entity_type=getattr(flag.entity_type, "value", flag.entity_type),
        message=flag.message,
    )


def build_narrative_payload(
    summary: MetricsSummary,
    flags: Sequence[FlagDraft | AuditFlag],
    flags_source: str = "stored",
    skips: Sequence[RuleSkip] = (),
) -> NarrativePayload:
    counts = count_flags(flags)
    return NarrativePayload(
        metrics=summary,
        flags=FlagsBreakdown(
            total=counts.total,
            high=counts.high,
            warn=counts.warn,
            info=counts.info,
            by_rule_code=counts.by_rule_code,
            flags=[_line(flag) for flag in flags],
            skipped=[SkippedRule(**skip.to_report()) for skip in skips],
        ),
        flags_source=flags_source,
    )


async def prepare_narrative_payload(
    session_factory: async_sessionmaker[AsyncSession],
    window: AuditWindow,
    sales_rep_id: uuid.UUID | str | None = None,
    outlet_id: uuid.UUID | str | None = None,
    config: RuleConfig | None = None,
) -> NarrativePayload:
    """
    Payload for the narrative writer.

    Uses flags already stored for the window; when there are none, the rules
    are evaluated in memory and their (unsaved) flags are used instead.
    Skips are never stored, so the rules are always evaluated to report them.
    """
    aggregator = MetricsAggregator(session_factory)
    summary = await get_metrics_summary(aggregator, window, sales_rep_id, outlet_id)
    result = await run_fraud_detection(aggregator, window, config)

    async with session_factory() as db:
        stored = await get_flags(db, window.start, window.end)

    if stored:
        return build_narrative_payload(summary, stored, flags_source="stored", skips=result.skips)

    logger.info("summary.no_stored_flags", skipped=len(result.skips), **window.as_dict())
    return build_narrative_payload(summary, result.flags, flags_source="evaluated", skips=result.skips)
