"""
Rule Engine — Heuristic fraud-risk rules over windowed order metrics.

Rules:
  - HIGH_CANCEL_RATE (per sales rep, per outlet): cancel rate ≥ 15% WARN, ≥ 25% HIGH
  - END_OF_MONTH_SPIKE: last-5-day order share vs 5/30 baseline, ≥ 1.5x WARN, ≥ 2x HIGH
  - PRE_SHIP_CANCEL: share of cancellations ≤ 24h before ship date, ≥ 10% WARN, ≥ 20% HIGH
  - ABNORMAL_ORDER_SIZE: amount / outlet median, ≥ 3x WARN, ≥ 5x HIGH

Each check is a coroutine returning its own RuleOutcome. The five checks run
concurrently and are concatenated after the join in a fixed order. A rule
whose sample is below min_samples is skipped and the skip is returned
alongside the flags. A storage failure in any check fails the whole batch.
"""

import asyncio
from dataclasses import dataclass, field, replace

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.evidence import (
    AbnormalOrderEvidence,
    CancelRateEvidence,
    EndOfMonthEvidence,
    PreShipCancelEvidence,
)
from audit.flags import SYSTEM_ENTITY_ID, FlagDraft, FlagSummary, count_flags, save_flags
from core.config import Settings, get_settings
from db.models import EntityType, RuleCode, Severity
from metrics.computations import (
    END_OF_MONTH_DAYS,
    AuditWindow,
    EntityMetrics,
    MetricsAggregator,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Configuration
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleConfig:
    high_cancel_rate_warn: float = 0.15
    high_cancel_rate_high: float = 0.25
    end_of_month_spike_warn: float = 1.5
    end_of_month_spike_high: float = 2.0
    pre_ship_cancel_hours: float = 24.0
    pre_ship_cancel_rate_warn: float = 0.10
    pre_ship_cancel_rate_high: float = 0.20
    abnormal_order_multiplier_warn: float = 3.0
    abnormal_order_multiplier_high: float = 5.0
    min_samples: int = 5

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RuleConfig":
        settings = settings or get_settings()
        return cls(
            high_cancel_rate_warn=settings.high_cancel_rate_warn,
            high_cancel_rate_high=settings.high_cancel_rate_high,
            end_of_month_spike_warn=settings.end_of_month_spike_warn,
            end_of_month_spike_high=settings.end_of_month_spike_high,
            pre_ship_cancel_hours=settings.pre_ship_cancel_hours,
            pre_ship_cancel_rate_warn=settings.pre_ship_cancel_rate_warn,
            pre_ship_cancel_rate_high=settings.pre_ship_cancel_rate_high,
            abnormal_order_multiplier_warn=settings.abnormal_order_multiplier_warn,
            abnormal_order_multiplier_high=settings.abnormal_order_multiplier_high,
            min_samples=settings.min_orders_for_analysis,
        )


# ──────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RuleSkip:
    """A rule that produced no verdict because its sample was too small."""

    rule_code: RuleCode
    entity_type: EntityType
    entity_id: str
    sample_size: int
    min_required: int
    reason: str = "insufficient_sample"

    def to_report(self) -> dict:
        return {
            "rule_code": self.rule_code.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "sample_size": self.sample_size,
            "min_required": self.min_required,
            "reason": self.reason,
        }


@dataclass
class RuleOutcome:
    flags: list[FlagDraft] = field(default_factory=list)
    skips: list[RuleSkip] = field(default_factory=list)


@dataclass
class EvaluationResult:
    window: AuditWindow
    flags: list[FlagDraft]
    skips: list[RuleSkip]
    summary: FlagSummary
    saved: int = 0

    def to_report(self) -> dict:
        return {
            "period": self.window.as_dict(),
            "summary": self.summary.to_report(),
            "flags": [flag.to_report() for flag in self.flags],
            "skipped": [skip.to_report() for skip in self.skips],
            "saved": self.saved,
        }


def classify(value: float, warn: float, high: float) -> Severity | None:
    """HIGH when value ≥ high, WARN when value ≥ warn, otherwise None."""
    if value >= high:
        return Severity.HIGH
    if value >= warn:
        return Severity.WARN
    return None


def _skip(rule_code: RuleCode, entity_type: EntityType, entity_id: str, sample_size: int, min_required: int) -> RuleSkip:
    skip = RuleSkip(
        rule_code=rule_code,
        entity_type=entity_type,
        entity_id=entity_id,
        sample_size=sample_size,
        min_required=min_required,
    )
    logger.info(
        "audit.rule_skipped",
        rule_code=rule_code.value,
        entity_type=entity_type.value,
        entity_id=entity_id,
        sample_size=sample_size,
        min_required=min_required,
    )
    return skip


# ──────────────────────────────────────────────────────────────────────────
# Cancel Rate
# ──────────────────────────────────────────────────────────────────────────


_ENTITY_LABELS = {
    EntityType.SALES_REP: "Sales rep",
    EntityType.OUTLET: "Outlet",
}


def evaluate_cancel_rates(rows: list[EntityMetrics], config: RuleConfig) -> RuleOutcome:
    outcome = RuleOutcome()
    for row in rows:
        if row.total_orders < config.min_samples:
            outcome.skips.append(
                _skip(RuleCode.HIGH_CANCEL_RATE, row.entity_type, str(row.entity_id), row.total_orders, config.min_samples)
            )
            continue

        severity = classify(row.cancel_rate, config.high_cancel_rate_warn, config.high_cancel_rate_high)
        if severity is None:
            continue

        label = _ENTITY_LABELS[row.entity_type]
        pct = row.cancel_rate * 100
        if severity is Severity.HIGH:
            message = (
                f"{label} {row.code} has {pct:.1f}% cancel rate "
                f"({row.cancelled_orders}/{row.total_orders} orders)"
            )
        else:
            message = (
                f"{label} {row.code} has elevated cancel rate of {pct:.1f}% "
                f"({row.cancelled_orders}/{row.total_orders} orders)"
            )

        outcome.flags.append(
            FlagDraft(
                entity_type=row.entity_type,
                entity_id=str(row.entity_id),
                severity=severity,
                message=message,
                evidence=CancelRateEvidence(
                    entity_code=row.code,
                    entity_name=row.name,
                    cancel_rate=row.cancel_rate,
                    total_orders=row.total_orders,
                    cancelled_orders=row.cancelled_orders,
                    warn_threshold=config.high_cancel_rate_warn,
                    high_threshold=config.high_cancel_rate_high,
                ),
            )
        )
    return outcome


async def check_sales_rep_cancel_rates(
    aggregator: MetricsAggregator, window: AuditWindow, config: RuleConfig
) -> RuleOutcome:
    rows = await aggregator.per_sales_rep_metrics(window)
    return evaluate_cancel_rates(rows, config)


async def check_outlet_cancel_rates(
    aggregator: MetricsAggregator, window: AuditWindow, config: RuleConfig
) -> RuleOutcome:
    rows = await aggregator.per_outlet_metrics(window)
    return evaluate_cancel_rates(rows, config)


# ──────────────────────────────────────────────────────────────────────────
# End-of-Month Spike
# ──────────────────────────────────────────────────────────────────────────


async def check_end_of_month_spike(
    aggregator: MetricsAggregator, window: AuditWindow, config: RuleConfig
) -> RuleOutcome:
    analysis = await aggregator.end_of_month_spike(window)
    outcome = RuleOutcome()

    if analysis.total_orders < config.min_samples:
        outcome.skips.append(
            _skip(RuleCode.END_OF_MONTH_SPIKE, EntityType.ORDER, SYSTEM_ENTITY_ID, analysis.total_orders, config.min_samples)
        )
        return outcome

    severity = classify(analysis.spike_ratio, config.end_of_month_spike_warn, config.end_of_month_spike_high)
    if severity is None:
        return outcome

    pct = analysis.end_of_month_pct * 100
    if severity is Severity.HIGH:
        message = (
            f"End-of-month order spike detected: {analysis.end_of_month_orders} orders ({pct:.1f}%) "
            f"in last {END_OF_MONTH_DAYS} days, {analysis.spike_ratio:.2f}x expected"
        )
    else:
        message = (
            f"Elevated end-of-month orders: {analysis.end_of_month_orders} orders ({pct:.1f}%) "
            f"in last {END_OF_MONTH_DAYS} days, {analysis.spike_ratio:.2f}x expected"
        )

    outcome.flags.append(
        FlagDraft(
            entity_type=EntityType.ORDER,
            entity_id=SYSTEM_ENTITY_ID,
            severity=severity,
            message=message,
            evidence=EndOfMonthEvidence(
                end_of_month_orders=analysis.end_of_month_orders,
                rest_of_month_orders=analysis.rest_of_month_orders,
                total_orders=analysis.total_orders,
                percentage=analysis.end_of_month_pct,
                expected_percentage=analysis.expected_pct,
                spike_ratio=analysis.spike_ratio,
                end_of_month_days=END_OF_MONTH_DAYS,
            ),
        )
    )
    return outcome


# ──────────────────────────────────────────────────────────────────────────
# Pre-Ship Cancellations
# ──────────────────────────────────────────────────────────────────────────


async def check_pre_ship_cancellations(
    aggregator: MetricsAggregator, window: AuditWindow, config: RuleConfig
) -> RuleOutcome:
    analysis = await aggregator.pre_ship_cancel_analysis(window, config.pre_ship_cancel_hours)
    outcome = RuleOutcome()

    if analysis.total_cancellations < config.min_samples:
        outcome.skips.append(
            _skip(
                RuleCode.PRE_SHIP_CANCEL,
                EntityType.ORDER,
                SYSTEM_ENTITY_ID,
                analysis.total_cancellations,
                config.min_samples,
            )
        )
        return outcome

    severity = classify(analysis.pre_ship_pct, config.pre_ship_cancel_rate_warn, config.pre_ship_cancel_rate_high)
    if severity is None:
        return outcome

    pct = analysis.pre_ship_pct * 100
    hours = f"{config.pre_ship_cancel_hours:g}"
    if severity is Severity.HIGH:
        message = (
            f"High rate of pre-ship cancellations: {analysis.pre_ship_cancellations} of "
            f"{analysis.total_cancellations} orders ({pct:.1f}%) cancelled within {hours}h of ship date"
        )
    else:
        message = (
            f"Elevated pre-ship cancellations: {analysis.pre_ship_cancellations} of "
            f"{analysis.total_cancellations} orders ({pct:.1f}%) cancelled within {hours}h of ship date"
        )

    outcome.flags.append(
        FlagDraft(
            entity_type=EntityType.ORDER,
            entity_id=SYSTEM_ENTITY_ID,
            severity=severity,
            message=message,
            evidence=PreShipCancelEvidence(
                pre_ship_cancellations=analysis.pre_ship_cancellations,
                total_cancellations=analysis.total_cancellations,
                percentage=analysis.pre_ship_pct,
                threshold_hours=config.pre_ship_cancel_hours,
                by_reason=analysis.by_reason,
            ),
        )
    )
    return outcome


# ──────────────────────────────────────────────────────────────────────────
# Abnormal Order Size
# ──────────────────────────────────────────────────────────────────────────


async def check_abnormal_orders(
    aggregator: MetricsAggregator, window: AuditWindow, config: RuleConfig
) -> RuleOutcome:
    """
    HIGH set first, then the WARN set minus anything already HIGH, so an
    order is flagged once at its highest applicable severity.
    """
    high_orders = await aggregator.abnormal_orders(window, config.abnormal_order_multiplier_high)
    warn_orders = await aggregator.abnormal_orders(window, config.abnormal_order_multiplier_warn)

    outcome = RuleOutcome()
    skipped_outlets: set = set()
    high_ids = {order.order_id for order in high_orders}
    candidates = [(order, Severity.HIGH) for order in high_orders]
    candidates += [(order, Severity.WARN) for order in warn_orders if order.order_id not in high_ids]

    for order, severity in candidates:
        if order.outlet_order_count < config.min_samples:
            if order.outlet_id not in skipped_outlets:
                skipped_outlets.add(order.outlet_id)
                outcome.skips.append(
                    _skip(
                        RuleCode.ABNORMAL_ORDER_SIZE,
                        EntityType.OUTLET,
                        str(order.outlet_id),
                        order.outlet_order_count,
                        config.min_samples,
                    )
                )
            continue

        outcome.flags.append(
            FlagDraft(
                entity_type=EntityType.ORDER,
                entity_id=str(order.order_id),
                severity=severity,
                message=(
                    f"Order {order.order_number} is {order.ratio:.2f}x the outlet median "
                    f"({order.order_amount:.2f} vs median {order.outlet_median:.2f})"
                ),
                evidence=AbnormalOrderEvidence(
                    order_number=order.order_number,
                    outlet_id=str(order.outlet_id),
                    outlet_name=order.outlet_name,
                    order_amount=order.order_amount,
                    outlet_median=order.outlet_median,
                    ratio=order.ratio,
                    outlet_order_count=order.outlet_order_count,
                ),
                order_id=order.order_id,
            )
        )
    return outcome


# ──────────────────────────────────────────────────────────────────────────
# Engine Entry Points
# ──────────────────────────────────────────────────────────────────────────


RULE_CHECKS = (
    check_sales_rep_cancel_rates,
    check_outlet_cancel_rates,
    check_end_of_month_spike,
    check_pre_ship_cancellations,
    check_abnormal_orders,
)


async def run_fraud_detection(
    aggregator: MetricsAggregator,
    window: AuditWindow,
    config: RuleConfig | None = None,
) -> EvaluationResult:
    """
    Run every rule for the window concurrently and join the results.

    Any failing check propagates its exception; no partial result is returned.
    """
    config = config or RuleConfig.from_settings()
    logger.info("audit.rules_started", **window.as_dict())

    tasks = [asyncio.ensure_future(check(aggregator, window, config)) for check in RULE_CHECKS]
    try:
        outcomes = await asyncio.gather(*tasks)
    except Exception as exc:
        for task in tasks:
            task.cancel()
        # Drain siblings so their exceptions are retrieved
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.error("audit.rules_failed", error=str(exc), **window.as_dict())
        raise

    flags = [flag for outcome in outcomes for flag in outcome.flags]
    skips = [skip for outcome in outcomes for skip in outcome.skips]
    summary = count_flags(flags)

    logger.info(
        "audit.rules_complete",
        total=summary.total,
        high=summary.high,
        warn=summary.warn,
        skipped=len(skips),
        **window.as_dict(),
    )
    return EvaluationResult(window=window, flags=flags, skips=skips, summary=summary)


async def detect_and_save_flags(
    session_factory: async_sessionmaker[AsyncSession],
    window: AuditWindow,
    config: RuleConfig | None = None,
) -> EvaluationResult:
    """Evaluate the window and persist its flags as one batched write."""
    result = await run_fraud_detection(MetricsAggregator(session_factory), window, config)
    if not result.flags:
        return result

    async with session_factory() as db:
        saved = await save_flags(db, result.flags)
    return replace(result, saved=saved)
