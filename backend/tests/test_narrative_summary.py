"""
Tests for the narrative payload — metrics summary plus flag breakdown.

Covers:
  - get_metrics_summary shape and top-N truncation
  - Entity filters drop the matching top-entity list
  - Stored flags preferred; in-memory evaluation when none are stored
  - JSON serialization with from/to keys
"""

from datetime import datetime

import pytest
from sqlalchemy import func, insert, select

from audit.rules import RuleConfig
from db.models import AuditFlag
from metrics.computations import MetricsAggregator
from metrics.summary import (
    TOP_ENTITIES,
    build_narrative_payload,
    get_metrics_summary,
    prepare_narrative_payload,
)


@pytest.mark.asyncio
class TestMetricsSummary:
    async def test_summary_shape(self, session_factory, seed, january):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01", name="Harbor Mart")
        await seed.orders(rep, outlet, [100] * 9 + [600])
        await seed.cancelled(rep, outlet, hours_before_ship_date=3)

        summary = await get_metrics_summary(MetricsAggregator(session_factory), january)

        assert summary.order_metrics.total_orders == 11
        assert summary.order_metrics.cancel_rate == round(1 / 11, 4)
        assert summary.pre_ship.pre_ship_cancellations == 1
        assert [a.outlet_name for a in summary.abnormal_orders] == ["Harbor Mart"]
        assert summary.abnormal_orders[0].ratio == 6.0
        assert [r.code for r in summary.top_sales_reps_by_cancel_rate] == ["SR-01"]

    async def test_top_entities_truncated(self, session_factory, seed, january):
        outlet = await seed.outlet("OUT-01")
        for i in range(TOP_ENTITIES + 2):
            rep = await seed.rep(f"SR-{i:02d}")
            await seed.orders(rep, outlet, [100])

        summary = await get_metrics_summary(MetricsAggregator(session_factory), january)

        assert len(summary.top_sales_reps_by_cancel_rate) == TOP_ENTITIES

    async def test_rep_filter_drops_rep_ranking(self, session_factory, seed, january):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        await seed.orders(rep, outlet, [100, 200])

        summary = await get_metrics_summary(MetricsAggregator(session_factory), january, sales_rep_id=rep.id)

        assert summary.top_sales_reps_by_cancel_rate == []
        assert [o.code for o in summary.top_outlets_by_cancel_rate] == ["OUT-01"]

    async def test_period_serializes_with_from_to(self, session_factory, january):
        summary = await get_metrics_summary(MetricsAggregator(session_factory), january)
        dumped = summary.model_dump(by_alias=True)
        assert dumped["period"] == {"from": "2025-01-01T00:00:00", "to": "2025-01-31T23:59:59.999999"}


@pytest.mark.asyncio
class TestNarrativePayload:
    async def test_falls_back_to_evaluation_without_writing(self, session_factory, seed, january):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        await seed.orders(rep, outlet, [100] * 9 + [600])

        payload = await prepare_narrative_payload(session_factory, january, config=RuleConfig())

        assert payload.flags_source == "evaluated"
        assert payload.flags.total == 1
        assert payload.flags.high == 1
        assert payload.flags.by_rule_code == {"ABNORMAL_ORDER_SIZE": 1}
        async with session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(AuditFlag)) == 0

    async def test_gated_rules_disclosed_as_skips(self, session_factory, seed, january):
        """Three cancelled orders → no flags, but every rule reports an insufficient sample."""
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        for _ in range(3):
            await seed.cancelled(rep, outlet, hours_before_ship_date=2)

        payload = await prepare_narrative_payload(session_factory, january, config=RuleConfig())
        dumped = payload.model_dump()

        assert dumped["flags"]["total"] == 0
        skipped = dumped["flags"]["skipped"]
        assert {s["rule_code"] for s in skipped} == {
            "HIGH_CANCEL_RATE",
            "END_OF_MONTH_SPIKE",
            "PRE_SHIP_CANCEL",
        }
        assert all(s["reason"] == "insufficient_sample" and s["min_required"] == 5 for s in skipped)
        rep_skip = next(s for s in skipped if s["entity_type"] == "SALES_REP")
        assert rep_skip["entity_id"] == str(rep.id)
        assert rep_skip["sample_size"] == 3

    async def test_uses_stored_flags_for_window(self, session_factory, seed, january):
        rep = await seed.rep("SR-01")
        outlet = await seed.outlet("OUT-01")
        await seed.orders(rep, outlet, [100] * 9 + [600])
        async with session_factory() as db:
            await db.execute(
                insert(AuditFlag),
                [
                    {
                        "entity_type": "SALES_REP",
                        "entity_id": str(rep.id),
                        "rule_code": "HIGH_CANCEL_RATE",
                        "severity": "WARN",
                        "message": "Sales rep SR-01 has elevated cancel rate of 16.0% (4/25 orders)",
                        "meta": {},
                        "created_at": datetime(2025, 1, 31, 23, 0),
                    }
                ],
            )
            await db.commit()

        payload = await prepare_narrative_payload(session_factory, january, config=RuleConfig())

        assert payload.flags_source == "stored"
        assert payload.flags.total == 1
        # Skips come from a fresh evaluation even when flags are stored
        assert any(s.rule_code == "PRE_SHIP_CANCEL" for s in payload.flags.skipped)
        assert payload.flags.flags[0].rule_code == "HIGH_CANCEL_RATE"
        assert payload.metrics.abnormal_orders[0].ratio == 6.0

    async def test_build_payload_json(self, session_factory, january):
        summary = await get_metrics_summary(MetricsAggregator(session_factory), january)
        payload = build_narrative_payload(summary, [])
        dumped = payload.model_dump(by_alias=True)
        assert dumped["flags"] == {
            "total": 0,
            "high": 0,
            "warn": 0,
            "info": 0,
            "by_rule_code": {},
            "flags": [],
            "skipped": [],
        }
        assert dumped["metrics"]["end_of_month"]["expected_pct"] == 0.1667
