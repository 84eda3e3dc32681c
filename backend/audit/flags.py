"""
Flag Repository — Batched persistence and filtered retrieval of audit flags.

Flags are write-once from this core's side. The resolution columns
(is_resolved, resolved_by, resolved_at) belong to the external review
workflow and are never set here.

Re-evaluating the same window adds a fresh set of rows; identical flags
from earlier runs are not de-duplicated.
"""

import uuid
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime

import structlog
from sqlalchemy import case, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from audit.evidence import Evidence
from core.config import get_settings
from core.errors import DependencyFailure, InputError
from db.models import AuditFlag, EntityType, RuleCode, Severity
from metrics.computations import AuditWindow

logger = structlog.get_logger()

SYSTEM_ENTITY_ID = "SYSTEM"

SEVERITY_RANK = {
    Severity.HIGH.value: 3,
    Severity.WARN.value: 2,
    Severity.INFO.value: 1,
}


@dataclass(frozen=True)
class FlagDraft:
    """A flag produced by a rule or visit check, not yet persisted."""

    entity_type: EntityType
    entity_id: str
    severity: Severity
    message: str
    evidence: Evidence
    order_id: uuid.UUID | None = None
    visit_log_id: uuid.UUID | None = None

    @property
    def rule_code(self) -> RuleCode:
        return self.evidence.rule_code

    def to_row(self, created_at: datetime) -> dict:
        return {
            "id": uuid.uuid4(),
            "entity_type": self.entity_type.value,
            "entity_id": str(self.entity_id),
            "rule_code": self.rule_code.value,
            "severity": self.severity.value,
            "message": self.message,
            "meta": self.evidence.as_meta(),
            "order_id": self.order_id,
            "visit_log_id": self.visit_log_id,
            "created_at": created_at,
            "is_resolved": False,
        }

    def to_report(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": str(self.entity_id),
            "rule_code": self.rule_code.value,
            "severity": self.severity.value,
            "message": self.message,
            "meta": self.evidence.as_meta(),
            "order_id": str(self.order_id) if self.order_id else None,
            "visit_log_id": str(self.visit_log_id) if self.visit_log_id else None,
        }


@dataclass(frozen=True)
class FlagQuery:
    entity_type: EntityType | None = None
    severity: Severity | None = None
    rule_code: RuleCode | str | None = None
    is_resolved: bool | None = None


@dataclass
class FlagSummary:
    total: int = 0
    high: int = 0
    warn: int = 0
    info: int = 0
    by_rule_code: dict[str, int] = field(default_factory=dict)

    def to_report(self) -> dict:
        return {
            "total": self.total,
            "high": self.high,
            "warn": self.warn,
            "info": self.info,
            "by_rule_code": dict(self.by_rule_code),
        }


def _value(item) -> str:
    return getattr(item, "value", item)


def count_flags(flags: Iterable[FlagDraft | AuditFlag]) -> FlagSummary:
    """Breakdown by severity and rule code; accepts drafts or stored rows."""
    severities: Counter[str] = Counter()
    rule_codes: Counter[str] = Counter()
    for flag in flags:
        severities[_value(flag.severity)] += 1
        rule_codes[_value(flag.rule_code)] += 1
    return FlagSummary(
        total=sum(severities.values()),
        high=severities[Severity.HIGH.value],
        warn=severities[Severity.WARN.value],
        info=severities[Severity.INFO.value],
        by_rule_code=dict(sorted(rule_codes.items())),
    )


# ──────────────────────────────────────────────────────────────────────────
# Persistence
# ──────────────────────────────────────────────────────────────────────────


async def save_flags(
    db: AsyncSession,
    drafts: Sequence[FlagDraft],
    batch_size: int | None = None,
    commit: bool = True,
) -> int:
    """
    Insert flags in batches as one logical write.

    All batches share one created_at and one transaction; a failure rolls
    the whole write back and raises DependencyFailure.
    """
    if not drafts:
        return 0

    batch_size = batch_size or get_settings().flag_batch_size
    created_at = datetime.utcnow()

    try:
        for start in range(0, len(drafts), batch_size):
            batch = drafts[start : start + batch_size]
            await db.execute(insert(AuditFlag), [draft.to_row(created_at) for draft in batch])
        if commit:
            await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("flags.save_failed", count=len(drafts), error=str(exc))
        raise DependencyFailure("save_flags", exc) from exc

    logger.info("flags.saved", count=len(drafts), batch_size=batch_size)
    return len(drafts)


async def get_flags(
    db: AsyncSession,
    date_from: str | date | datetime | None = None,
    date_to: str | date | datetime | None = None,
    query: FlagQuery | None = None,
    limit: int | None = None,
) -> list[AuditFlag]:
    """
    Stored flags filtered by creation window and attributes.

    Ordered by severity (HIGH first), then most recent first, capped at
    the configured page size.
    """
    query = query or FlagQuery()
    limit = limit or get_settings().flag_query_limit

    severity_rank = case(SEVERITY_RANK, value=AuditFlag.severity, else_=0)
    stmt = select(AuditFlag)

    if (date_from is None) != (date_to is None):
        missing = "to" if date_to is None else "from"
        raise InputError("date_from and date_to must be given together", field=missing)
    if date_from is not None:
        window = AuditWindow.parse(date_from, date_to)
        stmt = stmt.where(AuditFlag.created_at >= window.start, AuditFlag.created_at <= window.end)
    if query.entity_type is not None:
        stmt = stmt.where(AuditFlag.entity_type == query.entity_type.value)
    if query.severity is not None:
        stmt = stmt.where(AuditFlag.severity == query.severity.value)
    if query.rule_code is not None:
        stmt = stmt.where(AuditFlag.rule_code == _value(query.rule_code))
    if query.is_resolved is not None:
        stmt = stmt.where(AuditFlag.is_resolved.is_(query.is_resolved))

    stmt = stmt.order_by(severity_rank.desc(), AuditFlag.created_at.desc(), AuditFlag.id).limit(limit)

    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        logger.error("flags.query_failed", error=str(exc))
        raise DependencyFailure("get_flags", exc) from exc
    return list(result.scalars().all())
