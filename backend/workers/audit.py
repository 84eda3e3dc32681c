"""
Audit Worker — Monthly batch evaluation of the fraud rules.

Evaluates the previous calendar month (or an explicit window), persists the
flags, and returns a JSON summary. A storage failure retries the whole
window; individual rules are never retried on their own.

Schedule: crontab(day_of_month=1, hour=2, minute=0)
Queue: audit
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import structlog

from core.errors import DependencyFailure
from db.session import build_engine, build_session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()


def previous_month_window(today: date) -> tuple[date, date]:
    """First and last day of the calendar month before `today`."""
    last_day = today.replace(day=1) - timedelta(days=1)
    return last_day.replace(day=1), last_day


@celery_app.task(
    name="workers.audit.run_fraud_audit",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def run_fraud_audit(self, date_from: str | None = None, date_to: str | None = None):
    """
    Evaluate all fraud rules for a window and store the resulting flags.

    Without explicit bounds the previous calendar month is used.
    """
    from audit.rules import RuleConfig, detect_and_save_flags
    from core.config import get_settings
    from metrics.computations import AuditWindow

    run_id = self.request.id or "manual"
    if date_from is None or date_to is None:
        start, end = previous_month_window(datetime.now(timezone.utc).date())
        date_from, date_to = start.isoformat(), end.isoformat()

    window = AuditWindow.parse(date_from, date_to)
    logger.info("audit_worker.started", run_id=run_id, **window.as_dict())

    async def _run():
        settings = get_settings()
        engine = build_engine(settings.database_url, echo=settings.database_echo)
        try:
            return await detect_and_save_flags(
                build_session_factory(engine), window, RuleConfig.from_settings(settings)
            )
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_run())
    except DependencyFailure as exc:
        logger.error("audit_worker.failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    summary = {
        "status": "success",
        "period": window.as_dict(),
        "flags": result.summary.to_report(),
        "saved": result.saved,
        "skipped_rules": len(result.skips),
        "run_id": run_id,
    }
    logger.info("audit_worker.complete", **summary)
    return summary
