"""
Scheduled receipts sweep.

Once per London calendar day: re-run automation over pending transactions,
then ask the classifier about rows that still lack a vendor or expense.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.transaction import ReceiptTransaction
from .ai_classifier import classify_transactions_with_ai
from .automation import apply_automation_rules
from .cron_lock import acquire_cron_run, resolve_cron_run
from .outcome import ActionError, AuditLogWriteError, SafetyAbort

logger = logging.getLogger(__name__)

RECEIPTS_SWEEP_JOB = "receipts-nightly-sweep"


def run_key_for(now: datetime, timezone_name: str = "Europe/London") -> str:
    """Calendar day in the business timezone, e.g. 2024-03-31"""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(timezone_name)).date().isoformat()


def _unclassified_pending_ids(db: Session):
    try:
        return [
            row[0]
            for row in db.query(ReceiptTransaction.id)
            .filter(
                ReceiptTransaction.status == "pending",
                or_(
                    and_(ReceiptTransaction.vendor_name.is_(None), ReceiptTransaction.vendor_source.is_(None)),
                    and_(ReceiptTransaction.expense_category.is_(None), ReceiptTransaction.amount_out > 0),
                ),
            )
            .order_by(ReceiptTransaction.id.asc())
            .all()
        ]
    except SQLAlchemyError as exc:
        db.rollback()
        raise SafetyAbort("Failed to load the set of unclassified transactions") from exc


def run_receipts_sweep(
    db: Session,
    settings,
    classifier=None,
    now: Optional[datetime] = None,
) -> Union[Dict, ActionError]:
    """
    Run the daily receipts sweep under the cron run lock.

    Returns:
        dict with skipped=True when another run owns the period, the sweep
        counters on success, or an ActionError when a safety abort failed the run
    """
    now = now or datetime.now(timezone.utc)
    run_key = run_key_for(now, settings.CRON_TIMEZONE)
    lease = acquire_cron_run(
        db,
        RECEIPTS_SWEEP_JOB,
        run_key,
        now=now,
        stale_after=timedelta(minutes=settings.CRON_STALE_RUN_MINUTES),
    )
    if lease.skip:
        return {"success": True, "skipped": True, "reason": lease.reason, "runKey": run_key}

    try:
        pending_ids = [
            row[0]
            for row in db.query(ReceiptTransaction.id)
            .filter(ReceiptTransaction.status == "pending")
            .order_by(ReceiptTransaction.id.asc())
            .all()
        ]
        try:
            automation = apply_automation_rules(db, pending_ids)
        except AuditLogWriteError as exc:
            raise SafetyAbort(str(exc)) from exc

        classified = 0
        chunks = 0
        chunk_failures = 0
        if classifier is not None:
            unclassified = _unclassified_pending_ids(db)
            chunk_size = settings.AI_JOB_CHUNK_SIZE
            for start in range(0, len(unclassified), chunk_size):
                chunks += 1
                updated = classify_transactions_with_ai(db, unclassified[start:start + chunk_size], classifier)
                if updated == 0:
                    chunk_failures += 1
                classified += updated
    except SafetyAbort as exc:
        logger.error("Receipts sweep %s aborted: %s", run_key, exc)
        resolve_cron_run(db, lease.run_id, "failed", f"Safety abort: {exc}")
        return ActionError("fatal", f"Receipts sweep aborted: {exc}")
    except Exception as exc:
        db.rollback()
        logger.exception("Receipts sweep %s failed", run_key)
        resolve_cron_run(db, lease.run_id, "failed", str(exc) or exc.__class__.__name__)
        raise

    resolve_cron_run(db, lease.run_id, "completed")
    logger.info(
        "Receipts sweep %s completed: %d pending reviewed, %d auto-marked, %d AI-classified",
        run_key, len(pending_ids), automation.status_auto_updated, classified,
    )
    return {
        "success": True,
        "skipped": False,
        "runKey": run_key,
        "reclaimed": lease.reclaimed,
        "pendingReviewed": len(pending_ids),
        "autoApplied": automation.status_auto_updated,
        "autoClassified": automation.classification_updated,
        "automationFailures": automation.failed,
        "aiClassified": classified,
        "aiChunks": chunks,
        "aiChunksWithoutUpdates": chunk_failures,
    }
