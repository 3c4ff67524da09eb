"""
Run lock for scheduled jobs.

One row per (job_name, run_key) guarantees at most one successful run per
period. The unique constraint decides races: the loser inspects the winner's
row and either skips or reclaims it when the winner crashed or went stale.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.cron_run import CronJobRun

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 2000
DEFAULT_STALE_AFTER = timedelta(minutes=30)


@dataclass
class CronRunLease:
    run_id: int
    skip: bool
    reason: Optional[str] = None
    reclaimed: bool = False


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite hands back naive UTC values
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def acquire_cron_run(
    db: Session,
    job_name: str,
    run_key: str,
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> CronRunLease:
    """
    Claim the run for a period.

    Args:
        db: Database session
        job_name: Scheduled job identifier
        run_key: Logical period, e.g. the calendar day
        now: Current time (UTC), injectable for tests
        stale_after: Age after which a running row is treated as abandoned

    Returns:
        CronRunLease; skip=True means another run owns or finished this period
    """
    now = _as_utc(now) or datetime.now(timezone.utc)

    try:
        run = CronJobRun(job_name=job_name, run_key=run_key, status="running", started_at=now)
        db.add(run)
        db.commit()
        return CronRunLease(run_id=run.id, skip=False)
    except IntegrityError:
        db.rollback()

    existing = (
        db.query(CronJobRun)
        .filter(CronJobRun.job_name == job_name, CronJobRun.run_key == run_key)
        .first()
    )
    if existing is None:
        raise RuntimeError(f"Cron run {job_name}/{run_key} conflicted but could not be found")

    if existing.status == "completed":
        logger.info("%s already completed for %s", job_name, run_key)
        return CronRunLease(run_id=existing.id, skip=True, reason="already_completed")

    started_at = _as_utc(existing.started_at)
    is_stale = existing.status == "running" and (started_at is None or now - started_at > stale_after)
    if existing.status == "running" and not is_stale:
        logger.info("%s already running for %s, skipping duplicate trigger", job_name, run_key)
        return CronRunLease(run_id=existing.id, skip=True, reason="already_running")

    # Reclaim in place, only if nobody else changed the row since we read it
    claimed = (
        db.query(CronJobRun)
        .filter(
            CronJobRun.id == existing.id,
            CronJobRun.status == existing.status,
            CronJobRun.started_at == existing.started_at,
        )
        .update(
            {
                CronJobRun.status: "running",
                CronJobRun.started_at: now,
                CronJobRun.finished_at: None,
                CronJobRun.error_message: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if claimed == 0:
        logger.info("%s for %s was reclaimed by another trigger", job_name, run_key)
        return CronRunLease(run_id=existing.id, skip=True, reason="reclaimed_elsewhere")

    logger.warning("Reclaimed %s run for %s (previous status %s)", job_name, run_key, existing.status)
    return CronRunLease(run_id=existing.id, skip=False, reclaimed=True)


def resolve_cron_run(
    db: Session,
    run_id: int,
    status: str,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Close a run as completed or failed"""
    if status not in ("completed", "failed"):
        raise ValueError(f"Invalid cron run status: {status}")
    db.query(CronJobRun).filter(CronJobRun.id == run_id).update(
        {
            CronJobRun.status: status,
            CronJobRun.finished_at: _as_utc(now) or datetime.now(timezone.utc),
            CronJobRun.error_message: error_message[:ERROR_MESSAGE_LIMIT] if error_message else None,
        },
        synchronize_session=False,
    )
    db.commit()
