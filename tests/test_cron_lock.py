from datetime import datetime, timedelta, timezone

from reconciler.models.cron_run import CronJobRun
from reconciler.services.cron_lock import acquire_cron_run, resolve_cron_run

JOB = "receipts-nightly-sweep"
NOW = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)


def test_first_trigger_claims_the_period(db):
    lease = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)

    assert lease.skip is False
    run = db.get(CronJobRun, lease.run_id)
    assert run.status == "running"


def test_concurrent_trigger_skips_while_running(db, session_factory):
    first = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)
    other = session_factory()
    try:
        second = acquire_cron_run(other, JOB, "2024-03-01", now=NOW + timedelta(minutes=5))
    finally:
        other.close()

    assert first.skip is False
    assert second.skip is True
    assert second.reason == "already_running"
    assert db.query(CronJobRun).count() == 1


def test_completed_period_is_never_rerun(db):
    lease = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)
    resolve_cron_run(db, lease.run_id, "completed", now=NOW + timedelta(minutes=1))

    again = acquire_cron_run(db, JOB, "2024-03-01", now=NOW + timedelta(hours=1))

    assert again.skip is True
    assert again.reason == "already_completed"


def test_stale_running_row_is_reclaimed(db):
    stuck = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)

    lease = acquire_cron_run(db, JOB, "2024-03-01", now=NOW + timedelta(minutes=31))

    assert lease.skip is False
    assert lease.reclaimed is True
    assert lease.run_id == stuck.run_id
    db.expire_all()
    assert db.get(CronJobRun, lease.run_id).status == "running"


def test_failed_run_is_retried(db):
    first = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)
    resolve_cron_run(db, first.run_id, "failed", "boom", now=NOW)

    retry = acquire_cron_run(db, JOB, "2024-03-01", now=NOW + timedelta(minutes=2))

    assert retry.skip is False
    assert retry.reclaimed is True
    db.expire_all()
    run = db.get(CronJobRun, retry.run_id)
    assert run.error_message is None
    assert run.finished_at is None


def test_other_periods_and_jobs_are_independent(db):
    acquire_cron_run(db, JOB, "2024-03-01", now=NOW)

    assert acquire_cron_run(db, JOB, "2024-03-02", now=NOW).skip is False
    assert acquire_cron_run(db, "another-job", "2024-03-01", now=NOW).skip is False


def test_error_message_is_truncated(db):
    lease = acquire_cron_run(db, JOB, "2024-03-01", now=NOW)

    resolve_cron_run(db, lease.run_id, "failed", "x" * 5000)

    db.expire_all()
    assert len(db.get(CronJobRun, lease.run_id).error_message) == 2000
