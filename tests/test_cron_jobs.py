from datetime import datetime, timezone
from unittest.mock import patch

from reconciler.models.cron_run import CronJobRun
from reconciler.services import cron_jobs
from reconciler.services.cron_jobs import RECEIPTS_SWEEP_JOB, run_key_for, run_receipts_sweep
from reconciler.services.outcome import ActionError, AuditLogWriteError

from .factories import FakeClassifier, make_rule, make_transaction

NIGHT = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)


def test_run_key_uses_london_calendar_day():
    # 23:30 UTC in British Summer Time is already the next day in London
    assert run_key_for(datetime(2024, 6, 30, 23, 30, tzinfo=timezone.utc)) == "2024-07-01"
    assert run_key_for(datetime(2024, 1, 31, 23, 30, tzinfo=timezone.utc)) == "2024-01-31"


def test_sweep_applies_rules_and_classifies(db, settings):
    make_rule(db, match_description="booker", set_vendor_name="Booker")
    make_transaction(db, details="CARD PAYMENT TO BOOKER LTD")
    sky = make_transaction(db, details="SKY DIGITAL")
    classifier = FakeClassifier(vendor_name="Sky", expense_category="Sky / PRS / Vidimix")

    result = run_receipts_sweep(db, settings, classifier, now=NIGHT)

    assert result["skipped"] is False
    assert result["runKey"] == "2024-03-01"
    assert result["pendingReviewed"] == 2
    assert result["autoApplied"] == 1
    assert result["aiClassified"] == 1
    db.refresh(sky)
    assert sky.vendor_name == "Sky"
    assert sky.vendor_source == "ai"
    run = db.query(CronJobRun).filter_by(job_name=RECEIPTS_SWEEP_JOB).one()
    assert run.status == "completed"


def test_second_trigger_same_day_is_skipped(db, settings):
    run_receipts_sweep(db, settings, None, now=NIGHT)

    again = run_receipts_sweep(db, settings, None, now=NIGHT)

    assert again == {"success": True, "skipped": True, "reason": "already_completed", "runKey": "2024-03-01"}


def test_log_failure_aborts_and_fails_the_run(db, settings):
    make_transaction(db)

    with patch.object(cron_jobs, "apply_automation_rules", side_effect=AuditLogWriteError("log write failed")):
        result = run_receipts_sweep(db, settings, None, now=NIGHT)

    assert isinstance(result, ActionError)
    assert result.status_code == 500
    run = db.query(CronJobRun).one()
    assert run.status == "failed"
    assert run.error_message == "Safety abort: log write failed"

    # a failed day can be retried
    retry = run_receipts_sweep(db, settings, None, now=NIGHT)
    assert retry["skipped"] is False
