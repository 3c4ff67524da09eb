from datetime import date, timedelta
from decimal import Decimal

from reconciler.models.audit import AuditEvent
from reconciler.models.transaction import ReceiptTransaction
from reconciler.services.retro_runner import (
    finalize_rule_retro_run,
    run_rule_retro_step,
    run_rule_retroactively,
)

from .factories import make_rule, make_transaction


def _bulk_transactions(db, count, details="CARD PAYMENT TO BOOKER LTD", status="pending"):
    start = date(2024, 1, 1)
    db.add_all([
        ReceiptTransaction(
            transaction_date=start + timedelta(days=i % 60),
            details=details,
            transaction_type="DEB",
            amount_out=Decimal("10.00"),
            dedupe_hash=f"{details}-{status}-{i}",
            status=status,
            receipt_required=status == "pending",
        )
        for i in range(count)
    ])
    db.commit()


def test_steps_walk_every_row_once(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker")
    _bulk_transactions(db, 250)

    offsets = []
    reviewed = 0
    offset, cutoff_id = 0, None
    while True:
        step = run_rule_retro_step(ctx, rule.id, "pending", offset=offset, cutoff_id=cutoff_id)
        reviewed += step["reviewed"]
        offsets.append(step["nextOffset"])
        offset, cutoff_id = step["nextOffset"], step["cutoffId"]
        if step["done"]:
            break

    assert offsets == [100, 200, 250]
    assert reviewed == 250
    assert db.query(ReceiptTransaction).filter_by(vendor_name="Booker").count() == 250


def test_rows_added_mid_run_do_not_shift_pages(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker")
    _bulk_transactions(db, 150)

    first = run_rule_retro_step(ctx, rule.id, "pending", offset=0, chunk_size=100)
    # a newer import lands between steps; it sorts first by date
    make_transaction(db, transaction_date=date(2030, 1, 1))
    second = run_rule_retro_step(
        ctx, rule.id, "pending", offset=first["nextOffset"], chunk_size=100, cutoff_id=first["cutoffId"],
    )

    assert first["total"] == second["total"] == 150
    assert second["reviewed"] == 50
    assert second["done"] is True
    assert db.query(ReceiptTransaction).filter(ReceiptTransaction.vendor_name.is_(None)).count() == 1


def test_pending_scope_leaves_closed_rows(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker")
    _bulk_transactions(db, 3, status="completed")

    step = run_rule_retro_step(ctx, rule.id, "pending")

    assert step["reviewed"] == 3
    assert step["matched"] == 0


def test_all_scope_rewrites_closed_and_manual_rows(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker", auto_status="no_receipt_required")
    tx = make_transaction(db, status="cant_find", vendor_name="Someone Else", vendor_source="manual")

    step = run_rule_retro_step(ctx, rule.id, "all")

    db.refresh(tx)
    assert step["statusAutoUpdated"] == 1
    assert tx.status == "no_receipt_required"
    assert tx.vendor_name == "Booker"


def test_inactive_or_missing_rule(ctx, db):
    rule = make_rule(db, is_active=False)

    assert run_rule_retro_step(ctx, rule.id).message == "Enable the rule before running it"
    assert run_rule_retro_step(ctx, 9999).status_code == 404
    assert run_rule_retro_step(ctx, rule.id, "everything").status_code == 400


def test_looped_run_finishes_and_audits(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker")
    _bulk_transactions(db, 120)

    result = run_rule_retroactively(ctx, rule.id, "pending")

    assert result["done"] is True
    assert result["reviewed"] == 120
    assert result["autoApplied"] == 120
    assert result["classified"] == 120
    assert len(result["samples"]) == 50
    event = db.query(AuditEvent).filter_by(operation_type="retro_run").one()
    assert event.additional_info["reviewed"] == 120


def test_looped_run_stops_at_time_budget(ctx, db):
    rule = make_rule(db, match_description="booker", set_vendor_name="Booker")
    _bulk_transactions(db, 250)
    ticks = iter([0.0, 100.0])

    result = run_rule_retroactively(ctx, rule.id, "pending", time_budget_seconds=5, clock=lambda: next(ticks))

    assert result["done"] is False
    assert result["nextOffset"] == 100
    assert result["cutoffId"] is not None
    assert db.query(AuditEvent).filter_by(operation_type="retro_run").count() == 0

    resumed = run_rule_retro_step(ctx, rule.id, "pending", offset=result["nextOffset"], cutoff_id=result["cutoffId"])
    assert resumed["nextOffset"] == 200


def test_finalize_records_client_totals(ctx, db):
    rule = make_rule(db)

    assert finalize_rule_retro_run(ctx, rule.id, "all", reviewed=10, matched=4) == {"success": True}
    event = db.query(AuditEvent).filter_by(operation_type="retro_run").one()
    assert event.additional_info["scope"] == "all"
    assert event.additional_info["matched"] == 4
