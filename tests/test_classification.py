from reconciler.models.log import ReceiptTransactionLog
from reconciler.schemas import ClassificationRequest, MarkTransactionRequest
from reconciler.services.automation import apply_automation_rules
from reconciler.services.classification import (
    build_rule_suggestion,
    get_transaction_logs,
    mark_transaction,
    update_classification,
)

from .factories import make_rule, make_transaction


def test_mark_records_who_and_why(ctx, db):
    tx = make_transaction(db)

    result = mark_transaction(ctx, tx.id, MarkTransactionRequest(status="cant_find", note="Lost in the post"))

    transaction = result["transaction"]
    assert transaction["status"] == "cant_find"
    assert transaction["receipt_required"] is False
    assert transaction["marked_by_email"] == "manager@example.com"
    assert transaction["marked_method"] == "manual"
    log = db.query(ReceiptTransactionLog).one()
    assert (log.action_type, log.previous_status, log.new_status) == ("manual_update", "pending", "cant_find")


def test_mark_back_to_pending_requires_receipt(ctx, db):
    tx = make_transaction(db, status="completed")
    result = mark_transaction(ctx, tx.id, MarkTransactionRequest(status="pending"))
    assert result["transaction"]["receipt_required"] is True


def test_mark_missing_transaction(ctx):
    assert mark_transaction(ctx, 404, MarkTransactionRequest(status="completed")).status_code == 404


def test_staff_cannot_mark(make_ctx, db):
    tx = make_transaction(db)
    result = mark_transaction(make_ctx(role="staff"), tx.id, MarkTransactionRequest(status="completed"))
    assert result.message == "Insufficient permissions"


def test_manual_classification_locks_against_rules(ctx, db):
    make_rule(db, match_description="booker", set_vendor_name="Booker")
    tx = make_transaction(db)

    result = update_classification(ctx, tx.id, ClassificationRequest(vendorName="  Booker   Wholesale "))
    apply_automation_rules(db, [tx.id], include_closed=True)

    assert result["transaction"]["vendor_name"] == "Booker Wholesale"
    assert result["transaction"]["vendor_source"] == "manual"
    db.refresh(tx)
    assert tx.vendor_name == "Booker Wholesale"


def test_expense_rejected_on_incoming_only(ctx, db):
    tx = make_transaction(db, details="CARD SALES", amount_in=200, amount_out=None)

    result = update_classification(ctx, tx.id, ClassificationRequest(expenseCategory="Entertainment"))

    assert result.message == "Expense categories can only be set on outgoing transactions"
    db.refresh(tx)
    assert tx.expense_category is None


def test_unknown_category_and_empty_request(ctx, db):
    tx = make_transaction(db)
    assert update_classification(ctx, tx.id, ClassificationRequest(expenseCategory="Snacks")).message == (
        "Expense category is not recognised"
    )
    assert update_classification(ctx, tx.id, ClassificationRequest()).message == "Nothing to update"


def test_clearing_a_value(ctx, db):
    tx = make_transaction(db, vendor_name="Booker", vendor_source="rule")

    result = update_classification(ctx, tx.id, ClassificationRequest(vendorName=""))

    assert result["transaction"]["vendor_name"] is None
    assert result["transaction"]["vendor_source"] is None
    assert result["ruleSuggestion"] is None


def test_classification_suggests_a_rule(ctx, db):
    tx = make_transaction(db, details="CARD PAYMENT TO BOOKER LTD 1234", amount_out=45)

    result = update_classification(ctx, tx.id, ClassificationRequest(
        vendorName="Booker", expenseCategory="Sundries/Consumables",
    ))

    suggestion = result["ruleSuggestion"]
    assert suggestion["suggestedName"] == "Booker auto-tag"
    assert suggestion["matchDescription"] == "card,payment,booker"
    assert suggestion["direction"] == "out"
    assert suggestion["amountValue"] == 45.0
    assert suggestion["setExpenseCategory"] == "Sundries/Consumables"


def test_unchanged_values_write_nothing(ctx, db):
    tx = make_transaction(db, vendor_name="Booker", vendor_source="manual")

    result = update_classification(ctx, tx.id, ClassificationRequest(vendorName="Booker"))

    assert result["ruleSuggestion"] is None
    assert db.query(ReceiptTransactionLog).count() == 0


def test_suggestion_needs_a_value(db):
    tx = make_transaction(db)
    assert build_rule_suggestion(tx) is None


def test_transaction_logs_in_order(ctx, db):
    tx = make_transaction(db)
    mark_transaction(ctx, tx.id, MarkTransactionRequest(status="completed"))
    mark_transaction(ctx, tx.id, MarkTransactionRequest(status="pending"))

    logs = get_transaction_logs(ctx, tx.id)

    assert [log["new_status"] for log in logs] == ["completed", "pending"]
    assert get_transaction_logs(ctx, 999).status_code == 404
