"""
Manual review actions on single transactions: marking a status, editing
vendor/expense values and proposing a rule from the edit.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..models.log import ReceiptTransactionLog
from ..models.transaction import ReceiptTransaction
from ..schemas import (
    ClassificationRequest,
    MarkTransactionRequest,
    TransactionLogResponse,
    TransactionResponse,
    match_expense_category,
    normalize_vendor_name,
)
from .audit import add_transaction_log, record_audit_event
from .context import ReceiptsContext
from .outcome import ActionError, not_found, validation_error
from .rule_matching import transaction_amount, transaction_direction

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def build_rule_suggestion(
    tx: ReceiptTransaction,
    vendor_name: Optional[str] = None,
    expense_category: Optional[str] = None,
) -> Optional[Dict]:
    """
    Propose a rule that would repeat a manual edit on similar transactions.

    Keywords are the first three alphanumeric tokens of at least four
    characters from the details.
    """
    if not vendor_name and not expense_category:
        return None

    details = (tx.details or "").strip()
    keywords = [
        token
        for token in (_NON_ALNUM.sub("", part).lower() for part in details.split())
        if len(token) >= 4
    ][:3]

    return {
        "suggestedName": f"{vendor_name or expense_category} auto-tag",
        "matchDescription": ",".join(keywords) or None,
        "direction": transaction_direction(tx.amount_in),
        "amountValue": float(transaction_amount(tx.amount_in, tx.amount_out)),
        "details": details,
        "transactionType": tx.transaction_type,
        "setVendorName": vendor_name,
        "setExpenseCategory": expense_category,
    }


def mark_transaction(
    ctx: ReceiptsContext,
    transaction_id: int,
    request: MarkTransactionRequest,
) -> Union[Dict, ActionError]:
    """Set a transaction's status by hand"""
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    tx = db.get(ReceiptTransaction, transaction_id)
    if tx is None:
        return not_found("Transaction not found")

    previous_status = tx.status
    now = datetime.now(timezone.utc)
    try:
        tx.status = request.status
        tx.receipt_required = (
            request.receipt_required if request.receipt_required is not None else request.status == "pending"
        )
        tx.marked_by = ctx.actor.user_id
        tx.marked_by_email = ctx.actor.email
        tx.marked_by_name = ctx.actor.name
        tx.marked_at = now
        tx.marked_method = "manual"
        tx.rule_applied_id = None
        tx.notes = request.note
        tx.updated_at = now
        add_transaction_log(
            db, tx.id, "manual_update",
            previous_status=previous_status, new_status=request.status,
            note=request.note, performed_by=ctx.actor.user_id,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to mark transaction %s", transaction_id)
        return ActionError("fatal", "Failed to update the transaction.")

    record_audit_event(
        db,
        operation_type="update_status",
        resource_type="receipt_transaction",
        resource_id=transaction_id,
        user_id=ctx.actor.user_id,
        additional_info={"previous_status": previous_status, "new_status": request.status, "note": request.note},
    )
    ctx.invalidate_views()
    db.refresh(tx)
    return {"success": True, "transaction": TransactionResponse.model_validate(tx).model_dump()}


def update_classification(
    ctx: ReceiptsContext,
    transaction_id: int,
    request: ClassificationRequest,
) -> Union[Dict, ActionError]:
    """
    Set or clear vendor and expense values by hand.

    Fields omitted from the request are left alone; an empty value clears the
    field. Changed fields become source 'manual', which locks them against rules.

    Returns:
        dict with success, transaction and ruleSuggestion, or an ActionError
    """
    denied = ctx.require("manage")
    if denied:
        return denied

    provided = request.model_fields_set
    has_vendor = "vendor_name" in provided
    has_expense = "expense_category" in provided
    if not has_vendor and not has_expense:
        return validation_error("Nothing to update")

    vendor_name = normalize_vendor_name(request.vendor_name) if has_vendor else None
    expense_category = None
    if has_expense and request.expense_category and request.expense_category.strip():
        expense_category = match_expense_category(request.expense_category)
        if expense_category is None:
            return validation_error("Expense category is not recognised")

    db = ctx.db
    tx = db.get(ReceiptTransaction, transaction_id)
    if tx is None:
        return not_found("Transaction not found")

    if has_expense and expense_category and tx.is_incoming_only:
        return validation_error("Expense categories can only be set on outgoing transactions")

    now = datetime.now(timezone.utc)
    notes: List[str] = []
    vendor_changed = has_vendor and tx.vendor_name != vendor_name
    expense_changed = has_expense and tx.expense_category != expense_category

    if not vendor_changed and not expense_changed:
        return {
            "success": True,
            "transaction": TransactionResponse.model_validate(tx).model_dump(),
            "ruleSuggestion": None,
        }

    try:
        if vendor_changed:
            tx.vendor_name = vendor_name
            tx.vendor_source = "manual" if vendor_name else None
            tx.vendor_rule_id = None
            tx.vendor_updated_at = now
            notes.append(f"Vendor → {vendor_name}" if vendor_name else "Vendor cleared")
        if expense_changed:
            tx.expense_category = expense_category
            tx.expense_category_source = "manual" if expense_category else None
            tx.expense_rule_id = None
            tx.expense_updated_at = now
            notes.append(f"Expense → {expense_category}" if expense_category else "Expense cleared")
        tx.updated_at = now
        add_transaction_log(
            db, tx.id, "manual_classification",
            previous_status=tx.status, new_status=tx.status,
            note=" | ".join(notes), performed_by=ctx.actor.user_id,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update classification for transaction %s", transaction_id)
        return ActionError("fatal", "Failed to update classification.")

    record_audit_event(
        db,
        operation_type="update_classification",
        resource_type="receipt_transaction",
        resource_id=transaction_id,
        user_id=ctx.actor.user_id,
        additional_info={
            "vendor_changed": vendor_changed,
            "expense_changed": expense_changed,
            "vendor": vendor_name,
            "expense": expense_category,
        },
    )
    ctx.invalidate_views()
    db.refresh(tx)

    return {
        "success": True,
        "transaction": TransactionResponse.model_validate(tx).model_dump(),
        "ruleSuggestion": build_rule_suggestion(
            tx,
            vendor_name=vendor_name if vendor_changed else None,
            expense_category=expense_category if expense_changed else None,
        ),
    }


def get_transaction_logs(ctx: ReceiptsContext, transaction_id: int) -> Union[List[Dict], ActionError]:
    """Audit trail for one transaction, oldest first"""
    denied = ctx.require("view")
    if denied:
        return denied
    if ctx.db.get(ReceiptTransaction, transaction_id) is None:
        return not_found("Transaction not found")

    logs = (
        ctx.db.query(ReceiptTransactionLog)
        .filter(ReceiptTransactionLog.transaction_id == transaction_id)
        .order_by(ReceiptTransactionLog.performed_at.asc(), ReceiptTransactionLog.id.asc())
        .all()
    )
    return [TransactionLogResponse.model_validate(log).model_dump() for log in logs]
