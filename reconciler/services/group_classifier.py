"""
Bulk review of transactions that share identical details.

Groups are computed with one aggregate query. Each group gets one suggestion:
the dominant existing classification, or an AI suggestion when members are
still unclassified. Applying a suggestion is a separate, explicit action.
"""
import hashlib
import logging
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import SQLAlchemyError

from ..models.transaction import ReceiptTransaction
from ..schemas import (
    RECEIPT_STATUSES,
    GroupApplyRequest,
    GroupRuleRequest,
    match_expense_category,
    normalize_vendor_name,
)
from .audit import add_transaction_log, record_ai_usage, record_audit_event
from .context import ReceiptsContext
from .outcome import ActionError, validation_error
from .rules_service import create_rule, parse_rule_input

logger = logging.getLogger(__name__)

DEFAULT_GROUP_LIMIT = 10
MAX_GROUP_LIMIT = 500


def hash_details(details: str) -> str:
    return hashlib.sha256(details.encode("utf-8")).hexdigest()[:24]


def _round_currency(value) -> float:
    return float(Decimal(value or 0).quantize(Decimal("0.01")))


def _needs_vendor_expr():
    return ReceiptTransaction.vendor_name.is_(None)


def _needs_expense_expr():
    return and_(ReceiptTransaction.expense_category.is_(None), ReceiptTransaction.amount_out > 0)


def _dominant(values: Sequence[Optional[str]]) -> Optional[str]:
    counts = Counter(value for value in values if value)
    if not counts:
        return None
    # most common, ties broken alphabetically
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[0][0]


def _load_groups(ctx: ReceiptsContext, limit: int, statuses: List[str], only_unclassified: bool) -> List[Dict]:
    db = ctx.db
    needs_vendor = func.sum(case((_needs_vendor_expr(), 1), else_=0))
    needs_expense = func.sum(case((_needs_expense_expr(), 1), else_=0))
    transaction_count = func.count(ReceiptTransaction.id)

    query = (
        db.query(
            ReceiptTransaction.details,
            transaction_count.label("transaction_count"),
            needs_vendor.label("needs_vendor"),
            needs_expense.label("needs_expense"),
            func.coalesce(func.sum(ReceiptTransaction.amount_in), 0).label("total_in"),
            func.coalesce(func.sum(ReceiptTransaction.amount_out), 0).label("total_out"),
            func.min(ReceiptTransaction.transaction_date).label("first_date"),
            func.max(ReceiptTransaction.transaction_date).label("last_date"),
        )
        .filter(ReceiptTransaction.status.in_(statuses))
        .group_by(ReceiptTransaction.details)
    )
    if only_unclassified:
        query = query.having(or_(needs_vendor > 0, needs_expense > 0))
    rows = query.order_by(transaction_count.desc(), ReceiptTransaction.details.asc()).limit(limit).all()

    groups = []
    for row in rows:
        members = (
            db.query(ReceiptTransaction)
            .filter(ReceiptTransaction.details == row.details, ReceiptTransaction.status.in_(statuses))
            .order_by(ReceiptTransaction.transaction_date.desc(), ReceiptTransaction.id.desc())
            .all()
        )
        sample = members[0] if members else None
        groups.append({
            "details": row.details,
            "transactionIds": [tx.id for tx in members],
            "transactionCount": int(row.transaction_count),
            "needsVendorCount": int(row.needs_vendor or 0),
            "needsExpenseCount": int(row.needs_expense or 0),
            "totalIn": _round_currency(row.total_in),
            "totalOut": _round_currency(row.total_out),
            "firstDate": row.first_date.isoformat() if row.first_date else None,
            "lastDate": row.last_date.isoformat() if row.last_date else None,
            "dominantVendor": _dominant([tx.vendor_name for tx in members]),
            "dominantExpense": _dominant([tx.expense_category for tx in members]),
            "sampleTransaction": {
                "id": sample.id,
                "transactionDate": sample.transaction_date.isoformat(),
                "transactionType": sample.transaction_type,
                "amountIn": float(sample.amount_in) if sample.amount_in is not None else None,
                "amountOut": float(sample.amount_out) if sample.amount_out is not None else None,
            } if sample else None,
        })
    return groups


def build_group_suggestion(ctx: ReceiptsContext, group: Dict) -> Dict:
    """Existing dominant values, replaced by an AI suggestion when one is needed and available"""
    existing_vendor = group["dominantVendor"]
    existing_expense = group["dominantExpense"]
    suggestion = {
        "vendorName": existing_vendor,
        "expenseCategory": existing_expense,
        "reasoning": None,
        "source": "existing" if existing_vendor or existing_expense else "none",
    }

    needs_ai = (
        group["needsVendorCount"] > 0
        or group["needsExpenseCount"] > 0
        or (not existing_vendor and not existing_expense)
    )
    if ctx.classifier is None or not needs_ai:
        return suggestion

    count = group["transactionCount"] or 1
    sample = group["sampleTransaction"] or {}
    average_in = group["totalIn"] / count
    average_out = group["totalOut"] / count
    amount_in = sample.get("amountIn") if (sample.get("amountIn") or 0) > 0 else (average_in or None)
    amount_out = sample.get("amountOut") if (sample.get("amountOut") or 0) > 0 else (average_out or None)

    try:
        outcome = ctx.classifier.classify(
            group["details"],
            amount_in=amount_in,
            amount_out=amount_out,
            transaction_type=sample.get("transactionType"),
            existing_vendor=existing_vendor,
            existing_expense_category=existing_expense,
        )
    except Exception:
        logger.exception("AI group classification failed for %r", group["details"])
        outcome = None

    if outcome is None or outcome.result is None:
        return suggestion

    result = outcome.result
    suggestion = {
        "vendorName": normalize_vendor_name(result.vendor_name) or existing_vendor,
        "expenseCategory": match_expense_category(result.expense_category) or existing_expense,
        "reasoning": result.reasoning,
        "source": "ai",
        "model": outcome.usage.get("model") if outcome.usage else None,
    }
    if outcome.usage:
        record_ai_usage(ctx.db, f"receipt_group:{hash_details(group['details'])}", outcome.usage)
    return suggestion


def get_bulk_review_data(
    ctx: ReceiptsContext,
    limit: int = DEFAULT_GROUP_LIMIT,
    statuses: Optional[Sequence[str]] = None,
    only_unclassified: bool = True,
) -> Union[Dict, ActionError]:
    """
    Groups of transactions with identical details, with one suggestion each.

    Args:
        ctx: Receipts context for the caller
        limit: Maximum number of groups (1-500), largest groups first
        statuses: Statuses to include, pending only by default
        only_unclassified: Skip groups whose members are all classified

    Returns:
        dict with groups, generatedAt and config
    """
    denied = ctx.require("manage")
    if denied:
        return denied

    if limit < 1 or limit > MAX_GROUP_LIMIT:
        return validation_error(f"Limit must be between 1 and {MAX_GROUP_LIMIT}")
    statuses = list(dict.fromkeys(statuses)) if statuses else ["pending"]
    invalid = [status for status in statuses if status not in RECEIPT_STATUSES]
    if invalid:
        return validation_error(f"Unknown statuses: {', '.join(invalid)}")

    try:
        groups = _load_groups(ctx, limit, statuses, only_unclassified)
    except SQLAlchemyError:
        ctx.db.rollback()
        logger.exception("Failed to fetch receipt detail groups")
        return ActionError("fatal", "Failed to load transaction groups")

    for group in groups:
        group["suggestion"] = build_group_suggestion(ctx, group)

    return {
        "groups": groups,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "config": {
            "limit": limit,
            "statuses": statuses,
            "onlyUnclassified": only_unclassified,
            "openAIEnabled": ctx.classifier is not None,
        },
    }


def apply_group_classification(ctx: ReceiptsContext, request: GroupApplyRequest) -> Union[Dict, ActionError]:
    """
    Apply a confirmed vendor and/or expense to every transaction with these details.

    Expense values are never written to incoming-only rows; how many were
    skipped is returned.
    """
    denied = ctx.require("manage")
    if denied:
        return denied

    provided = request.model_fields_set
    vendor_provided = "vendor_name" in provided
    expense_provided = "expense_category" in provided
    if not vendor_provided and not expense_provided:
        return validation_error("Nothing to update")

    vendor_name = normalize_vendor_name(request.vendor_name) if vendor_provided else None
    expense_category = None
    if expense_provided and request.expense_category and request.expense_category.strip():
        expense_category = match_expense_category(request.expense_category)
        if expense_category is None:
            return validation_error("Expense category is not recognised")

    statuses = list(dict.fromkeys(request.statuses)) if request.statuses else list(RECEIPT_STATUSES)
    db = ctx.db

    matches = (
        db.query(ReceiptTransaction)
        .filter(ReceiptTransaction.details == request.details, ReceiptTransaction.status.in_(statuses))
        .order_by(ReceiptTransaction.id.asc())
        .all()
    )
    if not matches:
        return {"success": True, "updated": 0, "skippedIncomingCount": 0}

    incoming_only = {tx.id for tx in matches if tx.is_incoming_only}
    # clearing an expense is allowed everywhere; only setting one skips incoming-only rows
    skipped_incoming = len(incoming_only) if expense_category else 0

    parts = []
    if vendor_provided:
        parts.append(f"Vendor → {vendor_name}" if vendor_name else "Vendor cleared")
    if expense_provided:
        parts.append(f"Expense → {expense_category}" if expense_category else "Expense cleared")
        if skipped_incoming:
            parts.append(f"Skipped incoming-only rows: {skipped_incoming}")
    note = f"Bulk classification: {' | '.join(parts)}"

    now = datetime.now(timezone.utc)
    updated_ids = []
    try:
        for tx in matches:
            touched = False
            if vendor_provided:
                tx.vendor_name = vendor_name
                tx.vendor_source = "manual" if vendor_name else None
                tx.vendor_rule_id = None
                tx.vendor_updated_at = now
                touched = True
            if expense_provided and (expense_category is None or tx.id not in incoming_only):
                tx.expense_category = expense_category
                tx.expense_category_source = "manual" if expense_category else None
                tx.expense_rule_id = None
                tx.expense_updated_at = now
                touched = True
            if touched:
                tx.updated_at = now
                updated_ids.append(tx.id)
                add_transaction_log(
                    db, tx.id, "bulk_classification",
                    previous_status=tx.status, new_status=tx.status,
                    note=note, performed_by=ctx.actor.user_id,
                )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to apply bulk classification to %r", request.details)
        return ActionError("fatal", "Failed to apply changes")

    record_audit_event(
        db,
        operation_type="bulk_classification",
        resource_type="receipt_transaction_group",
        resource_id=hash_details(request.details),
        user_id=ctx.actor.user_id,
        additional_info={
            "details": request.details,
            "vendor_applied": vendor_provided,
            "expense_applied": expense_provided,
            "vendor_value": vendor_name,
            "expense_value": expense_category,
            "statuses": statuses,
            "count": len(updated_ids),
            "skipped_incoming_count": skipped_incoming,
        },
    )
    ctx.invalidate_views()
    return {"success": True, "updated": len(updated_ids), "skippedIncomingCount": skipped_incoming}


def default_match_description(details: str) -> str:
    """
    Keyword for a rule built from a group.

    Commas separate alternative keywords, so details containing one are cut
    down to their longest comma-free piece, which still matches the group.
    """
    pieces = [piece.strip() for piece in details.split(",") if piece.strip()]
    longest = max(pieces, key=len) if pieces else details.strip()
    return longest[:300]


def create_rule_from_group(ctx: ReceiptsContext, request: GroupRuleRequest) -> Union[Dict, ActionError]:
    """Turn a reviewed group into a rule matching its details"""
    denied = ctx.require("manage")
    if denied:
        return denied

    vendor = normalize_vendor_name(request.vendor_name)
    expense = match_expense_category(request.expense_category)
    if expense is None and request.expense_category and request.expense_category.strip():
        return validation_error("Expense category is not recognised")
    direction = request.match_direction
    if direction is None:
        direction = "out" if expense else "both"

    data = parse_rule_input({
        "name": request.name or f"{vendor or expense or request.details[:60]} auto-tag",
        "match_description": request.match_description or default_match_description(request.details),
        "match_direction": direction,
        "auto_status": request.auto_status,
        "set_vendor_name": vendor,
        "set_expense_category": expense,
    })
    if isinstance(data, ActionError):
        return data
    return create_rule(ctx, data)

