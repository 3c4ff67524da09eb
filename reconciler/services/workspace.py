"""
Read side of the receipts workspace: filtered listing, the status summary
and known-vendor suggestions.
"""
import logging
import threading
from datetime import date
from typing import Dict, Optional, Union

from fuzzywuzzy import fuzz
from sqlalchemy import func, or_

from ..models.audit import AIUsageEvent
from ..models.batch import ReceiptBatch
from ..models.rule import ReceiptRule
from ..models.transaction import ReceiptTransaction
from ..schemas import RECEIPT_STATUSES, BatchResponse, TransactionResponse, normalize_vendor_name
from .context import ReceiptsContext
from .outcome import ActionError, validation_error

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 500
VENDOR_MATCH_THRESHOLD = 70


class SummaryCache:
    """Holds the last computed summary until a write invalidates it"""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = None

    def get(self):
        with self._lock:
            return self._value

    def set(self, value):
        with self._lock:
            self._value = value

    def invalidate(self):
        with self._lock:
            self._value = None


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")


def _month_range(month: str):
    year, month_number = (int(part) for part in month.split("-", 1))
    start = date(year, month_number, 1)
    end = date(year + 1, 1, 1) if month_number == 12 else date(year, month_number + 1, 1)
    return start, end


def list_transactions(
    ctx: ReceiptsContext,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    search: Optional[str] = None,
    month: Optional[str] = None,
    missing_vendor: bool = False,
    missing_expense: bool = False,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Union[Dict, ActionError]:
    """Newest transactions first, with files, filtered and paginated"""
    denied = ctx.require("view")
    if denied:
        return denied

    if status and status not in RECEIPT_STATUSES:
        return validation_error("Unknown status filter")
    if direction and direction not in ("in", "out"):
        return validation_error("Direction must be in or out")
    if page < 1 or page_size < 1 or page_size > MAX_PAGE_SIZE:
        return validation_error("Invalid pagination")

    query = ctx.db.query(ReceiptTransaction)
    if status:
        query = query.filter(ReceiptTransaction.status == status)
    if direction == "in":
        query = query.filter(ReceiptTransaction.amount_in > 0)
    elif direction == "out":
        query = query.filter(or_(ReceiptTransaction.amount_in.is_(None), ReceiptTransaction.amount_in <= 0))
    if search:
        term = f"%{_escape_like(search.strip()[:80])}%"
        query = query.filter(or_(
            ReceiptTransaction.details.ilike(term, escape="\\"),
            ReceiptTransaction.vendor_name.ilike(term, escape="\\"),
        ))
    if month:
        try:
            start, end = _month_range(month)
        except ValueError:
            return validation_error("Month must be YYYY-MM")
        query = query.filter(ReceiptTransaction.transaction_date >= start, ReceiptTransaction.transaction_date < end)
    if missing_vendor:
        query = query.filter(ReceiptTransaction.vendor_name.is_(None))
    if missing_expense:
        query = query.filter(ReceiptTransaction.expense_category.is_(None), ReceiptTransaction.amount_out > 0)

    total = query.count()
    transactions = (
        query.order_by(ReceiptTransaction.transaction_date.desc(), ReceiptTransaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "transactions": [TransactionResponse.model_validate(tx).model_dump() for tx in transactions],
        "pagination": {"page": page, "pageSize": page_size, "total": total},
    }


def compute_summary(ctx: ReceiptsContext) -> Dict:
    db = ctx.db
    counts = dict(
        db.query(ReceiptTransaction.status, func.count(ReceiptTransaction.id))
        .group_by(ReceiptTransaction.status)
        .all()
    )
    last_batch = (
        db.query(ReceiptBatch)
        .order_by(ReceiptBatch.uploaded_at.desc(), ReceiptBatch.id.desc())
        .first()
    )
    cost = db.query(func.coalesce(func.sum(AIUsageEvent.cost), 0)).scalar()
    pending = int(counts.get("pending", 0))
    return {
        "totals": {
            "pending": pending,
            "completed": int(counts.get("completed", 0)),
            "autoCompleted": int(counts.get("auto_completed", 0)),
            "noReceiptRequired": int(counts.get("no_receipt_required", 0)),
            "cantFind": int(counts.get("cant_find", 0)),
        },
        "needsAttentionValue": pending,
        "lastImport": BatchResponse.model_validate(last_batch).model_dump() if last_batch else None,
        "openAICost": round(float(cost or 0), 6),
    }


def get_summary(ctx: ReceiptsContext) -> Union[Dict, ActionError]:
    """Status counts, last import and AI spend, served from the cache when fresh"""
    denied = ctx.require("view")
    if denied:
        return denied

    if ctx.cache is not None:
        cached = ctx.cache.get()
        if cached is not None:
            return cached
    summary = compute_summary(ctx)
    if ctx.cache is not None:
        ctx.cache.set(summary)
    return summary


def known_vendors(ctx: ReceiptsContext):
    names = set()
    for (name,) in ctx.db.query(ReceiptTransaction.vendor_name).filter(ReceiptTransaction.vendor_name.isnot(None)).distinct():
        normalized = normalize_vendor_name(name)
        if normalized:
            names.add(normalized)
    for (name,) in ctx.db.query(ReceiptRule.set_vendor_name).filter(ReceiptRule.set_vendor_name.isnot(None)).distinct():
        normalized = normalize_vendor_name(name)
        if normalized:
            names.add(normalized)
    return sorted(names, key=str.lower)


def suggest_vendor(ctx: ReceiptsContext, name: str) -> Union[Dict, ActionError]:
    """Suggest a known vendor for a typed name using fuzzy matching"""
    denied = ctx.require("view")
    if denied:
        return denied

    wanted = (name or "").strip().lower()
    if not wanted:
        return validation_error("Name is required")

    best_match = None
    best_score = 0
    for vendor in known_vendors(ctx):
        score = fuzz.ratio(wanted, vendor.lower())
        if score > best_score and score > VENDOR_MATCH_THRESHOLD:  # threshold for fuzzy match
            best_score = score
            best_match = vendor

    return {"suggestion": best_match, "confidence": best_score}
