"""
Automation engine: applies receipt rules to transactions.

Each transaction is read, changed and committed on its own. A failed update
is counted and skipped; a failed log write stops the whole run because the
audit trail must never miss a change.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.transaction import ReceiptTransaction
from .audit import add_transaction_log
from .outcome import AuditLogWriteError
from .rule_matching import (
    load_rule_snapshots,
    select_matching_rule,
    transaction_amount,
    transaction_direction,
)

logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 50
LOAD_CHUNK_SIZE = 500


@dataclass
class AutomationResult:
    matched: int = 0
    status_auto_updated: int = 0
    classification_updated: int = 0
    vendor_intended: int = 0
    expense_intended: int = 0
    failed: int = 0
    samples: List[Dict[str, Any]] = field(default_factory=list)

    def merge(self, other: "AutomationResult"):
        self.matched += other.matched
        self.status_auto_updated += other.status_auto_updated
        self.classification_updated += other.classification_updated
        self.vendor_intended += other.vendor_intended
        self.expense_intended += other.expense_intended
        self.failed += other.failed
        room = SAMPLE_LIMIT - len(self.samples)
        if room > 0:
            self.samples.extend(other.samples[:room])

    def as_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "statusAutoUpdated": self.status_auto_updated,
            "classificationUpdated": self.classification_updated,
            "vendorIntended": self.vendor_intended,
            "expenseIntended": self.expense_intended,
            "failed": self.failed,
            "samples": self.samples,
        }


def _load_transactions(db: Session, transaction_ids: Sequence[int]) -> List[ReceiptTransaction]:
    by_id = {}
    ids = list(dict.fromkeys(transaction_ids))
    for start in range(0, len(ids), LOAD_CHUNK_SIZE):
        chunk = ids[start:start + LOAD_CHUNK_SIZE]
        for tx in db.query(ReceiptTransaction).filter(ReceiptTransaction.id.in_(chunk)).all():
            by_id[tx.id] = tx
    return [by_id[tx_id] for tx_id in ids if tx_id in by_id]


def _classification_note(rule_name: str, vendor: Optional[str], expense: Optional[str]) -> str:
    parts = []
    if vendor:
        parts.append(f"Vendor → {vendor}")
    if expense:
        parts.append(f"Expense → {expense}")
    return f"Classification updated by rule {rule_name}: {' | '.join(parts)}"


def apply_automation_rules(
    db: Session,
    transaction_ids: Sequence[int],
    include_closed: bool = False,
    target_rule_id: Optional[int] = None,
    override_manual: bool = False,
    allow_closed_status_updates: bool = False,
) -> AutomationResult:
    """
    Apply the first matching active rule to each transaction.

    Args:
        db: Database session
        transaction_ids: Transactions to evaluate, processed in the given order
        include_closed: Also evaluate transactions that are no longer pending
        target_rule_id: Only consider this rule
        override_manual: Overwrite vendor/expense values a person set
        allow_closed_status_updates: Let a rule change the status of a closed transaction

    Returns:
        AutomationResult whose counters only include committed writes
    """
    result = AutomationResult()
    if not transaction_ids:
        return result

    rules = load_rule_snapshots(db, [target_rule_id] if target_rule_id is not None else None)
    if not rules:
        logger.info("No active rules to apply (target rule %s)", target_rule_id)
        return result

    transactions = _load_transactions(db, transaction_ids)

    for tx in transactions:
        is_pending = tx.status == "pending"
        if not include_closed and not is_pending:
            continue

        direction = transaction_direction(tx.amount_in)
        rule = select_matching_rule(
            rules,
            tx.details,
            tx.transaction_type,
            direction,
            transaction_amount(tx.amount_in, tx.amount_out),
        )
        if rule is None:
            continue
        result.matched += 1

        vendor_locked = not override_manual and tx.vendor_source == "manual"
        expense_locked = not override_manual and tx.expense_category_source == "manual"

        update_vendor = bool(
            rule.set_vendor_name
            and not vendor_locked
            and (
                tx.vendor_name != rule.set_vendor_name
                or tx.vendor_source != "rule"
                or tx.vendor_rule_id != rule.id
            )
        )
        update_expense = bool(
            rule.set_expense_category
            and direction == "out"
            and not expense_locked
            and (
                tx.expense_category != rule.set_expense_category
                or tx.expense_category_source != "rule"
                or tx.expense_rule_id != rule.id
            )
        )

        target_status = rule.auto_status
        status_changed = (is_pending or allow_closed_status_updates) and target_status != tx.status

        if not (update_vendor or update_expense or status_changed):
            continue

        tx_id = tx.id
        previous_status = tx.status
        now = datetime.now(timezone.utc)

        try:
            if status_changed:
                tx.status = target_status
                tx.receipt_required = target_status == "pending"
                tx.marked_by = None
                tx.marked_by_email = None
                tx.marked_by_name = None
                tx.marked_at = now
                tx.marked_method = "rule"
                tx.rule_applied_id = rule.id
            if update_vendor:
                tx.vendor_name = rule.set_vendor_name
                tx.vendor_source = "rule"
                tx.vendor_rule_id = rule.id
                tx.vendor_updated_at = now
            if update_expense:
                tx.expense_category = rule.set_expense_category
                tx.expense_category_source = "rule"
                tx.expense_rule_id = rule.id
                tx.expense_updated_at = now
            tx.updated_at = now
            db.flush()
        except SQLAlchemyError:
            db.rollback()
            result.failed += 1
            logger.exception("Failed to apply rule %s to transaction %s", rule.id, tx_id)
            continue

        try:
            if status_changed:
                add_transaction_log(
                    db,
                    tx_id,
                    "rule_auto_mark",
                    previous_status=previous_status,
                    new_status=target_status,
                    note=f"Auto-marked by rule: {rule.name}",
                    rule_id=rule.id,
                )
            if update_vendor or update_expense:
                add_transaction_log(
                    db,
                    tx_id,
                    "rule_classification",
                    previous_status=previous_status,
                    new_status=tx.status,
                    note=_classification_note(
                        rule.name,
                        rule.set_vendor_name if update_vendor else None,
                        rule.set_expense_category if update_expense else None,
                    ),
                    rule_id=rule.id,
                )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to write automation log for transaction %s", tx_id)
            raise AuditLogWriteError(f"Failed to write automation log for transaction {tx_id}") from exc

        if status_changed:
            result.status_auto_updated += 1
        if update_vendor or update_expense:
            result.classification_updated += 1
        if update_vendor:
            result.vendor_intended += 1
        if update_expense:
            result.expense_intended += 1
        if len(result.samples) < SAMPLE_LIMIT:
            result.samples.append({
                "id": tx_id,
                "details": tx.details,
                "previousStatus": previous_status,
                "newStatus": target_status if status_changed else previous_status,
                "vendorName": rule.set_vendor_name if update_vendor else None,
                "expenseCategory": rule.set_expense_category if update_expense else None,
                "ruleId": rule.id,
            })

    logger.info(
        "Automation run over %d transactions: matched=%d status=%d classification=%d failed=%d",
        len(transactions),
        result.matched,
        result.status_auto_updated,
        result.classification_updated,
        result.failed,
    )
    return result
