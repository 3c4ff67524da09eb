from datetime import date
from decimal import Decimal
from typing import List, Optional

from reconciler.models.rule import ReceiptRule
from reconciler.models.transaction import ReceiptTransaction
from reconciler.services.ai_classifier import ClassificationOutcome, ClassificationResult
from reconciler.services.statement_parser import compute_dedupe_hash


def _decimal(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def make_transaction(
    db,
    details: str = "CARD PAYMENT TO BOOKER LTD",
    amount_out=12.5,
    amount_in=None,
    transaction_date: date = date(2024, 3, 1),
    transaction_type: Optional[str] = "DEB",
    status: str = "pending",
    balance=None,
    **fields,
) -> ReceiptTransaction:
    amount_in = _decimal(amount_in)
    amount_out = _decimal(amount_out)
    balance = _decimal(balance)
    tx = ReceiptTransaction(
        transaction_date=transaction_date,
        details=details,
        transaction_type=transaction_type,
        amount_in=amount_in,
        amount_out=amount_out,
        balance=balance,
        dedupe_hash=fields.pop("dedupe_hash", None) or compute_dedupe_hash(
            transaction_date, details, transaction_type, amount_in, amount_out,
            # unique per row so tests can insert look-alike transactions
            balance if balance is not None else Decimal(db.query(ReceiptTransaction).count() + 1),
        ),
        status=status,
        receipt_required=status == "pending",
        **fields,
    )
    db.add(tx)
    db.commit()
    db.refresh(tx)
    return tx


def make_rule(db, name: str = "Booker", **fields) -> ReceiptRule:
    fields.setdefault("match_direction", "both")
    fields.setdefault("auto_status", "no_receipt_required")
    for key in ("match_min_amount", "match_max_amount"):
        if fields.get(key) is not None:
            fields[key] = _decimal(fields[key])
    rule = ReceiptRule(name=name, is_active=fields.pop("is_active", True), **fields)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


class FakeClassifier:
    """Returns canned answers and records what it was asked"""

    def __init__(self, vendor_name="Booker", expense_category="Sundries/Consumables", fail=False):
        self.vendor_name = vendor_name
        self.expense_category = expense_category
        self.fail = fail
        self.single_calls: List[str] = []
        self.batch_calls: List[list] = []

    def _result(self, item_id=None):
        return ClassificationResult(
            id=item_id,
            vendor_name=self.vendor_name,
            expense_category=self.expense_category,
            reasoning="Matches a known supplier",
            confidence=90,
            suggested_rule_keywords="booker",
        )

    def _usage(self):
        return {"model": "gpt-4o-mini", "prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120, "cost": 0.000027}

    def classify(self, details, **kwargs):
        self.single_calls.append(details)
        if self.fail:
            return None
        return ClassificationOutcome(results=[self._result()], usage=self._usage())

    def classify_batch(self, items, few_shot_examples=(), known_vendors=()):
        self.batch_calls.append(list(items))
        if self.fail:
            return None
        return ClassificationOutcome(results=[self._result(item["id"]) for item in items], usage=self._usage())
