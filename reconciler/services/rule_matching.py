"""
Rule matching for receipt transactions.

Rules are evaluated in creation order and the first match wins, so an older
rule always beats a newer one that would also match.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..models.rule import ReceiptRule

ZERO = Decimal("0")


@dataclass(frozen=True)
class RuleSnapshot:
    """Plain copy of a rule's predicate and effect, safe to use across commits"""
    id: int
    name: str
    match_description: Optional[str]
    match_transaction_type: Optional[str]
    match_direction: Optional[str]
    match_min_amount: Optional[Decimal]
    match_max_amount: Optional[Decimal]
    auto_status: str
    set_vendor_name: Optional[str]
    set_expense_category: Optional[str]

    @classmethod
    def from_rule(cls, rule: ReceiptRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            name=rule.name,
            match_description=rule.match_description,
            match_transaction_type=rule.match_transaction_type,
            match_direction=rule.match_direction,
            match_min_amount=rule.match_min_amount,
            match_max_amount=rule.match_max_amount,
            auto_status=rule.auto_status,
            set_vendor_name=rule.set_vendor_name,
            set_expense_category=rule.set_expense_category,
        )


def transaction_direction(amount_in: Optional[Decimal]) -> str:
    return "in" if (amount_in or ZERO) > 0 else "out"


def transaction_amount(amount_in: Optional[Decimal], amount_out: Optional[Decimal]) -> Decimal:
    """The amount rules compare against: money in, else money out, else zero"""
    if amount_in is not None and amount_in > 0:
        return Decimal(amount_in)
    if amount_out is not None and amount_out > 0:
        return Decimal(amount_out)
    return ZERO


def split_keywords(match_description: Optional[str]) -> List[str]:
    if not match_description:
        return []
    return [part.strip().lower() for part in match_description.split(",") if part.strip()]


def rule_matches(
    rule: ReceiptRule,
    details: str,
    transaction_type: Optional[str],
    direction: str,
    amount: Decimal,
) -> bool:
    """Check every predicate the rule sets; unset predicates always pass"""
    if rule.match_direction not in (None, "both") and rule.match_direction != direction:
        return False

    if rule.match_min_amount is not None and amount < rule.match_min_amount:
        return False
    if rule.match_max_amount is not None and amount > rule.match_max_amount:
        return False

    keywords = split_keywords(rule.match_description)
    if keywords:
        haystack = (details or "").lower()
        if not any(keyword in haystack for keyword in keywords):
            return False

    if rule.match_transaction_type:
        wanted = rule.match_transaction_type.strip().lower()
        if (transaction_type or "").strip().lower() != wanted:
            return False

    return True


def select_matching_rule(
    rules: Sequence[ReceiptRule],
    details: str,
    transaction_type: Optional[str],
    direction: str,
    amount: Decimal,
) -> Optional[ReceiptRule]:
    """
    Pick the rule to apply to one transaction.

    Args:
        rules: Active rules, already sorted oldest first
        details: Statement description text
        transaction_type: Bank transaction type code, if any
        direction: 'in' or 'out'
        amount: Amount from transaction_amount()

    Returns:
        The first matching rule, or None
    """
    for rule in rules:
        if rule_matches(rule, details, transaction_type, direction, amount):
            return rule
    return None


def load_active_rules(db: Session, rule_ids: Optional[Iterable[int]] = None) -> List[ReceiptRule]:
    """Active rules in evaluation order (created_at, then id)"""
    query = db.query(ReceiptRule).filter(ReceiptRule.is_active.is_(True))
    if rule_ids is not None:
        query = query.filter(ReceiptRule.id.in_(list(rule_ids)))
    return query.order_by(ReceiptRule.created_at.asc(), ReceiptRule.id.asc()).all()


def load_rule_snapshots(db: Session, rule_ids: Optional[Iterable[int]] = None) -> List[RuleSnapshot]:
    """Active rules in evaluation order, detached from the session"""
    return [RuleSnapshot.from_rule(rule) for rule in load_active_rules(db, rule_ids)]
