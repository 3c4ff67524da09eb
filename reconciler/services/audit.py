"""
Audit trail helpers: transaction logs, audit events and AI usage records.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.audit import AIUsageEvent, AuditEvent
from ..models.log import ReceiptTransactionLog

logger = logging.getLogger(__name__)


def add_transaction_log(
    db: Session,
    transaction_id: int,
    action_type: str,
    previous_status: Optional[str] = None,
    new_status: Optional[str] = None,
    note: Optional[str] = None,
    performed_by: Optional[str] = None,
    rule_id: Optional[int] = None,
) -> ReceiptTransactionLog:
    """Stage one append-only log row; the caller owns the commit"""
    entry = ReceiptTransactionLog(
        transaction_id=transaction_id,
        previous_status=previous_status,
        new_status=new_status,
        action_type=action_type,
        note=note,
        performed_by=performed_by,
        rule_id=rule_id,
    )
    db.add(entry)
    return entry


def record_audit_event(
    db: Session,
    operation_type: str,
    resource_type: str,
    resource_id: Optional[Any] = None,
    user_id: Optional[str] = None,
    additional_info: Optional[Dict[str, Any]] = None,
    operation_status: str = "success",
) -> bool:
    """
    Write an audit event in its own commit.

    Audit events describe work that has already been committed, so a failure
    here is logged and reported but does not undo anything.

    Returns:
        True if the event was stored
    """
    event = AuditEvent(
        operation_type=operation_type,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        operation_status=operation_status,
        user_id=user_id,
        additional_info=additional_info or {},
    )
    try:
        db.add(event)
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record audit event %s on %s %s", operation_type, resource_type, resource_id)
        return False


def record_ai_usage(db: Session, context: str, usage: Optional[Dict[str, Any]]) -> None:
    """Store token usage and cost for one classification call"""
    if not usage:
        return
    try:
        db.add(AIUsageEvent(
            context=context,
            model=usage.get("model"),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            cost=usage.get("cost", 0.0),
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record AI usage for %s", context)
