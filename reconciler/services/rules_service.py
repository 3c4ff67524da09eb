"""
Receipt rule management. Rules are never hard-deleted; removing a rule
disables it so historical logs keep pointing at a real row.
"""
import logging
from typing import Any, Dict, List, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from ..models.log import ReceiptTransactionLog
from ..models.rule import ReceiptRule
from ..models.transaction import ReceiptTransaction
from ..schemas import RuleInput, RuleResponse, TransactionLogResponse
from .audit import record_audit_event
from .automation import apply_automation_rules
from .context import ReceiptsContext
from .outcome import ActionError, AuditLogWriteError, from_validation_exception, not_found

logger = logging.getLogger(__name__)


def parse_rule_input(data: Dict[str, Any]) -> Union[RuleInput, ActionError]:
    """Validate raw form fields into a RuleInput"""
    try:
        return RuleInput(**{key: value for key, value in data.items() if value is not None})
    except ValidationError as e:
        return from_validation_exception(e)


def _serialize(rule: ReceiptRule) -> Dict:
    return RuleResponse.model_validate(rule).model_dump()


def list_rules(ctx: ReceiptsContext) -> Union[List[Dict], ActionError]:
    """All rules in evaluation order"""
    denied = ctx.require("view")
    if denied:
        return denied
    rules = ctx.db.query(ReceiptRule).order_by(ReceiptRule.created_at.asc(), ReceiptRule.id.asc()).all()
    return [_serialize(rule) for rule in rules]


def create_rule(ctx: ReceiptsContext, data: RuleInput) -> Union[Dict, ActionError]:
    """Create a new active rule"""
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    rule = ReceiptRule(
        **data.model_dump(),
        is_active=True,
        created_by=ctx.actor.user_id,
        updated_by=ctx.actor.user_id,
    )
    try:
        db.add(rule)
        db.commit()
        db.refresh(rule)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create rule %s", data.name)
        return ActionError("fatal", "Failed to create rule.")

    record_audit_event(
        db,
        operation_type="create",
        resource_type="receipt_rule",
        resource_id=rule.id,
        user_id=ctx.actor.user_id,
        additional_info={"name": rule.name},
    )
    ctx.invalidate_views()
    return {"success": True, "rule": _serialize(rule), "canPromptRetro": True}


def update_rule(ctx: ReceiptsContext, rule_id: int, data: RuleInput) -> Union[Dict, ActionError]:
    """Replace a rule's predicate and effect"""
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    rule = db.get(ReceiptRule, rule_id)
    if rule is None:
        return not_found("Rule not found")

    try:
        for field, value in data.model_dump().items():
            setattr(rule, field, value)
        rule.updated_by = ctx.actor.user_id
        db.commit()
        db.refresh(rule)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update rule %s", rule_id)
        return ActionError("fatal", "Failed to update rule.")

    record_audit_event(
        db,
        operation_type="update",
        resource_type="receipt_rule",
        resource_id=rule_id,
        user_id=ctx.actor.user_id,
        additional_info={"name": rule.name},
    )
    ctx.invalidate_views()
    return {"success": True, "rule": _serialize(rule), "canPromptRetro": rule.is_active}


def refresh_pending_automation(ctx: ReceiptsContext) -> Dict:
    """Re-run automation over the oldest pending transactions"""
    ids = [
        row[0]
        for row in ctx.db.query(ReceiptTransaction.id)
        .filter(ReceiptTransaction.status == "pending")
        .order_by(ReceiptTransaction.id.asc())
        .limit(ctx.settings.PENDING_REFRESH_LIMIT)
        .all()
    ]
    return apply_automation_rules(ctx.db, ids).as_dict()


def toggle_rule(ctx: ReceiptsContext, rule_id: int, is_active: bool) -> Union[Dict, ActionError]:
    """Enable or disable a rule; enabling applies it to pending transactions"""
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    rule = db.get(ReceiptRule, rule_id)
    if rule is None:
        return not_found("Rule not found")

    try:
        rule.is_active = is_active
        rule.updated_by = ctx.actor.user_id
        db.commit()
        db.refresh(rule)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to toggle rule %s", rule_id)
        return ActionError("fatal", "Failed to update rule status.")

    record_audit_event(
        db,
        operation_type="toggle",
        resource_type="receipt_rule",
        resource_id=rule_id,
        user_id=ctx.actor.user_id,
        additional_info={"is_active": is_active},
    )

    automation = None
    if is_active:
        try:
            automation = refresh_pending_automation(ctx)
        except AuditLogWriteError as e:
            return ActionError("fatal", str(e))

    ctx.invalidate_views()
    db.refresh(rule)
    return {"success": True, "rule": _serialize(rule), "automation": automation}


def disable_rule(ctx: ReceiptsContext, rule_id: int) -> Union[Dict, ActionError]:
    """Soft delete: the rule stays for the audit trail but stops matching"""
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    rule = db.get(ReceiptRule, rule_id)
    if rule is None:
        return not_found("Rule not found")

    try:
        rule.is_active = False
        rule.updated_by = ctx.actor.user_id
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to disable rule %s", rule_id)
        return ActionError("fatal", "Failed to delete rule.")

    record_audit_event(
        db,
        operation_type="delete",
        resource_type="receipt_rule",
        resource_id=rule_id,
        user_id=ctx.actor.user_id,
        additional_info={"soft_delete": True},
    )
    ctx.invalidate_views()
    return {"success": True, "message": "Rule disabled"}


def get_rule_logs(ctx: ReceiptsContext, rule_id: int, limit: int = 200) -> Union[List[Dict], ActionError]:
    """Most recent log rows written by a rule"""
    denied = ctx.require("view")
    if denied:
        return denied
    if ctx.db.get(ReceiptRule, rule_id) is None:
        return not_found("Rule not found")

    logs = (
        ctx.db.query(ReceiptTransactionLog)
        .filter(ReceiptTransactionLog.rule_id == rule_id)
        .order_by(ReceiptTransactionLog.performed_at.desc(), ReceiptTransactionLog.id.desc())
        .limit(limit)
        .all()
    )
    return [TransactionLogResponse.model_validate(log).model_dump() for log in logs]
