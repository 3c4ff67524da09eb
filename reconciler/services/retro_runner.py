"""
Retroactive rule runs.

A rule is re-applied to historical transactions one chunk at a time. Each
chunk commits on its own and returns a resume offset, so a run can be
driven by the server within a time budget or step by step by a client.
"""
import logging
import time
from typing import Callable, Dict, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..models.rule import ReceiptRule
from ..models.transaction import ReceiptTransaction
from .audit import record_audit_event
from .automation import AutomationResult, apply_automation_rules
from .context import ReceiptsContext
from .outcome import ActionError, AuditLogWriteError, is_error, not_found, validation_error

logger = logging.getLogger(__name__)

RETRO_SCOPES = ("pending", "all")


def _load_active_rule(ctx: ReceiptsContext, rule_id: int) -> Union[ReceiptRule, ActionError]:
    rule = ctx.db.get(ReceiptRule, rule_id)
    if rule is None:
        return not_found("Rule not found")
    if not rule.is_active:
        return validation_error("Enable the rule before running it")
    return rule


def run_rule_retro_step(
    ctx: ReceiptsContext,
    rule_id: int,
    scope: str = "pending",
    offset: int = 0,
    chunk_size: Optional[int] = None,
    cutoff_id: Optional[int] = None,
) -> Union[Dict, ActionError]:
    """
    Apply one rule to one chunk of transactions.

    Pages are ordered by transaction date (newest first) then ID, and bounded
    by cutoff_id so rows imported mid-run never shift the offsets.

    Args:
        ctx: Receipts context for the caller
        rule_id: Rule to apply
        scope: 'pending' only touches pending rows; 'all' also rewrites closed
            rows and overrides manual classifications
        offset: Resume position returned by the previous step
        chunk_size: Rows per step, RETRO_CHUNK_SIZE by default
        cutoff_id: Highest transaction ID included in the run; pass back the
            value returned by the first step

    Returns:
        dict with the chunk counters plus nextOffset, total, done and cutoffId
    """
    denied = ctx.require("manage")
    if denied:
        return denied
    if scope not in RETRO_SCOPES:
        return validation_error("Scope must be pending or all")

    rule = _load_active_rule(ctx, rule_id)
    if is_error(rule):
        return rule

    started = time.monotonic()
    chunk_size = chunk_size or ctx.settings.RETRO_CHUNK_SIZE
    db = ctx.db

    try:
        if cutoff_id is None:
            cutoff_id = db.query(func.max(ReceiptTransaction.id)).scalar() or 0
        total = (
            db.query(func.count(ReceiptTransaction.id))
            .filter(ReceiptTransaction.id <= cutoff_id)
            .scalar()
        )
        transaction_ids = [
            row[0]
            for row in db.query(ReceiptTransaction.id)
            .filter(ReceiptTransaction.id <= cutoff_id)
            .order_by(ReceiptTransaction.transaction_date.desc(), ReceiptTransaction.id.desc())
            .offset(offset)
            .limit(chunk_size)
            .all()
        ]
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to load transactions for retro run of rule %s", rule_id)
        return ActionError("fatal", "Failed to load transactions")

    include_closed = scope == "all"
    try:
        result = apply_automation_rules(
            db,
            transaction_ids,
            include_closed=include_closed,
            target_rule_id=rule_id,
            override_manual=include_closed,
            allow_closed_status_updates=include_closed,
        )
    except AuditLogWriteError as e:
        return ActionError("fatal", str(e))

    next_offset = offset + len(transaction_ids)
    done = not transaction_ids or next_offset >= total

    response = {"success": True, "reviewed": len(transaction_ids)}
    response.update(result.as_dict())
    response.update({
        "nextOffset": next_offset,
        "total": total,
        "done": done,
        "cutoffId": cutoff_id,
        "durationMs": int((time.monotonic() - started) * 1000),
    })
    logger.info(
        "Retro step for rule %s (%s): offset=%d reviewed=%d matched=%d next=%d/%d",
        rule_id, scope, offset, len(transaction_ids), result.matched, next_offset, total,
    )
    return response


def finalize_rule_retro_run(
    ctx: ReceiptsContext,
    rule_id: int,
    scope: str,
    reviewed: int = 0,
    matched: int = 0,
    status_auto_updated: int = 0,
    classification_updated: int = 0,
    vendor_intended: int = 0,
    expense_intended: int = 0,
) -> Union[Dict, ActionError]:
    """Record one audit event for a completed run and refresh cached views"""
    denied = ctx.require("manage")
    if denied:
        return denied

    rule = ctx.db.get(ReceiptRule, rule_id)
    if rule is None:
        return not_found("Rule not found")

    record_audit_event(
        ctx.db,
        operation_type="retro_run",
        resource_type="receipt_rule",
        resource_id=rule_id,
        user_id=ctx.actor.user_id,
        additional_info={
            "scope": scope,
            "reviewed": reviewed,
            "matched": matched,
            "auto_marked": status_auto_updated,
            "classified": classification_updated,
            "vendor_intended": vendor_intended,
            "expense_intended": expense_intended,
        },
    )
    ctx.invalidate_views()
    return {"success": True}


def run_rule_retroactively(
    ctx: ReceiptsContext,
    rule_id: int,
    scope: str = "pending",
    time_budget_seconds: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Union[Dict, ActionError]:
    """
    Drive retro steps until the run is done or the time budget is spent.

    A partial result has done=False and carries nextOffset and cutoffId so
    the caller can resume with run_rule_retro_step.
    """
    budget = time_budget_seconds if time_budget_seconds is not None else ctx.settings.RETRO_TIME_BUDGET_SECONDS
    started = clock()

    totals = AutomationResult()
    reviewed = 0
    offset = 0
    cutoff_id = None
    step = None

    while True:
        step = run_rule_retro_step(ctx, rule_id, scope, offset=offset, cutoff_id=cutoff_id)
        if is_error(step):
            return step

        reviewed += step["reviewed"]
        totals.merge(AutomationResult(
            matched=step["matched"],
            status_auto_updated=step["statusAutoUpdated"],
            classification_updated=step["classificationUpdated"],
            vendor_intended=step["vendorIntended"],
            expense_intended=step["expenseIntended"],
            failed=step["failed"],
            samples=step["samples"],
        ))
        offset = step["nextOffset"]
        cutoff_id = step["cutoffId"]

        if step["done"]:
            break
        if clock() - started >= budget:
            logger.warning(
                "Retro run for rule %s stopped at %d/%d after %.1fs", rule_id, offset, step["total"], budget
            )
            break

    done = step["done"]
    if done:
        finalize_rule_retro_run(
            ctx,
            rule_id,
            scope,
            reviewed=reviewed,
            matched=totals.matched,
            status_auto_updated=totals.status_auto_updated,
            classification_updated=totals.classification_updated,
            vendor_intended=totals.vendor_intended,
            expense_intended=totals.expense_intended,
        )

    return {
        "success": True,
        "reviewed": reviewed,
        "autoApplied": totals.status_auto_updated,
        "classified": totals.classification_updated,
        "matched": totals.matched,
        "vendorIntended": totals.vendor_intended,
        "expenseIntended": totals.expense_intended,
        "failed": totals.failed,
        "samples": totals.samples,
        "done": done,
        "nextOffset": offset,
        "total": step["total"],
        "cutoffId": cutoff_id,
    }
