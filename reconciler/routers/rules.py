from typing import Optional

from fastapi import APIRouter, Body, Depends, Form

from ..dependencies import get_context
from ..schemas import RetroFinalizeRequest, RetroRunRequest, RetroStepRequest
from ..services.context import ReceiptsContext
from ..services.outcome import ActionError
from ..services.retro_runner import finalize_rule_retro_run, run_rule_retro_step, run_rule_retroactively
from ..services.rules_service import (
    create_rule,
    disable_rule,
    get_rule_logs,
    list_rules,
    parse_rule_input,
    toggle_rule,
    update_rule,
)
from .responses import respond

router = APIRouter()


def _rule_form(
    name: str = Form(""),
    description: Optional[str] = Form(None),
    match_description: Optional[str] = Form(None),
    match_transaction_type: Optional[str] = Form(None),
    match_direction: str = Form("both"),
    match_min_amount: Optional[str] = Form(None),
    match_max_amount: Optional[str] = Form(None),
    auto_status: str = Form("no_receipt_required"),
    set_vendor_name: Optional[str] = Form(None),
    set_expense_category: Optional[str] = Form(None),
):
    return {
        "name": name,
        "description": description,
        "match_description": match_description,
        "match_transaction_type": match_transaction_type,
        "match_direction": match_direction,
        "match_min_amount": match_min_amount,
        "match_max_amount": match_max_amount,
        "auto_status": auto_status,
        "set_vendor_name": set_vendor_name,
        "set_expense_category": set_expense_category,
    }


@router.get("")
async def get_all_rules(ctx: ReceiptsContext = Depends(get_context)):
    """Get all rules in evaluation order"""
    return respond(list_rules(ctx))


@router.post("")
async def create(form: dict = Depends(_rule_form), ctx: ReceiptsContext = Depends(get_context)):
    """Create a new rule"""
    data = parse_rule_input(form)
    if isinstance(data, ActionError):
        return respond(data)
    return respond(create_rule(ctx, data))


@router.put("/{rule_id}")
async def update(rule_id: int, form: dict = Depends(_rule_form), ctx: ReceiptsContext = Depends(get_context)):
    """Update a rule"""
    data = parse_rule_input(form)
    if isinstance(data, ActionError):
        return respond(data)
    return respond(update_rule(ctx, rule_id, data))


@router.post("/{rule_id}/toggle")
async def toggle(
    rule_id: int,
    is_active: bool = Body(..., embed=True, alias="isActive"),
    ctx: ReceiptsContext = Depends(get_context),
):
    """Enable or disable a rule"""
    return respond(toggle_rule(ctx, rule_id, is_active))


@router.delete("/{rule_id}")
async def delete(rule_id: int, ctx: ReceiptsContext = Depends(get_context)):
    """Disable a rule; rules are never hard-deleted"""
    return respond(disable_rule(ctx, rule_id))


@router.get("/{rule_id}/logs")
async def rule_logs(rule_id: int, ctx: ReceiptsContext = Depends(get_context)):
    """Get the transaction log rows written by a rule"""
    return respond(get_rule_logs(ctx, rule_id))


@router.post("/{rule_id}/retro")
def run_retro(rule_id: int, request: RetroRunRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Apply a rule to existing transactions within the time budget"""
    return respond(run_rule_retroactively(ctx, rule_id, request.scope))


@router.post("/{rule_id}/retro/step")
def run_retro_step(rule_id: int, request: RetroStepRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Apply a rule to one chunk of existing transactions"""
    return respond(run_rule_retro_step(
        ctx,
        rule_id,
        request.scope,
        offset=request.offset,
        chunk_size=request.chunk_size,
        cutoff_id=request.cutoff_id,
    ))


@router.post("/{rule_id}/retro/finalize")
async def finalize_retro(rule_id: int, request: RetroFinalizeRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Record the totals of a client-driven retroactive run"""
    return respond(finalize_rule_retro_run(
        ctx,
        rule_id,
        request.scope,
        reviewed=request.reviewed,
        matched=request.matched,
        status_auto_updated=request.status_auto_updated,
        classification_updated=request.classification_updated,
        vendor_intended=request.vendor_intended,
        expense_intended=request.expense_intended,
    ))
