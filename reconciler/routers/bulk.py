from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_context
from ..schemas import GroupApplyRequest, GroupRuleRequest
from ..services.context import ReceiptsContext
from ..services.group_classifier import apply_group_classification, create_rule_from_group, get_bulk_review_data
from .responses import respond

router = APIRouter()


@router.get("/groups")
def get_groups(
    limit: int = 10,
    statuses: Optional[List[str]] = Query(None),
    only_unclassified: bool = Query(True, alias="onlyUnclassified"),
    ctx: ReceiptsContext = Depends(get_context),
):
    """
    Group transactions by identical details for bulk review.
    statuses may be repeated or comma separated.
    """
    if statuses:
        statuses = [s.strip() for value in statuses for s in value.split(",") if s.strip()]
    return respond(get_bulk_review_data(ctx, limit=limit, statuses=statuses, only_unclassified=only_unclassified))


@router.post("/apply")
async def apply_group(request: GroupApplyRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Apply a confirmed classification to every transaction in a group"""
    return respond(apply_group_classification(ctx, request))


@router.post("/rules")
async def create_group_rule(request: GroupRuleRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Create a rule from a reviewed group"""
    return respond(create_rule_from_group(ctx, request))
