from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile

from ..dependencies import get_context
from ..schemas import ClassificationRequest, MarkTransactionRequest
from ..services.classification import get_transaction_logs, mark_transaction, update_classification
from ..services.context import ReceiptsContext
from ..services.import_service import import_statement
from ..services.receipt_files import delete_receipt, upload_receipt
from ..services.workspace import get_summary, list_transactions, suggest_vendor
from .responses import respond

router = APIRouter()


@router.post("/import")
async def upload_statement(
    statement: UploadFile = File(...),
    ctx: ReceiptsContext = Depends(get_context),
):
    """
    Import a bank statement CSV.
    Rows already seen are skipped; new rows go through the active rules and,
    when AI is configured, are classified in the background.
    """
    content = await statement.read()
    return respond(import_statement(ctx, statement.filename or "", content, statement.content_type))


@router.get("/transactions")
async def get_transactions(
    status: Optional[str] = None,
    direction: Optional[str] = None,
    search: Optional[str] = None,
    month: Optional[str] = None,
    missing_vendor: bool = Query(False, alias="missingVendor"),
    missing_expense: bool = Query(False, alias="missingExpense"),
    page: int = 1,
    page_size: int = Query(25, alias="pageSize"),
    ctx: ReceiptsContext = Depends(get_context),
):
    """List transactions newest first, with filters"""
    return respond(list_transactions(
        ctx,
        status=status,
        direction=direction,
        search=search,
        month=month,
        missing_vendor=missing_vendor,
        missing_expense=missing_expense,
        page=page,
        page_size=page_size,
    ))


@router.get("/summary")
async def get_workspace_summary(ctx: ReceiptsContext = Depends(get_context)):
    """Status counts, last import and AI spend"""
    return respond(get_summary(ctx))


@router.post("/transactions/{transaction_id}/mark")
async def mark(transaction_id: int, request: MarkTransactionRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Set a transaction's status by hand"""
    return respond(mark_transaction(ctx, transaction_id, request))


@router.post("/transactions/{transaction_id}/classification")
async def classify(transaction_id: int, request: ClassificationRequest, ctx: ReceiptsContext = Depends(get_context)):
    """Set vendor and/or expense category; returns a rule suggestion"""
    return respond(update_classification(ctx, transaction_id, request))


@router.get("/transactions/{transaction_id}/logs")
async def transaction_logs(transaction_id: int, ctx: ReceiptsContext = Depends(get_context)):
    """Get the audit trail of a transaction"""
    return respond(get_transaction_logs(ctx, transaction_id))


@router.post("/transactions/{transaction_id}/files")
async def upload_receipt_file(
    transaction_id: int,
    receipt: UploadFile = File(...),
    ctx: ReceiptsContext = Depends(get_context),
):
    """Attach a receipt and mark the transaction completed"""
    content = await receipt.read()
    return respond(upload_receipt(ctx, transaction_id, receipt.filename or "", content, receipt.content_type))


@router.delete("/files/{file_id}")
async def delete_receipt_file(file_id: int, ctx: ReceiptsContext = Depends(get_context)):
    """Delete a receipt; the last one returns the transaction to pending"""
    return respond(delete_receipt(ctx, file_id))


@router.get("/vendors/suggest")
async def vendor_suggestion(name: str = "", ctx: ReceiptsContext = Depends(get_context)):
    """Suggest a known vendor for a typed name"""
    return respond(suggest_vendor(ctx, name))
