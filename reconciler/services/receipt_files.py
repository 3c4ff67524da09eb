"""
Receipt evidence attached to transactions.

Blob storage and the metadata table cannot share a transaction, so each step
that fails undoes the steps before it. When the undo itself fails the error
says so, because the two stores are then out of step.
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..models.transaction import ReceiptFile, ReceiptTransaction
from ..schemas import ReceiptFileResponse
from .audit import add_transaction_log, record_audit_event
from .context import ReceiptsContext
from .outcome import ActionError, StorageError, not_found, validation_error

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9\s-]")


def _slug(value: str, fallback: str = "receipt") -> str:
    cleaned = re.sub(r"\s+", "-", _UNSAFE.sub("", value or "").strip()).lower()
    return cleaned[:60] or fallback


def compose_storage_path(tx: ReceiptTransaction, original_name: str) -> str:
    """<year>/<date>_<details>_<amount>_<id>.<ext>"""
    extension = original_name.rsplit(".", 1)[-1].lower() if "." in (original_name or "") else "pdf"
    amount = tx.amount_out or tx.amount_in or 0
    unique_id = uuid.uuid4().hex[:8]
    return (
        f"{tx.transaction_date.year}/"
        f"{tx.transaction_date.isoformat()}_{_slug(tx.details)}_{amount:.2f}_{unique_id}.{_slug(extension, 'pdf')}"
    )


def upload_receipt(
    ctx: ReceiptsContext,
    transaction_id: int,
    filename: str,
    content: bytes,
    mime_type: Optional[str] = None,
) -> Union[Dict, ActionError]:
    """Store a receipt file and mark its transaction completed"""
    denied = ctx.require("manage")
    if denied:
        return denied

    if not content:
        return validation_error("File is empty")
    if len(content) > ctx.settings.MAX_RECEIPT_UPLOAD_SIZE:
        return validation_error("File is too large. Please keep receipts under 15MB.")

    db = ctx.db
    tx = db.get(ReceiptTransaction, transaction_id)
    if tx is None:
        return not_found("Transaction not found")

    storage_path = compose_storage_path(tx, filename)
    try:
        ctx.storage.save(storage_path, content)
    except StorageError:
        logger.exception("Failed to upload receipt for transaction %s", transaction_id)
        return ActionError("storage", "Failed to upload receipt file.")

    receipt = ReceiptFile(
        transaction_id=transaction_id,
        storage_path=storage_path,
        file_name=filename or storage_path.rsplit("/", 1)[-1],
        mime_type=mime_type,
        file_size_bytes=len(content),
        uploaded_by=ctx.actor.user_id,
    )
    try:
        db.add(receipt)
        db.commit()
        db.refresh(receipt)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record receipt metadata for transaction %s", transaction_id)
        try:
            ctx.storage.delete(storage_path)
        except StorageError:
            logger.exception("Failed to clean up stored receipt %s", storage_path)
            return ActionError(
                "storage",
                "Failed to store receipt metadata. Uploaded file cleanup requires manual reconciliation.",
            )
        return ActionError("fatal", "Failed to store receipt metadata.")

    receipt_id = receipt.id
    previous_status = tx.status
    now = datetime.now(timezone.utc)
    try:
        tx.status = "completed"
        tx.receipt_required = False
        tx.marked_by = ctx.actor.user_id
        tx.marked_by_email = ctx.actor.email
        tx.marked_by_name = ctx.actor.name
        tx.marked_at = now
        tx.marked_method = "receipt_upload"
        tx.rule_applied_id = None
        tx.updated_at = now
        add_transaction_log(
            db, transaction_id, "receipt_upload",
            previous_status=previous_status, new_status="completed",
            note=f"Receipt uploaded: {receipt.file_name}", performed_by=ctx.actor.user_id,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update transaction %s after receipt upload", transaction_id)
        cleanup_failed = False
        try:
            db.query(ReceiptFile).filter(ReceiptFile.id == receipt_id).delete()
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            cleanup_failed = True
            logger.exception("Failed to roll back receipt record %s", receipt_id)
        try:
            ctx.storage.delete(storage_path)
        except StorageError:
            cleanup_failed = True
            logger.exception("Failed to roll back stored receipt %s", storage_path)
        if cleanup_failed:
            return ActionError(
                "fatal",
                "Failed to update transaction status after receipt upload. "
                "Receipt cleanup requires manual reconciliation.",
            )
        return ActionError("fatal", "Failed to update transaction status after receipt upload.")

    record_audit_event(
        db,
        operation_type="upload_receipt",
        resource_type="receipt_transaction",
        resource_id=transaction_id,
        user_id=ctx.actor.user_id,
        additional_info={"file_name": receipt.file_name, "file_size_bytes": len(content)},
    )
    ctx.invalidate_views()
    return {"success": True, "receipt": ReceiptFileResponse.model_validate(receipt).model_dump()}


def delete_receipt(ctx: ReceiptsContext, file_id: int) -> Union[Dict, ActionError]:
    """
    Remove a receipt file.

    The metadata row goes first; if the blob cannot be removed the row is put
    back. Deleting the last receipt returns the transaction to pending.
    """
    denied = ctx.require("manage")
    if denied:
        return denied

    db = ctx.db
    receipt = db.get(ReceiptFile, file_id)
    if receipt is None:
        return not_found("Receipt not found")

    snapshot = {
        "id": receipt.id,
        "transaction_id": receipt.transaction_id,
        "storage_path": receipt.storage_path,
        "file_name": receipt.file_name,
        "mime_type": receipt.mime_type,
        "file_size_bytes": receipt.file_size_bytes,
        "uploaded_by": receipt.uploaded_by,
        "uploaded_at": receipt.uploaded_at,
    }
    try:
        db.delete(receipt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to delete receipt record %s", file_id)
        return ActionError("fatal", "Failed to delete receipt record.")

    try:
        ctx.storage.delete(snapshot["storage_path"])
    except StorageError:
        logger.exception("Failed to delete stored receipt %s, restoring record", snapshot["storage_path"])
        try:
            db.add(ReceiptFile(**snapshot))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to restore receipt record %s", file_id)
            return ActionError(
                "storage",
                "Failed to delete receipt file. Receipt record cleanup requires manual reconciliation.",
            )
        return ActionError("storage", "Failed to delete receipt file.")

    transaction_id = snapshot["transaction_id"]
    tx = db.get(ReceiptTransaction, transaction_id)
    remaining = db.query(ReceiptFile).filter(ReceiptFile.transaction_id == transaction_id).count()
    previous_status = tx.status if tx else None
    try:
        if tx is not None and remaining == 0:
            tx.status = "pending"
            tx.receipt_required = True
            tx.marked_by = None
            tx.marked_by_email = None
            tx.marked_by_name = None
            tx.marked_at = None
            tx.marked_method = None
            tx.rule_applied_id = None
            tx.updated_at = datetime.now(timezone.utc)
        if tx is not None:
            add_transaction_log(
                db, transaction_id, "receipt_deleted",
                previous_status=previous_status, new_status=tx.status,
                note=f"Receipt removed: {snapshot['file_name']}", performed_by=ctx.actor.user_id,
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to reset transaction %s after receipt deletion", transaction_id)
        return ActionError("fatal", "Receipt deleted but the transaction status could not be updated.")

    record_audit_event(
        db,
        operation_type="delete_receipt",
        resource_type="receipt_transaction",
        resource_id=transaction_id,
        user_id=ctx.actor.user_id,
        additional_info={"file_id": file_id, "remaining_files": remaining},
    )
    ctx.invalidate_views()
    return {"success": True, "remainingFiles": remaining}
