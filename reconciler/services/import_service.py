"""
Import service for bank statement uploads.
Handles validation, batch recording, duplicate-safe inserts and the
first automation pass over newly imported transactions.
"""
import logging
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.batch import ReceiptBatch
from ..models.log import ReceiptTransactionLog
from ..models.transaction import ReceiptTransaction
from ..schemas import BatchResponse, ParsedTransactionRow
from .ai_classifier import classify_transactions_with_ai
from .audit import record_audit_event
from .automation import apply_automation_rules
from .context import ReceiptsContext
from .outcome import ActionError, AuditLogWriteError, validation_error
from .statement_parser import StatementParseError, parse_statement, source_hash

logger = logging.getLogger(__name__)

INSERT_CHUNK_SIZE = 500


def validate_statement_upload(
    filename: Optional[str],
    content: bytes,
    max_size: int,
    content_type: Optional[str] = None,
) -> Optional[ActionError]:
    """Check name, type and size of an uploaded statement"""
    name = (filename or "").lower()
    if not (name.endswith(".csv") or content_type == "text/csv"):
        return validation_error("Only CSV bank statements are supported.")
    if not content:
        return validation_error("The uploaded file is empty.")
    if len(content) > max_size:
        return validation_error(f"File too large. Maximum size is {max_size // (1024 * 1024)}MB")
    return None


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


def insert_new_transactions(
    db: Session,
    batch_id: int,
    rows: Sequence[ParsedTransactionRow],
    performed_by: Optional[str],
    filename: str,
) -> List[int]:
    """
    Insert rows, ignoring any whose dedupe hash already exists.

    The inserts and their import log rows share one database transaction.

    Returns:
        IDs of the rows that were actually inserted
    """
    insert = _dialect_insert(db)

    # Track hashes seen in this file so repeated lines are only sent once
    seen_in_this_import = set()
    payload = []
    for row in rows:
        if row.dedupe_hash in seen_in_this_import:
            continue
        seen_in_this_import.add(row.dedupe_hash)
        payload.append({
            "batch_id": batch_id,
            "transaction_date": row.transaction_date,
            "details": row.details,
            "transaction_type": row.transaction_type,
            "amount_in": row.amount_in,
            "amount_out": row.amount_out,
            "balance": row.balance,
            "dedupe_hash": row.dedupe_hash,
            "status": "pending",
            "receipt_required": True,
        })

    inserted_ids: List[int] = []
    for start in range(0, len(payload), INSERT_CHUNK_SIZE):
        stmt = (
            insert(ReceiptTransaction)
            .values(payload[start:start + INSERT_CHUNK_SIZE])
            .on_conflict_do_nothing(index_elements=["dedupe_hash"])
            .returning(ReceiptTransaction.id)
        )
        inserted_ids.extend(db.execute(stmt).scalars().all())

    inserted_ids.sort()
    db.add_all([
        ReceiptTransactionLog(
            transaction_id=tx_id,
            previous_status=None,
            new_status="pending",
            action_type="import",
            note=f"Imported via {filename}",
            performed_by=performed_by,
        )
        for tx_id in inserted_ids
    ])
    db.commit()
    return inserted_ids


def queue_ai_classification(ctx: ReceiptsContext, transaction_ids: Sequence[int]) -> int:
    """Queue one background classification job per chunk; returns jobs queued"""
    if not transaction_ids or ctx.classifier is None or ctx.background is None:
        return 0
    chunk_size = ctx.settings.AI_JOB_CHUNK_SIZE
    queued = 0
    for start in range(0, len(transaction_ids), chunk_size):
        ctx.background(classify_transactions_with_ai, list(transaction_ids[start:start + chunk_size]), ctx.classifier)
        queued += 1
    return queued


def import_statement(
    ctx: ReceiptsContext,
    filename: str,
    content: bytes,
    content_type: Optional[str] = None,
) -> Union[Dict, ActionError]:
    """
    Import a bank statement CSV.

    Args:
        ctx: Receipts context for the caller
        filename: Original upload name
        content: Uploaded bytes
        content_type: MIME type reported by the client

    Returns:
        dict with success, inserted, skipped, autoApplied, autoClassified and batch,
        or an ActionError
    """
    denied = ctx.require("manage")
    if denied:
        return denied

    invalid = validate_statement_upload(filename, content, ctx.settings.MAX_STATEMENT_SIZE, content_type)
    if invalid:
        return invalid

    try:
        rows = parse_statement(content)
    except StatementParseError as e:
        return validation_error(str(e))

    if not rows:
        return validation_error("No valid transactions found in the CSV file.")

    db = ctx.db
    batch = ReceiptBatch(
        original_filename=filename,
        source_hash=source_hash(content),
        row_count=len(rows),
        uploaded_by=ctx.actor.user_id,
    )
    try:
        db.add(batch)
        db.commit()
        db.refresh(batch)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record receipt batch for %s", filename)
        return ActionError("fatal", "Failed to record the upload. Please try again.")

    try:
        inserted_ids = insert_new_transactions(db, batch.id, rows, ctx.actor.user_id, filename)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to insert transactions for batch %s", batch.id)
        return ActionError("fatal", "Failed to store the transactions.")

    try:
        automation = apply_automation_rules(db, inserted_ids)
    except AuditLogWriteError as e:
        return ActionError("fatal", f"Transactions were imported but automation stopped: {e}")

    ai_jobs_queued = queue_ai_classification(ctx, inserted_ids)

    skipped = len(rows) - len(inserted_ids)
    record_audit_event(
        db,
        operation_type="create",
        resource_type="receipt_batch",
        resource_id=batch.id,
        user_id=ctx.actor.user_id,
        additional_info={
            "filename": filename,
            "rows": len(rows),
            "inserted": len(inserted_ids),
            "skipped": skipped,
            "auto_applied": automation.status_auto_updated,
            "auto_classified": automation.classification_updated,
            "ai_jobs_queued": ai_jobs_queued,
        },
    )
    ctx.invalidate_views()

    logger.info(
        "Imported %s: %d rows, %d new, %d duplicates, %d auto-applied",
        filename, len(rows), len(inserted_ids), skipped, automation.status_auto_updated,
    )
    db.refresh(batch)
    return {
        "success": True,
        "inserted": len(inserted_ids),
        "skipped": skipped,
        "autoApplied": automation.status_auto_updated,
        "autoClassified": automation.classification_updated,
        "batch": BatchResponse.model_validate(batch).model_dump(),
    }
