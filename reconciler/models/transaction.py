from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index,
    Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class ReceiptTransaction(Base):
    __tablename__ = "receipt_transactions"

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(Integer, ForeignKey("receipt_batches.id"), index=True)

    # Imported statement facts, never rewritten after insert
    transaction_date = Column(Date, nullable=False, index=True)
    details = Column(Text, nullable=False, index=True)
    transaction_type = Column(String)
    amount_in = Column(Numeric(12, 2))
    amount_out = Column(Numeric(12, 2))
    balance = Column(Numeric(12, 2))
    dedupe_hash = Column(String(64), nullable=False)

    # pending, completed, auto_completed, no_receipt_required, cant_find
    status = Column(String, nullable=False, default="pending", index=True)
    receipt_required = Column(Boolean, nullable=False, default=True)

    vendor_name = Column(String(120))
    vendor_source = Column(String)  # manual, rule, ai
    vendor_rule_id = Column(Integer, ForeignKey("receipt_rules.id"))
    vendor_updated_at = Column(DateTime(timezone=True))
    expense_category = Column(String)
    expense_category_source = Column(String)  # manual, rule, ai
    expense_rule_id = Column(Integer, ForeignKey("receipt_rules.id"))
    expense_updated_at = Column(DateTime(timezone=True))

    marked_by = Column(String)
    marked_by_email = Column(String)
    marked_by_name = Column(String)
    marked_at = Column(DateTime(timezone=True))
    marked_method = Column(String)  # manual, rule, receipt_upload
    rule_applied_id = Column(Integer, ForeignKey("receipt_rules.id"))

    notes = Column(Text)
    ai_confidence = Column(Integer)
    ai_suggested_keywords = Column(String(300))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    batch = relationship("ReceiptBatch")
    files = relationship("ReceiptFile", back_populates="transaction", order_by="ReceiptFile.uploaded_at")

    __table_args__ = (
        UniqueConstraint("dedupe_hash", name="uq_receipt_transactions_dedupe_hash"),
        CheckConstraint("amount_in IS NULL OR amount_in >= 0", name="ck_receipt_transactions_amount_in"),
        CheckConstraint("amount_out IS NULL OR amount_out >= 0", name="ck_receipt_transactions_amount_out"),
        Index("ix_receipt_transactions_date_id", "transaction_date", "id"),
    )

    @property
    def direction(self) -> str:
        return "in" if (self.amount_in or 0) > 0 else "out"

    @property
    def is_incoming_only(self) -> bool:
        return (self.amount_in or 0) > 0 and not (self.amount_out or 0) > 0


class ReceiptFile(Base):
    __tablename__ = "receipt_files"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("receipt_transactions.id"), nullable=False, index=True)
    storage_path = Column(String, nullable=False)  # key inside the receipt store
    file_name = Column(String, nullable=False)
    mime_type = Column(String)
    file_size_bytes = Column(Integer)
    uploaded_by = Column(String)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())

    transaction = relationship("ReceiptTransaction", back_populates="files")

    __table_args__ = (
        UniqueConstraint("transaction_id", "storage_path", name="uq_receipt_files_transaction_path"),
    )
