from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.sql import func

from ..database import Base


class ReceiptTransactionLog(Base):
    __tablename__ = "receipt_transaction_logs"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("receipt_transactions.id"), nullable=False)
    previous_status = Column(String)
    new_status = Column(String)
    action_type = Column(String, nullable=False)
    note = Column(Text)
    performed_by = Column(String)
    rule_id = Column(Integer, ForeignKey("receipt_rules.id"), index=True)
    performed_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_receipt_transaction_logs_tx_performed", "transaction_id", "performed_at"),
    )
