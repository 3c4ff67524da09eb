from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from ..database import Base


class ReceiptBatch(Base):
    __tablename__ = "receipt_batches"

    id = Column(Integer, primary_key=True, index=True)
    original_filename = Column(String, nullable=False)
    source_hash = Column(String(64))  # sha256 of the uploaded bytes
    row_count = Column(Integer, nullable=False, default=0)  # parsed rows, before dedupe
    notes = Column(String)
    uploaded_by = Column(String)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
