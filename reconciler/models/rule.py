from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from ..database import Base


class ReceiptRule(Base):
    __tablename__ = "receipt_rules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    match_description = Column(Text)  # comma-separated keywords, any one matches
    match_transaction_type = Column(String)
    match_direction = Column(String, nullable=False, default="both")  # in, out, both
    match_min_amount = Column(Numeric(12, 2))
    match_max_amount = Column(Numeric(12, 2))
    auto_status = Column(String, nullable=False, default="no_receipt_required")
    set_vendor_name = Column(String(120))
    set_expense_category = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String)
    updated_by = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "set_expense_category IS NULL OR match_direction = 'out'",
            name="ck_receipt_rules_expense_direction",
        ),
    )
