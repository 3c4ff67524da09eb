from sqlalchemy import JSON, Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from ..database import Base


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    operation_type = Column(String, nullable=False)  # create, update, delete, import, retro_run...
    resource_type = Column(String, nullable=False)
    resource_id = Column(String)
    operation_status = Column(String, nullable=False, default="success")
    user_id = Column(String)
    additional_info = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class AIUsageEvent(Base):
    __tablename__ = "ai_usage_events"

    id = Column(Integer, primary_key=True, index=True)
    context = Column(String)  # e.g. receipt_group:<hash>
    model = Column(String)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    cost = Column(Float, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
