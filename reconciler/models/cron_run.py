from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from ..database import Base


class CronJobRun(Base):
    __tablename__ = "cron_job_runs"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String, nullable=False)
    run_key = Column(String, nullable=False)  # logical period, e.g. 2024-03-01
    status = Column(String, nullable=False, default="running")  # running, completed, failed
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at = Column(DateTime(timezone=True))
    error_message = Column(Text)  # truncated to 2000 chars

    __table_args__ = (
        UniqueConstraint("job_name", "run_key", name="uq_cron_job_runs_job_run_key"),
    )
