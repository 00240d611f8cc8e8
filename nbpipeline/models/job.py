"""Job model for worker queue."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB

from nbpipeline.database import Base, utcnow


class Job(Base):
    """Job represents a deferred unit of work for the worker."""

    __tablename__ = "jobs"

    job_id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id", ondelete="CASCADE"))  # Nullable for maintenance jobs
    task = Column(Text, nullable=False)  # 'execute_run', 'cleanup_runs'
    status = Column(Text, nullable=False, default="queued")  # 'queued', 'running', 'done', 'failed'
    payload = Column(JSON().with_variant(JSONB(), "postgresql"))
    run_at = Column(DateTime, default=utcnow)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_jobs_status_run_at", "status", "run_at"),
        Index("idx_jobs_run_id", "run_id"),
    )
