"""Run model."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, Text

from nbpipeline.database import Base, utcnow


class Run(Base):
    """Run represents one attempt to produce all NBs for a company or company pair."""

    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    target_company_id = Column(Integer, ForeignKey("companies.id"))  # Null for single company analysis
    user_id = Column(Integer, nullable=False)
    mode = Column(Text, nullable=False, default="full")
    # 'queued', 'running', 'retrying', 'completed', 'failed', 'cancelled', 'archived'
    status = Column(Text, nullable=False, default="queued")
    est_tokens = Column(Integer, default=0)
    est_cost = Column(Float, default=0.0)
    actual_tokens = Column(Integer)
    actual_cost = Column(Float)
    cache_strategy = Column(Text)  # 'reuse', 'full'
    cache_decision = Column(Text, default="auto")  # Requested: 'auto', 'reuse', 'full'
    reused_from_run_id = Column(Integer, ForeignKey("runs.id", ondelete="SET NULL"))
    reused_snapshot_id = Column(Integer)  # Estimator hint, not a reuse decision
    refresh_config = Column(Text)  # JSON override flags
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_runs_status", "status"),
        Index("idx_runs_company_pair", "company_id", "target_company_id"),
    )
