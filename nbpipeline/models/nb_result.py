"""NB result model."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text

from nbpipeline.database import Base, utcnow


class NBResult(Base):
    """Output of one Neural Block for a run."""

    __tablename__ = "nb_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    nb_code = Column(Text, nullable=False)  # Stored as generated, may be a legacy spelling
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'running', 'completed', 'failed'
    payload = Column(Text)  # JSON text
    citations = Column(Text)  # JSON array text
    tokens_used = Column(Integer, default=0)
    duration_ms = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_nb_results_run_code", "run_id", "nb_code"),)
