"""Telemetry and diagnostics models (append-only)."""

from sqlalchemy import JSON, Column, DateTime, Float, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB

from nbpipeline.database import Base, utcnow


class Telemetry(Base):
    """Metric event for a run (run_id 0 for system-level)."""

    __tablename__ = "telemetry"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, nullable=False, default=0)
    metric_key = Column(Text, nullable=False)
    value_num = Column(Float)
    value_text = Column(Text)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"))
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_telemetry_run_metric", "run_id", "metric_key"),)


class Diagnostic(Base):
    """Human-readable diagnostic message for a run."""

    __tablename__ = "diagnostics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, nullable=False, default=0)
    metric = Column(Text, nullable=False)
    severity = Column(Text, nullable=False)  # 'info', 'warning', 'error'
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_diagnostics_run", "run_id"),)
