"""Synthesis and pipeline artifact models."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint

from nbpipeline.database import Base, utcnow


class Synthesis(Base):
    """Rendered report for a run."""

    __tablename__ = "synthesis"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, unique=True)
    html_content = Column(Text)
    json_content = Column(Text)
    voice_report = Column(Text)
    selfcheck_report = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Artifact(Base):
    """Intermediate pipeline artifact keyed by phase and type."""

    __tablename__ = "artifacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    phase = Column(Text, nullable=False)
    artifact_type = Column(Text, nullable=False)
    json_data = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("run_id", "phase", "artifact_type"),)
