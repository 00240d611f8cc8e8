"""Company model."""

from sqlalchemy import Column, DateTime, Integer, Text

from nbpipeline.database import Base, utcnow


class Company(Base):
    """Company analysed by a run (source or target side)."""

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    sector = Column(Text)
    ticker = Column(Text)
    website = Column(Text)
    created_at = Column(DateTime, default=utcnow)
