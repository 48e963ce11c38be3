from sqlalchemy import Column, String, Integer
from slotrent.db.session import Base

class Counter(Base):
    """Named monotonic counters for human-readable ids (RSV-000123)."""

    __tablename__ = "counters"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
