"""
SkipTraceRun model — one row per batch submission.

Counters are a snapshot refreshed from the run's items; the run becomes
immutable once finished_at is set.
"""
from sqlalchemy import Column, Text, Integer, Boolean, DateTime

from skiptrace.database import Base


class SkipTraceRun(Base):
    __tablename__ = 'skiptrace_runs'

    run_id = Column(Text, primary_key=True)
    source_label = Column(Text, nullable=False, default='')
    force = Column(Boolean, nullable=False, default=False)
    total = Column(Integer, nullable=False, default=0)
    queued = Column(Integer, nullable=False, default=0)
    in_flight = Column(Integer, nullable=False, default=0)
    done = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    soft_paused = Column(Boolean, nullable=False, default=False)
    pause_reason = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
