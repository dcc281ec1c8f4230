"""
SkipTraceRunItem model — one row per lead per run.

Status moves queued → in_flight → done|failed and never regresses.
"""
from sqlalchemy import (
    Column, Integer, Text, Boolean, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index,
)

from skiptrace.database import Base


class SkipTraceRunItem(Base):
    __tablename__ = 'skiptrace_run_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('skiptrace_runs.run_id'), nullable=False)
    lead_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='queued')
    last_error = Column(Text, nullable=True)
    cached = Column(Boolean, nullable=False, default=False)
    provider = Column(Text, nullable=True)
    cost_cents = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('run_id', 'lead_id', name='uq_run_item_lead'),
        CheckConstraint(
            "status IN ('queued', 'in_flight', 'done', 'failed')",
            name='ck_run_item_status',
        ),
        Index('ix_skiptrace_run_items_run_status', 'run_id', 'status'),
    )
