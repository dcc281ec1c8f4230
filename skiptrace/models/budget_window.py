"""
BudgetWindow model — durable soft-pause flag and operator override per daily window.
"""
from sqlalchemy import Column, Integer, Boolean, Date, DateTime

from skiptrace.database import Base


class BudgetWindow(Base):
    __tablename__ = 'budget_windows'

    window_start = Column(Date, primary_key=True)   # local date in BUDGET_TIMEZONE
    limit_cents = Column(Integer, nullable=True)     # None → configured daily cap
    soft_paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    reset_at = Column(DateTime(timezone=True), nullable=True)
