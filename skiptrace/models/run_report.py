"""
RunReport model — immutable report artifact, written once per finished run.
"""
from sqlalchemy import Column, Text, DateTime, JSON, ForeignKey

from skiptrace.database import Base


class RunReport(Base):
    __tablename__ = 'run_reports'

    run_id = Column(Text, ForeignKey('skiptrace_runs.run_id'), primary_key=True)
    report = Column(JSON, nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
