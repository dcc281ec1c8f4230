"""
ProviderCall model — append-only audit ledger of every provider invocation.

Source of truth for spend accounting. Rows are never updated or deleted.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, Index

from skiptrace.database import Base, as_utc


class ProviderCall(Base):
    __tablename__ = 'provider_calls'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, nullable=True)
    lead_id = Column(Text, nullable=False)
    provider = Column(Text, nullable=False)   # chain slot
    adapter = Column(Text, nullable=True)     # integration that served the slot
    cost_cents = Column(Integer, nullable=False, default=0)
    succeeded = Column(Boolean, nullable=False, default=False)
    error_reason = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    called_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('ix_provider_calls_called_at', 'called_at'),
        Index('ix_provider_calls_lead_id', 'lead_id'),
        Index('ix_provider_calls_run_id', 'run_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'runId': self.run_id,
            'leadId': self.lead_id,
            'provider': self.provider,
            'adapter': self.adapter,
            'costCents': self.cost_cents,
            'succeeded': bool(self.succeeded),
            'errorReason': self.error_reason,
            'durationMs': self.duration_ms,
            'calledAt': as_utc(self.called_at).isoformat() if self.called_at else None,
        }
