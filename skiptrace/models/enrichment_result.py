"""
EnrichmentResult model — the current contact result per lead (the cache).

At most one row per lead; a successful re-trace overwrites it in place.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, UniqueConstraint

from skiptrace.database import Base, as_utc


class EnrichmentResult(Base):
    __tablename__ = 'enrichment_results'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Text, nullable=False)
    phones = Column(JSON, default=list)    # [{number, type, confidence, is_dnc, is_litigator}]
    emails = Column(JSON, default=list)    # [{address, confidence}]
    provider = Column(Text, nullable=False)  # chain slot: primary/secondary/free
    cost_cents = Column(Integer, nullable=False, default=0)
    resolved_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('lead_id', name='uq_enrichment_results_lead_id'),
    )

    def to_dict(self, cached=False):
        return {
            'leadId': self.lead_id,
            'phones': list(self.phones or []),
            'emails': list(self.emails or []),
            'provider': self.provider,
            # A cached read costs nothing; cost_cents is what the original lookup billed
            'cost': 0 if cached else (self.cost_cents or 0),
            'cached': cached,
            'resolvedAt': as_utc(self.resolved_at).isoformat() if self.resolved_at else None,
        }
