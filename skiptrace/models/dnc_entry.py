"""
DncEntry model — cached do-not-call verdict per phone number (E.164).

Verdicts from the DNC API expire after DNC_CACHE_DAYS; verdicts reported by a
skip-trace provider are stored the same way with source 'provider'.
"""
from sqlalchemy import Column, Text, Boolean, DateTime

from skiptrace.database import Base


class DncEntry(Base):
    __tablename__ = 'dnc_cache'

    phone_number = Column(Text, primary_key=True)
    is_dnc = Column(Boolean, nullable=False, default=False)
    source = Column(Text, nullable=False)            # api, provider
    checked_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
