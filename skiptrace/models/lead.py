"""
Lead model — the property-owner record owned by the lead CRUD subsystem.

The engine reads identity/address and writes back the best-known phone/email.
"""
from sqlalchemy import Column, Text, DateTime
from sqlalchemy.sql import func

from skiptrace.database import Base


class Lead(Base):
    __tablename__ = 'leads'

    id = Column(Text, primary_key=True)
    owner_name = Column(Text, default='')
    address = Column(Text, nullable=False)
    city = Column(Text, default='')
    state = Column(Text, default='')
    zip_code = Column(Text, default='')
    phone = Column(Text, nullable=True)   # contact projection
    email = Column(Text, nullable=True)   # contact projection
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
