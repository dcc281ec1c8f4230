"""
Lead store — the engine's narrow view of the lead CRUD subsystem.

Reads identity/address and writes back a best-known phone/email projection.
"""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from skiptrace.database import get_session, utcnow
from skiptrace.models.lead import Lead
from skiptrace.pipeline.base import LeadRecord
from skiptrace.pipeline.errors import StoreError

logger = logging.getLogger('services.leads')

# Preferred phone line types, best first
_PHONE_TYPE_RANK = {'mobile': 0, 'wireless': 0, 'cell': 0, 'landline': 1, 'voip': 2}


def _to_record(lead: Lead) -> LeadRecord:
    return LeadRecord(
        id=lead.id,
        address=lead.address,
        owner_name=lead.owner_name or '',
        city=lead.city or '',
        state=lead.state or '',
        zip_code=lead.zip_code or '',
        phone=lead.phone,
        email=lead.email,
    )


def best_phone(phones: List[dict]) -> Optional[str]:
    """Pick the phone to project onto the lead.

    Callable numbers first (not DNC, not a known litigator), then mobile over
    landline, then highest confidence.
    """
    if not phones:
        return None
    ranked = sorted(
        phones,
        key=lambda p: (
            bool(p.get('is_dnc')) or bool(p.get('is_litigator')),
            _PHONE_TYPE_RANK.get((p.get('type') or '').lower(), 3),
            -(p.get('confidence') or 0),
        ),
    )
    return ranked[0].get('number')


def best_email(emails: List[dict]) -> Optional[str]:
    if not emails:
        return None
    return max(emails, key=lambda e: e.get('confidence') or 0).get('address')


class LeadStore:

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or get_session

    def get_lead(self, lead_id: str) -> Optional[LeadRecord]:
        session = self._session_factory()
        try:
            lead = session.get(Lead, lead_id)
            return _to_record(lead) if lead else None
        except SQLAlchemyError as e:
            raise StoreError(f'lead read failed: {e}') from e
        finally:
            session.close()

    def get_leads(self, lead_ids: Iterable[str]) -> Dict[str, LeadRecord]:
        """Known leads among lead_ids, keyed by id."""
        ids = list(lead_ids)
        if not ids:
            return {}
        session = self._session_factory()
        try:
            found = {}
            # Chunked to stay under bound-parameter limits
            for i in range(0, len(ids), 500):
                rows = session.execute(select(Lead).where(Lead.id.in_(ids[i:i + 500]))).scalars().all()
                found.update({lead.id: _to_record(lead) for lead in rows})
            return found
        except SQLAlchemyError as e:
            raise StoreError(f'lead read failed: {e}') from e
        finally:
            session.close()

    def update_contact_projection(self, lead_id: str, phone: Optional[str], email: Optional[str]) -> None:
        """Write best-known contacts back onto the lead.

        None leaves the existing value in place.
        """
        values = {}
        if phone:
            values['phone'] = phone
        if email:
            values['email'] = email
        if not values:
            return
        values['updated_at'] = utcnow()

        session = self._session_factory()
        try:
            session.execute(update(Lead).where(Lead.id == lead_id).values(**values))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to update contact projection for lead %s", lead_id, exc_info=True)
            raise StoreError(f'lead projection update failed: {e}') from e
        finally:
            session.close()
