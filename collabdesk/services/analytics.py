"""
Product analytics events.

Always called through best_effort: an analytics failure is never the
caller's failure.
"""
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from collabdesk.core.timeutil import Clock, utcnow
from collabdesk.db.models import AnalyticsEvent

CONTRACT_ALIGNMENT_REQUIRED = "contract_alignment_required"
CONTRACT_SIGNED = "contract_signed"
CONTRACT_AUTO_GENERATED = "contract_auto_generated"


def record_event(
    db: Session,
    event_type: str,
    deal_id: Optional[str],
    creator_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    clock: Clock = utcnow,
) -> AnalyticsEvent:
    event = AnalyticsEvent(
        event_type=event_type,
        deal_id=deal_id,
        creator_id=creator_id,
        meta_data=metadata or {},
        created_at=clock(),
    )
    db.add(event)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return event
