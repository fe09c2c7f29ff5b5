import logging
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
from ..models import AuditEvent


logger = logging.getLogger("ride_ledger.audit")


def record_event(db: Session, type: str, actor_id: Optional[str], data: Optional[Dict[str, Any]] = None) -> None:
    """Queue an audit row on the caller's session; it commits with the primary write."""
    try:
        db.add(AuditEvent(type=type, actor_id=str(actor_id) if actor_id else None, data=data or {}))
    except Exception:
        # Never break primary flow on audit errors
        logger.warning("audit event dropped type=%s actor=%s", type, actor_id, exc_info=True)
