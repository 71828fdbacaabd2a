# backend/dealdesk/api/audit.py
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditLog

logger = logging.getLogger(__name__)


def log_audit_action(
    db: Session,
    action: str,
    entity_type: Optional[str],
    entity_id: Optional[Any],
    old_data: Optional[Dict[str, Any]] = None,
    new_data: Optional[Dict[str, Any]] = None,
    organization_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> bool:
    """
    Persists an audit row in its own commit. Failures are logged and
    swallowed: auditing never fails the operation being audited.
    Returns True when the row was written.
    """
    try:
        db.add(
            AuditLog(
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                old_data=old_data,
                new_data=new_data,
                organization_id=organization_id,
                user_id=user_id,
            )
        )
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.error("Audit log write failed for %s %s:%s", action, entity_type, entity_id, exc_info=True)
        return False
