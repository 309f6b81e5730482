"""
Audit trail for state-changing operations.

Entries are added to the caller's SQLAlchemy session and committed together
with the change they describe; this module never commits.
"""
import logging
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models import AuditLog, ExpenseClaim

logger = logging.getLogger(__name__)

CLAIM_SNAPSHOT_FIELDS = (
    "id",
    "user_id",
    "session_id",
    "policy_id",
    "first_business_visit_id",
    "last_business_visit_id",
    "business_start_at",
    "business_end_at",
    "km_claimed",
    "amount_claimed",
    "km_approved",
    "amount_approved",
    "status",
    "exception_reason",
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def claim_snapshot(claim: Optional[ExpenseClaim]) -> Optional[Dict[str, Any]]:
    if claim is None:
        return None
    return {field: _jsonable(getattr(claim, field)) for field in CLAIM_SNAPSHOT_FIELDS}


def log_action(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    actor_user_id: Optional[int] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before_json=before,
        after_json=after,
    )
    db.add(entry)
    logger.debug(f"Audit logged: {action} on {entity_type} {entity_id} by user {actor_user_id}")
    return entry


def get_entity_history(db: Session, entity_type: str, entity_id: Any) -> List[AuditLog]:
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
