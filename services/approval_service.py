"""
Approval Service - manager decisions on expense claims
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from db import commit_or_rollback
from models import (
    ApprovalAction,
    ClaimStatus,
    ExpenseApproval,
    ExpenseClaim,
    User,
)
from services import audit_service
from services.errors import ClaimNotFound, InvalidApproval, InvalidTransition, Unauthorized
from services.expense_service import money
from services.timezone_utils import utc_now

logger = logging.getLogger(__name__)

DECIDABLE_STATUSES = (ClaimStatus.SUBMITTED.value, ClaimStatus.NEEDS_APPROVAL.value)


def _require_note(note: Optional[str], action: ApprovalAction) -> str:
    if not note or not note.strip():
        raise InvalidApproval(f"A note is required for {action.value}")
    return note.strip()


def apply_approval(
    db: Session,
    claim_id: int,
    action: ApprovalAction,
    approver: User,
    km_approved: Optional[Decimal] = None,
    amount_approved: Optional[Decimal] = None,
    note: Optional[str] = None,
) -> ExpenseClaim:
    """
    Record one manager decision.

    APPROVE copies the claimed figures, REJECT zeroes them, ADJUST takes the
    manager's figures (free-form, with a mandatory note) and REQUEST_INFO
    leaves the claim untouched. Every action is kept as an ExpenseApproval
    row and an EXPENSE_<ACTION> audit entry.
    """
    if not approver.is_manager:
        raise Unauthorized("Only managers can act on expense claims")

    action = ApprovalAction(action)
    claim = db.query(ExpenseClaim).filter(ExpenseClaim.id == claim_id).first()
    if not claim:
        raise ClaimNotFound(f"Expense claim {claim_id} not found")
    if claim.status not in DECIDABLE_STATUSES:
        raise InvalidTransition(
            f"Claim {claim.id} is {claim.status}; no further decisions are allowed",
            {"status": claim.status},
        )

    before = audit_service.claim_snapshot(claim)
    record = ExpenseApproval(
        claim_id=claim.id,
        action=action.value,
        approved_by_user_id=approver.id,
        note=note.strip() if note and note.strip() else None,
    )

    if action == ApprovalAction.APPROVE:
        claim.status = ClaimStatus.APPROVED.value
        claim.km_approved = claim.km_claimed
        claim.amount_approved = claim.amount_claimed
    elif action == ApprovalAction.REJECT:
        claim.status = ClaimStatus.REJECTED.value
        claim.km_approved = money(0)
        claim.amount_approved = money(0)
    elif action == ApprovalAction.ADJUST:
        if km_approved is None or amount_approved is None:
            raise InvalidApproval("km_approved and amount_approved are required for ADJUST")
        if km_approved < 0 or amount_approved < 0:
            raise InvalidApproval("Adjusted values must not be negative")
        record.note = _require_note(note, action)
        claim.status = ClaimStatus.APPROVED.value
        claim.km_approved = money(km_approved)
        claim.amount_approved = money(amount_approved)
    else:
        record.note = _require_note(note, action)

    if action != ApprovalAction.REQUEST_INFO:
        claim.updated_at = utc_now()
    record.km_approved = claim.km_approved
    record.amount_approved = claim.amount_approved
    db.add(record)

    audit_service.log_action(
        db,
        action=f"EXPENSE_{action.value}",
        entity_type="expense_claim",
        entity_id=claim.id,
        actor_user_id=approver.id,
        before=before,
        after=audit_service.claim_snapshot(claim),
    )
    commit_or_rollback(db)
    db.refresh(claim)

    logger.info(f"✓ Claim {claim.id} {action.value} by user {approver.id} -> {claim.status}")
    return claim


def list_pending_claims(db: Session) -> List[ExpenseClaim]:
    return (
        db.query(ExpenseClaim)
        .filter(ExpenseClaim.status.in_(DECIDABLE_STATUSES))
        .order_by(ExpenseClaim.created_at.asc(), ExpenseClaim.id.asc())
        .all()
    )
