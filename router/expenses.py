"""
Expense Routes
==============

Field users read their own claims; managers review the pending queue,
decide on claims and can trigger a reconciliation manually.
"""
from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from db import get_db
from dependencies import get_current_user, allow_manager
from models import User
from schemas import ApprovalRequest, ExpenseClaimOut, ExpensePolicyOut, PendingClaimOut
from services import approval_service, expense_service
from services.timezone_utils import ist_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/expenses", tags=["Expenses"])


@router.get("/mine", response_model=List[ExpenseClaimOut])
def my_claims(
    type: Optional[str] = Query(None, description="'today' for today's claim only"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    day = ist_today() if type == "today" else None
    return expense_service.list_user_claims(db, current_user.id, day=day)


@router.get("/policy", response_model=ExpensePolicyOut)
def active_policy(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Active thresholds; the app schedules its location pings from ping_interval_sec."""
    return expense_service.get_active_policy(db)


@router.get("/pending", response_model=List[PendingClaimOut], dependencies=[Depends(allow_manager)])
def pending_claims(db: Session = Depends(get_db)):
    """Claims awaiting a decision (SUBMITTED and NEEDS_APPROVAL)."""
    return approval_service.list_pending_claims(db)


@router.post("/{claim_id}/approve", response_model=ExpenseClaimOut, dependencies=[Depends(allow_manager)])
def decide_claim(
    review: ApprovalRequest,
    claim_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Apply a manager decision: APPROVE, REJECT, ADJUST (with km/amount and a
    note) or REQUEST_INFO (note only, claim unchanged).
    """
    return approval_service.apply_approval(
        db,
        claim_id,
        review.action,
        current_user,
        km_approved=review.km_approved,
        amount_approved=review.amount_approved,
        note=review.note,
    )


@router.post(
    "/sessions/{session_id}/reconcile",
    response_model=ExpenseClaimOut,
    dependencies=[Depends(allow_manager)],
)
def reconcile(
    session_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Recompute a session's claim. Refused once the claim has been decided."""
    return expense_service.reconcile_session(db, session_id, actor_user_id=current_user.id)
