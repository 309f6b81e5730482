"""
Expense Reconciliation
======================

Turns the GPS trail of a closed duty session into an ExpenseClaim:

1. business window = earliest CHECK_IN .. latest CHECK_OUT over the user's
   COMPLETED visits
2. samples of the session inside the window, walked pairwise
3. segments with a poor-accuracy endpoint or an over-long time gap are
   dropped; the rest are summed with haversine
4. too few valid segments or any gap routes the claim to manual review
"""
import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import commit_or_rollback
from models import (
    ClaimStatus,
    DutySession,
    ExpenseClaim,
    ExpensePolicy,
    LocationPoint,
    SessionStatus,
    Visit,
    VisitEvent,
    VisitEventType,
    VisitStatus,
)
from services import audit_service
from services.errors import ClaimLocked, InvalidTransition, PolicyNotFound, SessionNotFound
from services.geo import haversine_km
from services.timezone_utils import ist_day_bounds_utc, minutes_between, utc_now

logger = logging.getLogger(__name__)

INSUFFICIENT_POINTS_REASON = "Insufficient GPS data points (less than 2 points)"
LOCKED_STATUSES = (ClaimStatus.APPROVED.value, ClaimStatus.REJECTED.value)

TWO_PLACES = Decimal("0.01")


class BusinessWindow(NamedTuple):
    start_at: Optional[datetime]
    end_at: Optional[datetime]
    first_visit_id: Optional[int]
    last_visit_id: Optional[int]

    @property
    def is_established(self) -> bool:
        return self.start_at is not None and self.end_at is not None


class TrailScan(NamedTuple):
    total_km: float
    valid_segments: int
    has_sparse_gaps: bool


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


# PURE STEPS
# ============================================================================

def derive_business_window(events: Sequence[VisitEvent]) -> BusinessWindow:
    """Earliest CHECK_IN and latest CHECK_OUT, with the visits that supplied them."""
    start_at = end_at = None
    first_visit_id = last_visit_id = None

    for event in events:
        if event.event_type == VisitEventType.CHECK_IN.value:
            if start_at is None or event.event_at < start_at:
                start_at = event.event_at
                first_visit_id = event.visit_id
        elif event.event_type == VisitEventType.CHECK_OUT.value:
            if end_at is None or event.event_at > end_at:
                end_at = event.event_at
                last_visit_id = event.visit_id

    return BusinessWindow(start_at, end_at, first_visit_id, last_visit_id)


def scan_trail(
    points: Sequence[LocationPoint],
    min_accuracy_m: float,
    max_ping_gap_minutes: float,
) -> TrailScan:
    """
    Walk consecutive samples (already ordered by captured_at).

    A segment counts only when both endpoints are accurate enough and the
    gap between them is within the limit. A missing accuracy reading is
    treated as 0.
    """
    total_km = 0.0
    valid_segments = 0
    has_sparse_gaps = False

    for prev, curr in zip(points, points[1:]):
        if (prev.accuracy_m or 0) > min_accuracy_m or (curr.accuracy_m or 0) > min_accuracy_m:
            continue
        if minutes_between(prev.captured_at, curr.captured_at) > max_ping_gap_minutes:
            has_sparse_gaps = True
            continue
        total_km += haversine_km((prev.lat, prev.lng), (curr.lat, curr.lng))
        valid_segments += 1

    return TrailScan(total_km, valid_segments, has_sparse_gaps)


def classify_exceptions(scan: TrailScan, policy: ExpensePolicy) -> List[str]:
    exceptions = []
    if scan.valid_segments < policy.min_valid_segments:
        exceptions.append(
            f"Only {scan.valid_segments} valid GPS segments "
            f"(minimum {policy.min_valid_segments} required)"
        )
    if scan.has_sparse_gaps:
        exceptions.append(f"GPS data has gaps exceeding {policy.max_ping_gap_minutes} minutes")
    return exceptions


# QUERIES
# ============================================================================

def find_active_policy(db: Session) -> Optional[ExpensePolicy]:
    return (
        db.query(ExpensePolicy)
        .filter(ExpensePolicy.is_active.is_(True))
        .order_by(ExpensePolicy.effective_from.desc(), ExpensePolicy.id.desc())
        .first()
    )


def get_active_policy(db: Session) -> ExpensePolicy:
    policy = find_active_policy(db)
    if not policy:
        raise PolicyNotFound("No active expense policy found")
    return policy


def _completed_visit_events(db: Session, user_id: int) -> List[VisitEvent]:
    # Every COMPLETED visit of the user, not only those inside this session
    return (
        db.query(VisitEvent)
        .join(Visit, Visit.id == VisitEvent.visit_id)
        .filter(
            Visit.assigned_to_user_id == user_id,
            Visit.status == VisitStatus.COMPLETED.value,
            VisitEvent.event_type.in_([VisitEventType.CHECK_IN.value, VisitEventType.CHECK_OUT.value]),
        )
        .order_by(Visit.created_at.asc(), VisitEvent.event_at.asc(), VisitEvent.id.asc())
        .all()
    )


def _window_points(db: Session, session_id: int, window: BusinessWindow) -> List[LocationPoint]:
    return (
        db.query(LocationPoint)
        .filter(
            LocationPoint.session_id == session_id,
            LocationPoint.captured_at >= window.start_at,
            LocationPoint.captured_at <= window.end_at,
        )
        .order_by(LocationPoint.captured_at.asc(), LocationPoint.id.asc())
        .all()
    )


# RECONCILIATION
# ============================================================================

def reconcile_session(
    db: Session,
    session_id: int,
    actor_user_id: Optional[int] = None,
    _retry_on_conflict: bool = True,
) -> ExpenseClaim:
    """
    Compute (or recompute) the claim of one session and upsert it.

    Only CLOSED sessions are reconciled (InvalidTransition otherwise). Raises
    SessionNotFound, PolicyNotFound, or ClaimLocked once a manager has
    approved or rejected the existing claim.
    """
    session = db.query(DutySession).filter(DutySession.id == session_id).first()
    if not session:
        raise SessionNotFound(f"Session {session_id} not found")
    if session.status != SessionStatus.CLOSED.value:
        raise InvalidTransition(
            f"Session {session_id} is still open; claims are computed after the day ends",
            {"status": session.status},
        )

    policy = get_active_policy(db)

    claim = db.query(ExpenseClaim).filter(ExpenseClaim.session_id == session.id).first()
    if claim and claim.status in LOCKED_STATUSES:
        raise ClaimLocked(
            f"Claim {claim.id} is already {claim.status} and cannot be recomputed",
            {"claim_id": claim.id, "status": claim.status},
        )
    before = audit_service.claim_snapshot(claim)

    window = derive_business_window(_completed_visit_events(db, session.user_id))

    points = _window_points(db, session.id, window) if window.is_established else []
    if len(points) < 2:
        km_claimed = money(0)
        exceptions = [INSUFFICIENT_POINTS_REASON]
    else:
        scan = scan_trail(points, policy.min_accuracy_m, policy.max_ping_gap_minutes)
        km_claimed = money(scan.total_km)
        exceptions = classify_exceptions(scan, policy)

    amount_claimed = money(km_claimed * Decimal(str(policy.rate_per_km)))

    if claim is None:
        claim = ExpenseClaim(
            user_id=session.user_id,
            session_id=session.id,
            km_approved=money(0),
            amount_approved=money(0),
        )
        db.add(claim)

    claim.policy_id = policy.id
    claim.first_business_visit_id = window.first_visit_id
    claim.last_business_visit_id = window.last_visit_id
    claim.business_start_at = window.start_at
    claim.business_end_at = window.end_at
    claim.km_claimed = km_claimed
    claim.amount_claimed = amount_claimed
    if exceptions:
        claim.status = ClaimStatus.NEEDS_APPROVAL.value
        claim.exception_reason = "; ".join(exceptions)
    else:
        claim.status = ClaimStatus.SUBMITTED.value
        claim.exception_reason = None
    claim.updated_at = utc_now()

    try:
        db.flush()
    except IntegrityError:
        # Another reconciliation inserted the claim first; recompute onto it
        db.rollback()
        if not _retry_on_conflict:
            raise
        logger.warning(f"Claim for session {session_id} created concurrently, recomputing")
        return reconcile_session(db, session_id, actor_user_id, _retry_on_conflict=False)

    audit_service.log_action(
        db,
        action="EXPENSE_RECONCILE",
        entity_type="expense_claim",
        entity_id=claim.id,
        actor_user_id=actor_user_id,
        before=before,
        after=audit_service.claim_snapshot(claim),
    )
    commit_or_rollback(db)
    db.refresh(claim)

    logger.info(
        f"✓ Session {session.id} reconciled: {claim.km_claimed} km, "
        f"amount {claim.amount_claimed}, status {claim.status}"
    )
    return claim


def retry_missing_claims(db: Session) -> List[ExpenseClaim]:
    """Reconcile every CLOSED session that still has no claim."""
    sessions = (
        db.query(DutySession)
        .outerjoin(ExpenseClaim, ExpenseClaim.session_id == DutySession.id)
        .filter(DutySession.status == SessionStatus.CLOSED.value, ExpenseClaim.id.is_(None))
        .order_by(DutySession.id.asc())
        .all()
    )
    if not sessions:
        return []

    logger.info(f"Retrying reconciliation for {len(sessions)} session(s) without a claim")
    created = []
    for session in sessions:
        try:
            created.append(reconcile_session(db, session.id))
        except Exception:
            db.rollback()
            logger.exception(f"❌ Retry reconciliation failed for session {session.id}")
    return created


def list_user_claims(db: Session, user_id: int, day: Optional[date] = None) -> List[ExpenseClaim]:
    """A user's claims, newest session first; `day` narrows to sessions started that IST day."""
    query = (
        db.query(ExpenseClaim)
        .join(DutySession, DutySession.id == ExpenseClaim.session_id)
        .filter(ExpenseClaim.user_id == user_id)
    )
    if day is not None:
        start, end = ist_day_bounds_utc(day)
        query = query.filter(DutySession.start_at >= start, DutySession.start_at < end)
    return query.order_by(DutySession.start_at.desc(), ExpenseClaim.id.desc()).all()
