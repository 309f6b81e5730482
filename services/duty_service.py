# services/duty_service.py
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db import commit_or_rollback
from models import (
    DutySession,
    ExpenseClaim,
    LocationPoint,
    LocationSource,
    SessionStatus,
    User,
    Visit,
)
from services import expense_service
from services.errors import (
    InvalidTransition,
    SessionAlreadyOpen,
    SessionNotFound,
    Unauthorized,
)
from services.timezone_utils import ist_day_bounds_utc, ist_today, to_utc_naive, utc_now

logger = logging.getLogger(__name__)


def get_open_session(db: Session, user_id: int) -> DutySession | None:
    return (
        db.query(DutySession)
        .filter(DutySession.user_id == user_id, DutySession.status == SessionStatus.OPEN.value)
        .first()
    )


def _owned_open_session(db: Session, session_id: int, user: User) -> DutySession:
    session = db.query(DutySession).filter(DutySession.id == session_id).first()
    if not session:
        raise SessionNotFound(f"Session {session_id} not found")
    if session.user_id != user.id:
        raise Unauthorized("Not authorized for this session")
    if session.status != SessionStatus.OPEN.value:
        raise InvalidTransition(
            f"Session {session_id} is not open",
            {"status": session.status},
        )
    return session


def start_duty(
    db: Session,
    user: User,
    lat: float,
    lng: float,
    accuracy_m: Optional[float] = None,
    address_text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DutySession:
    if get_open_session(db, user.id):
        raise SessionAlreadyOpen("You already have an active duty session")

    now = now or utc_now()
    session = DutySession(
        user_id=user.id,
        start_at=now,
        start_lat=lat,
        start_lng=lng,
        start_address_text=address_text,
        status=SessionStatus.OPEN.value,
    )
    db.add(session)
    try:
        db.flush()
        db.add(LocationPoint(
            session_id=session.id,
            captured_at=now,
            lat=lat,
            lng=lng,
            accuracy_m=accuracy_m,
            source=LocationSource.START_DAY.value,
        ))
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent start for the same user
        db.rollback()
        raise SessionAlreadyOpen("You already have an active duty session")
    db.refresh(session)

    logger.info(f"✓ Duty session {session.id} started for user {user.id}")
    return session


def ping_duty(
    db: Session,
    session_id: int,
    user: User,
    lat: float,
    lng: float,
    accuracy_m: Optional[float] = None,
    speed_mps: Optional[float] = None,
    battery_pct: Optional[int] = None,
    captured_at: Optional[datetime] = None,
    is_mock: bool = False,
) -> LocationPoint:
    session = _owned_open_session(db, session_id, user)

    point = LocationPoint(
        session_id=session.id,
        captured_at=to_utc_naive(captured_at) or utc_now(),
        lat=lat,
        lng=lng,
        accuracy_m=accuracy_m,
        speed_mps=speed_mps,
        battery_pct=battery_pct,
        source=LocationSource.PING.value,
        is_mock=is_mock,
    )
    db.add(point)
    commit_or_rollback(db)
    db.refresh(point)
    return point


def end_duty(
    db: Session,
    session_id: int,
    user: User,
    lat: float,
    lng: float,
    accuracy_m: Optional[float] = None,
    address_text: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DutySession:
    """
    Close the session, then reconcile its expense claim.

    The close is committed first. Reconciliation is best-effort: a failure is
    rolled back and logged, the session stays CLOSED and the claim is created
    later by expense_service.retry_missing_claims.
    """
    session = _owned_open_session(db, session_id, user)

    now = now or utc_now()
    db.add(LocationPoint(
        session_id=session.id,
        captured_at=now,
        lat=lat,
        lng=lng,
        accuracy_m=accuracy_m,
        source=LocationSource.END_DAY.value,
    ))
    session.status = SessionStatus.CLOSED.value
    session.end_at = now
    session.end_lat = lat
    session.end_lng = lng
    session.end_address_text = address_text
    commit_or_rollback(db)
    logger.info(f"✓ Duty session {session.id} closed for user {user.id}")

    try:
        expense_service.reconcile_session(db, session.id, actor_user_id=user.id)
    except Exception:
        db.rollback()
        logger.exception(f"❌ Reconciliation failed for session {session.id}; will retry")

    db.refresh(session)
    return session


def get_today_session(db: Session, user: User, today=None) -> dict:
    """Latest session started today (IST) with the day's visits and the session's claim."""
    today = today or ist_today()
    start, end = ist_day_bounds_utc(today)

    session = (
        db.query(DutySession)
        .filter(
            DutySession.user_id == user.id,
            DutySession.start_at >= start,
            DutySession.start_at < end,
        )
        .order_by(DutySession.start_at.desc(), DutySession.id.desc())
        .first()
    )
    # An open session carried over from a previous day still counts as today's
    if session is None:
        session = get_open_session(db, user.id)

    visits = (
        db.query(Visit)
        .filter(
            Visit.assigned_to_user_id == user.id,
            Visit.planned_start_at >= start,
            Visit.planned_start_at < end,
        )
        .order_by(Visit.planned_start_at.asc())
        .all()
    )

    claim = None
    if session is not None:
        claim = db.query(ExpenseClaim).filter(ExpenseClaim.session_id == session.id).first()

    return {"session": session, "visits": visits, "claim": claim}
