"""
Visit Service - geofenced visit lifecycle
==========================================

PLANNED -> IN_PROGRESS -> COMPLETED, with CANCELLED / NO_SHOW side exits
from PLANNED or IN_PROGRESS. Every transition is driven by appending a
VisitEvent; Visit.status is a cached projection of that event log.
"""
import logging
from datetime import date, datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session, selectinload

from db import commit_or_rollback
from models import (
    DutySession,
    LocationPoint,
    LocationSource,
    SessionStatus,
    User,
    Visit,
    VisitEvent,
    VisitEventType,
    VisitStatus,
    VisitType,
)
from services import geo
from services.errors import (
    AccuracyTooLow,
    InvalidState,
    InvalidTransition,
    OutsideGeofence,
    ProofIncomplete,
    Unauthorized,
    VisitNotFound,
)
from services.expense_service import find_active_policy
from services.timezone_utils import ist_day_bounds_utc, utc_now

logger = logging.getLogger(__name__)

CHECK_IN_MAX_ACCURACY_M = 80
DEFAULT_GEOFENCE_RADIUS_M = 150

SIDE_EXIT_FROM = (VisitStatus.PLANNED.value, VisitStatus.IN_PROGRESS.value)


# HELPERS
# ============================================================================

def get_visit(db: Session, visit_id: int) -> Visit:
    visit = db.query(Visit).filter(Visit.id == visit_id).first()
    if not visit:
        raise VisitNotFound(f"Visit {visit_id} not found")
    return visit


def _require_assignee(visit: Visit, user: User) -> None:
    if visit.assigned_to_user_id != user.id:
        logger.warning(f"User {user.id} is not the assignee of visit {visit.id}")
        raise Unauthorized("Not authorized for this visit")


def _default_geofence_radius(db: Session) -> int:
    # The active policy sets the default; the constant covers a policy-less install
    policy = find_active_policy(db)
    if policy and policy.geofence_default_m:
        return policy.geofence_default_m
    return DEFAULT_GEOFENCE_RADIUS_M


def _distance_to_target(visit: Visit, lat: float, lng: float) -> float:
    return geo.distance_meters((lat, lng), (visit.location_lat, visit.location_lng))


def _append_open_session_sample(
    db: Session,
    user_id: int,
    lat: float,
    lng: float,
    accuracy_m: Optional[float],
    source: LocationSource,
    captured_at: datetime,
) -> Optional[LocationPoint]:
    """Mirror a check-in/out position onto the user's open duty session, if any."""
    session = (
        db.query(DutySession)
        .filter(DutySession.user_id == user_id, DutySession.status == SessionStatus.OPEN.value)
        .first()
    )
    if not session:
        return None
    point = LocationPoint(
        session_id=session.id,
        captured_at=captured_at,
        lat=lat,
        lng=lng,
        accuracy_m=accuracy_m,
        source=source.value,
    )
    db.add(point)
    return point


def _event_types(db: Session, visit_id: int) -> set:
    rows = db.query(VisitEvent.event_type).filter(VisitEvent.visit_id == visit_id).all()
    return {row[0] for row in rows}


def project_visit_status(events: Iterable[VisitEvent]) -> VisitStatus:
    """
    Replay a visit's event log to the status it implies.

    Events are applied in (event_at, id) order; PHOTO and NOTE never change
    the status.
    """
    status = VisitStatus.PLANNED
    ordered = sorted(events, key=lambda e: (e.event_at, e.id or 0))
    for event in ordered:
        if event.event_type == VisitEventType.CHECK_IN.value:
            status = VisitStatus.IN_PROGRESS
        elif event.event_type == VisitEventType.CHECK_OUT.value:
            status = VisitStatus.COMPLETED
        elif event.event_type == VisitEventType.STATUS_CHANGE.value and event.to_status:
            status = VisitStatus(event.to_status)
    return status


# PRIMARY TRANSITIONS
# ============================================================================

def check_in(
    db: Session,
    visit_id: int,
    user: User,
    lat: float,
    lng: float,
    accuracy_m: float,
    now: Optional[datetime] = None,
) -> VisitEvent:
    visit = get_visit(db, visit_id)
    _require_assignee(visit, user)

    if visit.status != VisitStatus.PLANNED.value:
        raise InvalidTransition(
            f"Cannot check in to a visit in status {visit.status}",
            {"status": visit.status},
        )

    if accuracy_m > CHECK_IN_MAX_ACCURACY_M:
        logger.warning(f"Check-in rejected for visit {visit.id}: accuracy {accuracy_m}m")
        raise AccuracyTooLow(accuracy_m, CHECK_IN_MAX_ACCURACY_M)

    distance = _distance_to_target(visit, lat, lng)
    target = (visit.location_lat, visit.location_lng)
    if not geo.is_within_geofence((lat, lng), target, visit.geofence_radius_m):
        logger.warning(
            f"Check-in rejected for visit {visit.id}: {distance:.1f}m from target "
            f"(radius {visit.geofence_radius_m}m)"
        )
        raise OutsideGeofence(distance, visit.geofence_radius_m)

    now = now or utc_now()
    event = VisitEvent(
        visit_id=visit.id,
        event_type=VisitEventType.CHECK_IN.value,
        event_at=now,
        lat=lat,
        lng=lng,
        accuracy_m=accuracy_m,
        distance_to_target_m=round(distance, 2),
        created_by_user_id=user.id,
    )
    db.add(event)
    visit.status = VisitStatus.IN_PROGRESS.value
    _append_open_session_sample(db, user.id, lat, lng, accuracy_m, LocationSource.CHECK_IN, now)
    commit_or_rollback(db)
    db.refresh(event)

    logger.info(f"✓ Visit {visit.id} checked in by user {user.id} ({distance:.1f}m from target)")
    return event


def _require_in_progress(visit: Visit) -> None:
    if visit.status != VisitStatus.IN_PROGRESS.value:
        raise InvalidState(
            f"Proof can only be added while the visit is in progress (current: {visit.status})",
            {"status": visit.status},
        )


def add_photo(
    db: Session,
    visit_id: int,
    user: User,
    photo_url: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    now: Optional[datetime] = None,
) -> VisitEvent:
    visit = get_visit(db, visit_id)
    _require_assignee(visit, user)
    _require_in_progress(visit)
    if not photo_url or not photo_url.strip():
        raise InvalidState("Photo reference is required")

    event = VisitEvent(
        visit_id=visit.id,
        event_type=VisitEventType.PHOTO.value,
        event_at=now or utc_now(),
        lat=lat,
        lng=lng,
        photo_url=photo_url.strip(),
        created_by_user_id=user.id,
    )
    db.add(event)
    commit_or_rollback(db)
    db.refresh(event)
    return event


def add_note(
    db: Session,
    visit_id: int,
    user: User,
    note: str,
    now: Optional[datetime] = None,
) -> VisitEvent:
    visit = get_visit(db, visit_id)
    _require_assignee(visit, user)
    _require_in_progress(visit)
    if not note or not note.strip():
        raise InvalidState("Note text is required")

    event = VisitEvent(
        visit_id=visit.id,
        event_type=VisitEventType.NOTE.value,
        event_at=now or utc_now(),
        note=note.strip(),
        created_by_user_id=user.id,
    )
    db.add(event)
    commit_or_rollback(db)
    db.refresh(event)
    return event


def check_out(
    db: Session,
    visit_id: int,
    user: User,
    lat: float,
    lng: float,
    accuracy_m: Optional[float] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> VisitEvent:
    visit = get_visit(db, visit_id)
    _require_assignee(visit, user)

    if visit.status != VisitStatus.IN_PROGRESS.value:
        raise InvalidTransition(
            f"Cannot check out of a visit in status {visit.status}",
            {"status": visit.status},
        )

    inline_note = note.strip() if note and note.strip() else None
    recorded = _event_types(db, visit.id)
    has_photo = VisitEventType.PHOTO.value in recorded
    has_note = VisitEventType.NOTE.value in recorded or inline_note is not None
    if not (has_photo and has_note):
        logger.warning(f"Check-out rejected for visit {visit.id}: photo={has_photo} note={has_note}")
        raise ProofIncomplete(has_photo, has_note)

    now = now or utc_now()
    distance = _distance_to_target(visit, lat, lng)
    event = VisitEvent(
        visit_id=visit.id,
        event_type=VisitEventType.CHECK_OUT.value,
        event_at=now,
        lat=lat,
        lng=lng,
        accuracy_m=accuracy_m,
        distance_to_target_m=round(distance, 2),
        note=inline_note,
        created_by_user_id=user.id,
    )
    db.add(event)
    visit.status = VisitStatus.COMPLETED.value
    _append_open_session_sample(db, user.id, lat, lng, accuracy_m, LocationSource.CHECK_OUT, now)
    commit_or_rollback(db)
    db.refresh(event)

    logger.info(f"✓ Visit {visit.id} checked out by user {user.id}")
    return event


# SIDE EXITS
# ============================================================================

def _side_exit(
    db: Session,
    visit_id: int,
    user: User,
    to_status: VisitStatus,
    note: Optional[str],
    now: Optional[datetime],
) -> Visit:
    visit = get_visit(db, visit_id)
    if visit.assigned_to_user_id != user.id and not user.is_manager:
        raise Unauthorized("Not authorized for this visit")
    if visit.status not in SIDE_EXIT_FROM:
        raise InvalidTransition(
            f"Cannot move a visit from {visit.status} to {to_status.value}",
            {"status": visit.status},
        )

    db.add(VisitEvent(
        visit_id=visit.id,
        event_type=VisitEventType.STATUS_CHANGE.value,
        event_at=now or utc_now(),
        note=note.strip() if note else None,
        to_status=to_status.value,
        created_by_user_id=user.id,
    ))
    visit.status = to_status.value
    commit_or_rollback(db)
    db.refresh(visit)

    logger.info(f"Visit {visit.id} marked {to_status.value} by user {user.id}")
    return visit


def cancel_visit(db: Session, visit_id: int, user: User, note: Optional[str] = None,
                 now: Optional[datetime] = None) -> Visit:
    return _side_exit(db, visit_id, user, VisitStatus.CANCELLED, note, now)


def mark_no_show(db: Session, visit_id: int, user: User, note: Optional[str] = None,
                 now: Optional[datetime] = None) -> Visit:
    return _side_exit(db, visit_id, user, VisitStatus.NO_SHOW, note, now)


# PLANNING & QUERIES
# ============================================================================

def create_visit(
    db: Session,
    creator: User,
    visit_type: VisitType,
    title: str,
    location_address_text: str,
    location_lat: float,
    location_lng: float,
    purpose: Optional[str] = None,
    client_id: Optional[int] = None,
    project_id: Optional[int] = None,
    planned_start_at: Optional[datetime] = None,
    planned_end_at: Optional[datetime] = None,
    geofence_radius_m: Optional[int] = None,
    assigned_to_user_id: Optional[int] = None,
) -> Visit:
    """
    Plan a visit. Without an explicit assignee the creator owns it; an
    assignment to somebody else is recorded with the creator as assigner.
    """
    assignee_id = assigned_to_user_id or creator.id
    if planned_start_at and planned_end_at and planned_end_at < planned_start_at:
        raise InvalidState("planned_end_at must not be before planned_start_at")

    visit = Visit(
        visit_type=VisitType(visit_type).value,
        title=title,
        purpose=purpose,
        created_by_user_id=creator.id,
        assigned_to_user_id=assignee_id,
        assigned_by_user_id=creator.id if assignee_id != creator.id else None,
        client_id=client_id,
        project_id=project_id,
        planned_start_at=planned_start_at,
        planned_end_at=planned_end_at,
        location_address_text=location_address_text,
        location_lat=location_lat,
        location_lng=location_lng,
        geofence_radius_m=geofence_radius_m or _default_geofence_radius(db),
        status=VisitStatus.PLANNED.value,
    )
    db.add(visit)
    commit_or_rollback(db)
    db.refresh(visit)

    logger.info(f"Visit {visit.id} created by user {creator.id} for user {assignee_id}")
    return visit


def assign_visit(db: Session, manager: User, assigned_to_user_id: int, **visit_fields) -> Visit:
    if not manager.is_manager:
        raise Unauthorized("Only managers can assign visits")
    assignee = db.query(User).filter(User.id == assigned_to_user_id, User.is_active.is_(True)).first()
    if not assignee:
        raise InvalidState(f"User {assigned_to_user_id} not found or inactive")
    return create_visit(db, manager, assigned_to_user_id=assignee.id, **visit_fields)


def get_visit_detail(db: Session, visit_id: int, user: User) -> Visit:
    visit = (
        db.query(Visit)
        .options(selectinload(Visit.events))
        .filter(Visit.id == visit_id)
        .first()
    )
    if not visit:
        raise VisitNotFound(f"Visit {visit_id} not found")
    if visit.assigned_to_user_id != user.id and not user.is_manager:
        raise Unauthorized("Not authorized for this visit")
    return visit


def list_visits(
    db: Session,
    user: User,
    day: Optional[date] = None,
    upcoming: bool = False,
    now: Optional[datetime] = None,
) -> List[Visit]:
    query = db.query(Visit).filter(Visit.assigned_to_user_id == user.id)

    if upcoming:
        now = now or utc_now()
        query = query.filter(
            Visit.status == VisitStatus.PLANNED.value,
            Visit.planned_start_at >= now,
        )
    elif day is not None:
        start, end = ist_day_bounds_utc(day)
        query = query.filter(Visit.planned_start_at >= start, Visit.planned_start_at < end)

    return query.order_by(Visit.planned_start_at.asc(), Visit.id.asc()).all()
