"""
Visit Routes
============

Planning, check-in/out and proof capture for client meetings and site
visits. Geofence and accuracy checks run server-side in visit_service.
"""
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from db import get_db
from dependencies import get_current_user, allow_manager
from models import User
from schemas import (
    CheckInRequest,
    CheckOutRequest,
    NoteRequest,
    PhotoRequest,
    StatusChangeRequest,
    VisitAssign,
    VisitCreate,
    VisitDetailOut,
    VisitEventOut,
    VisitOut,
)
from services import visit_service
from services.timezone_utils import ist_today, parse_ist_date_input, to_utc_naive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/visits", tags=["Visits"])


def _visit_fields(payload: VisitCreate) -> dict:
    return {
        "visit_type": payload.visit_type,
        "title": payload.title,
        "purpose": payload.purpose,
        "client_id": payload.client_id,
        "project_id": payload.project_id,
        "planned_start_at": to_utc_naive(payload.planned_start_at),
        "planned_end_at": to_utc_naive(payload.planned_end_at),
        "location_address_text": payload.location_address_text,
        "location_lat": payload.location_lat,
        "location_lng": payload.location_lng,
        "geofence_radius_m": payload.geofence_radius_m,
    }


@router.get("", response_model=List[VisitOut])
def list_my_visits(
    date: Optional[str] = Query(None, description="IST date YYYY-MM-DD, defaults to today"),
    type: Optional[str] = Query(None, description="'upcoming' for future planned visits"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    if type == "upcoming":
        return visit_service.list_visits(db, current_user, upcoming=True)
    try:
        day = parse_ist_date_input(date) if date else ist_today()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return visit_service.list_visits(db, current_user, day=day)


@router.post("", response_model=VisitOut, status_code=status.HTTP_201_CREATED)
def create_visit(
    payload: VisitCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Plan a visit for yourself."""
    return visit_service.create_visit(db, current_user, **_visit_fields(payload))


@router.post(
    "/assign",
    response_model=VisitOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(allow_manager)],
)
def assign_visit(
    payload: VisitAssign,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Plan a visit on behalf of a field user (Manager only)."""
    return visit_service.assign_visit(
        db, current_user, payload.assigned_to_user_id, **_visit_fields(payload)
    )


@router.get("/{visit_id}", response_model=VisitDetailOut)
def get_visit(
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return visit_service.get_visit_detail(db, visit_id, current_user)


@router.post("/{visit_id}/checkin", response_model=VisitEventOut, status_code=status.HTTP_201_CREATED)
def check_in(
    request: CheckInRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Check in at the visit location.

    Rejected when the reported accuracy is worse than 80 m or the position is
    outside the visit's geofence; the error body carries the measured values.
    """
    return visit_service.check_in(
        db, visit_id, current_user, request.lat, request.lng, request.accuracy_m
    )


@router.post("/{visit_id}/photo", response_model=VisitEventOut, status_code=status.HTTP_201_CREATED)
def add_photo(
    request: PhotoRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return visit_service.add_photo(
        db, visit_id, current_user, request.photo_url, lat=request.lat, lng=request.lng
    )


@router.post("/{visit_id}/note", response_model=VisitEventOut, status_code=status.HTTP_201_CREATED)
def add_note(
    request: NoteRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return visit_service.add_note(db, visit_id, current_user, request.note)


@router.post("/{visit_id}/checkout", response_model=VisitEventOut, status_code=status.HTTP_201_CREATED)
def check_out(
    request: CheckOutRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Requires at least one photo and one note (an inline note counts)."""
    return visit_service.check_out(
        db,
        visit_id,
        current_user,
        request.lat,
        request.lng,
        accuracy_m=request.accuracy_m,
        note=request.note,
    )


@router.post("/{visit_id}/cancel", response_model=VisitOut)
def cancel_visit(
    request: StatusChangeRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return visit_service.cancel_visit(db, visit_id, current_user, note=request.note)


@router.post("/{visit_id}/no-show", response_model=VisitOut)
def mark_no_show(
    request: StatusChangeRequest,
    visit_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return visit_service.mark_no_show(db, visit_id, current_user, note=request.note)
