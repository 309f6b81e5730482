"""
Duty Session Routes
===================

Start / ping / end of a field user's work day. Ending a session triggers
expense reconciliation for it.
"""
from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.orm import Session
import logging

from db import get_db
from dependencies import get_current_user
from models import User
from schemas import (
    DutyEndRequest,
    DutySessionOut,
    DutyStartRequest,
    LocationPointOut,
    PingRequest,
    TodaySessionOut,
)
from services import duty_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Duty Sessions"])


@router.post("/start", response_model=DutySessionOut, status_code=status.HTTP_201_CREATED)
def start_session(
    request: DutyStartRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Start the working day. Fails with 409 while another session is open."""
    return duty_service.start_duty(
        db,
        current_user,
        lat=request.lat,
        lng=request.lng,
        accuracy_m=request.accuracy_m,
        address_text=request.address_text,
    )


@router.post("/{session_id}/ping", response_model=LocationPointOut, status_code=status.HTTP_201_CREATED)
def ping_session(
    request: PingRequest,
    session_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return duty_service.ping_duty(
        db,
        session_id,
        current_user,
        lat=request.lat,
        lng=request.lng,
        accuracy_m=request.accuracy_m,
        speed_mps=request.speed_mps,
        battery_pct=request.battery_pct,
        captured_at=request.captured_at,
        is_mock=request.is_mock,
    )


@router.post("/{session_id}/end", response_model=DutySessionOut)
def end_session(
    request: DutyEndRequest,
    session_id: int = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    End the working day.

    The session is closed even if the expense claim cannot be computed right
    away; the claim is then filled in by the background retry job.
    """
    return duty_service.end_duty(
        db,
        session_id,
        current_user,
        lat=request.lat,
        lng=request.lng,
        accuracy_m=request.accuracy_m,
        address_text=request.address_text,
    )


@router.get("/today", response_model=TodaySessionOut)
def today_session(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return duty_service.get_today_session(db, current_user)
