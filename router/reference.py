# router/reference.py
from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session
from typing import List

from db import get_db
from dependencies import get_current_user, allow_manager
from models import (
    Client,
    ClaimStatus,
    DutySession,
    ExpenseClaim,
    Project,
    SessionStatus,
    User,
    Visit,
    VisitStatus,
)
from schemas import ClientOut, ManagerDashboardOut, ProjectOut
from services.timezone_utils import ist_day_bounds_utc, ist_today

router = APIRouter(tags=["Reference"])


@router.get("/clients", response_model=List[ClientOut])
def list_clients(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return db.query(Client).order_by(Client.name.asc()).all()


@router.get("/projects", response_model=List[ProjectOut])
def list_projects(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return db.query(Project).order_by(Project.project_code.asc()).all()


@router.get("/dashboard/manager", response_model=ManagerDashboardOut, dependencies=[Depends(allow_manager)])
def manager_dashboard(db: Session = Depends(get_db)):
    """Today's team snapshot: open sessions, visits and the claims queue."""
    start, end = ist_day_bounds_utc(ist_today())

    active_sessions = (
        db.query(func.count(DutySession.id))
        .filter(DutySession.status == SessionStatus.OPEN.value)
        .scalar()
    )
    todays_visits = db.query(Visit).filter(Visit.planned_start_at >= start, Visit.planned_start_at < end)
    pending = db.query(ExpenseClaim).filter(
        ExpenseClaim.status.in_([ClaimStatus.SUBMITTED.value, ClaimStatus.NEEDS_APPROVAL.value])
    )
    pending_amount = (
        pending.with_entities(func.coalesce(func.sum(ExpenseClaim.amount_claimed), 0)).scalar()
    )

    return ManagerDashboardOut(
        active_sessions=active_sessions or 0,
        visits_today=todays_visits.count(),
        completed_visits_today=todays_visits.filter(Visit.status == VisitStatus.COMPLETED.value).count(),
        pending_claims=pending.count(),
        pending_amount=pending_amount or 0,
    )
