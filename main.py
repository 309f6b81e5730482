from fastapi import APIRouter, FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.middleware.cors import CORSMiddleware
import os

from sqlalchemy.orm import Session
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from datetime import timedelta
from dotenv import load_dotenv
import logging

# Database imports
from db import get_db, engine, SessionLocal

# Model imports
from models import User, Base

# Schema imports
from schemas import Token

# Auth imports
from auth import verify_password, create_access_token, ACCESS_TOKEN_EXPIRE_MINUTES

# Router imports
from dependencies import router as dependencies_router
from router import duty, visits, expenses, reference

# Service imports
from services.errors import FieldTrackerError
from services.expense_service import retry_missing_claims

from pytz import timezone as pytz_timezone

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
scheduler_logger = logging.getLogger("scheduler")

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
RECONCILE_RETRY_MINUTES = int(os.getenv("RECONCILE_RETRY_MINUTES", "15"))
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() in ("1", "true", "yes")
scheduler_tz = pytz_timezone(os.getenv("SCHEDULER_TIMEZONE", "Asia/Kolkata"))

scheduler = BackgroundScheduler(timezone=scheduler_tz)


def retry_missing_claims_job():
    """Create claims for closed sessions whose end-of-day reconciliation failed."""
    db = SessionLocal()
    try:
        created = retry_missing_claims(db)
        if created:
            scheduler_logger.info(f"Reconciliation retry done. claims_created={len(created)}")
    except Exception as ex:
        db.rollback()
        scheduler_logger.exception("Reconciliation retry failed: %s", ex)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    if ENABLE_SCHEDULER:
        scheduler.add_job(
            retry_missing_claims_job,
            IntervalTrigger(minutes=RECONCILE_RETRY_MINUTES, timezone=scheduler_tz),
            id='retry_missing_claims',
            name='Reconcile closed sessions that have no expense claim',
            replace_existing=True
        )
        scheduler.start()
    try:
        yield
    finally:
        # shutdown
        if scheduler.running:
            scheduler.shutdown()


app = FastAPI(
    title="Field Tracker API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FieldTrackerError)
async def field_tracker_error_handler(request: Request, exc: FieldTrackerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


router = APIRouter()


@router.post("/token", response_model=Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    # The OAuth2 form's "username" field carries the email address
    user = db.query(User).filter(User.email == form_data.username.strip().lower()).first()
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Incorrect email or password")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    access_token = create_access_token(
        data={"sub": user.email, "role": user.role},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    logger.info(f"✓ User {user.email} logged in")
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "role": user.role,
        "full_name": user.full_name,
    }


# Routers
app.include_router(router)
app.include_router(dependencies_router)
app.include_router(duty.router)
app.include_router(visits.router)
app.include_router(expenses.router)
app.include_router(reference.router)


Base.metadata.create_all(bind=engine)

# uvicorn main:app --reload
# http://127.0.0.1:8000/docs
# for tests run: python -m pytest -q
