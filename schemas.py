from pydantic import BaseModel, field_serializer, Field, validator
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal

from models import ApprovalAction, VisitType
from services.timezone_utils import to_ist


# User schemas
class UserOut(BaseModel):
    id: int
    email: str
    full_name: str
    role: str
    is_active: bool

    class Config:
        from_attributes = True


class UserBrief(BaseModel):
    id: int
    full_name: str
    role: str

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str
    role: str
    full_name: str


# Location input shared by duty and visit actions
class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")
    accuracy_m: Optional[float] = Field(None, ge=0, description="Reported GPS accuracy in meters")


# Duty sessions
class DutyStartRequest(LocationIn):
    address_text: Optional[str] = Field(None, max_length=500)

    class Config:
        json_schema_extra = {
            "example": {
                "lat": 28.6139,
                "lng": 77.2090,
                "accuracy_m": 12.0,
                "address_text": "Connaught Place, New Delhi",
            }
        }


class DutyEndRequest(LocationIn):
    address_text: Optional[str] = Field(None, max_length=500)


class PingRequest(LocationIn):
    speed_mps: Optional[float] = Field(None, ge=0)
    battery_pct: Optional[int] = Field(None, ge=0, le=100)
    captured_at: Optional[datetime] = Field(None, description="Device time for offline-queued pings")
    is_mock: bool = False


class LocationPointOut(BaseModel):
    id: int
    session_id: int
    captured_at: datetime
    lat: float
    lng: float
    accuracy_m: Optional[float] = None
    source: str

    @field_serializer("captured_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


class DutySessionOut(BaseModel):
    id: int
    user_id: int
    status: str
    start_at: datetime
    end_at: Optional[datetime] = None
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None
    start_address_text: Optional[str] = None
    end_address_text: Optional[str] = None

    @field_serializer("start_at", "end_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


# Visits
class VisitCreate(BaseModel):
    visit_type: VisitType
    title: str = Field(..., min_length=1, max_length=255)
    purpose: Optional[str] = None
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    planned_start_at: Optional[datetime] = None
    planned_end_at: Optional[datetime] = None
    location_address_text: str = Field(..., min_length=1, max_length=500)
    location_lat: float = Field(..., ge=-90, le=90)
    location_lng: float = Field(..., ge=-180, le=180)
    geofence_radius_m: Optional[int] = Field(None, gt=0, le=5000)

    @validator('title', 'location_address_text')
    def not_blank(cls, v):
        if not v.strip():
            raise ValueError('must not be blank')
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "visit_type": "SALES_MEETING",
                "title": "Quarterly review",
                "client_id": 1,
                "planned_start_at": "2024-06-01T05:30:00Z",
                "location_address_text": "Sector 18, Noida",
                "location_lat": 28.5706,
                "location_lng": 77.3272,
            }
        }


class VisitAssign(VisitCreate):
    assigned_to_user_id: int


class CheckInRequest(LocationIn):
    accuracy_m: float = Field(..., ge=0, description="Reported GPS accuracy in meters")


class CheckOutRequest(LocationIn):
    note: Optional[str] = Field(None, max_length=2000)


class PhotoRequest(BaseModel):
    photo_url: str = Field(..., min_length=1, max_length=1000)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class NoteRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


class StatusChangeRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)


class VisitEventOut(BaseModel):
    id: int
    visit_id: int
    event_type: str
    event_at: datetime
    lat: Optional[float] = None
    lng: Optional[float] = None
    accuracy_m: Optional[float] = None
    distance_to_target_m: Optional[Decimal] = None
    photo_url: Optional[str] = None
    note: Optional[str] = None
    to_status: Optional[str] = None
    created_by_user_id: int

    @field_serializer("event_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


class VisitOut(BaseModel):
    id: int
    visit_type: str
    title: str
    purpose: Optional[str] = None
    status: str
    assigned_to_user_id: int
    assigned_by_user_id: Optional[int] = None
    created_by_user_id: int
    client_id: Optional[int] = None
    project_id: Optional[int] = None
    planned_start_at: Optional[datetime] = None
    planned_end_at: Optional[datetime] = None
    location_address_text: str
    location_lat: float
    location_lng: float
    geofence_radius_m: int

    @field_serializer("planned_start_at", "planned_end_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


class VisitDetailOut(VisitOut):
    events: List[VisitEventOut] = []
    assigned_to: Optional[UserBrief] = None


# Expenses
class ExpenseClaimOut(BaseModel):
    id: int
    user_id: int
    session_id: int
    policy_id: Optional[int] = None
    first_business_visit_id: Optional[int] = None
    last_business_visit_id: Optional[int] = None
    business_start_at: Optional[datetime] = None
    business_end_at: Optional[datetime] = None
    km_claimed: Decimal
    amount_claimed: Decimal
    km_approved: Decimal
    amount_approved: Decimal
    status: str
    exception_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("business_start_at", "business_end_at", "created_at", "updated_at")
    def serialize_dates(self, value):
        return to_ist(value) if value else None

    class Config:
        from_attributes = True


class ExpensePolicyOut(BaseModel):
    id: int
    name: str
    rate_per_km: Decimal
    min_accuracy_m: int
    max_ping_gap_minutes: int
    min_valid_segments: int
    ping_interval_sec: int
    geofence_default_m: int
    effective_from: date

    class Config:
        from_attributes = True


class PendingClaimOut(ExpenseClaimOut):
    user: Optional[UserBrief] = None


class ApprovalRequest(BaseModel):
    action: ApprovalAction
    km_approved: Optional[Decimal] = Field(None, ge=0)
    amount_approved: Optional[Decimal] = Field(None, ge=0)
    note: Optional[str] = Field(None, max_length=2000)

    class Config:
        json_schema_extra = {
            "example": {
                "action": "ADJUST",
                "km_approved": "42.50",
                "amount_approved": "425.00",
                "note": "Trimmed detour to the depot",
            }
        }


class TodaySessionOut(BaseModel):
    session: Optional[DutySessionOut] = None
    visits: List[VisitOut] = []
    claim: Optional[ExpenseClaimOut] = None


# Reference data
class ClientOut(BaseModel):
    id: int
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    city: Optional[str] = None

    class Config:
        from_attributes = True


class ProjectOut(BaseModel):
    id: int
    project_code: str
    client_id: Optional[int] = None
    site_address_text: Optional[str] = None
    site_lat: Optional[float] = None
    site_lng: Optional[float] = None
    status: Optional[str] = None

    class Config:
        from_attributes = True


class ManagerDashboardOut(BaseModel):
    active_sessions: int
    visits_today: int
    completed_visits_today: int
    pending_claims: int
    pending_amount: Decimal
