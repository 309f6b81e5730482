from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship, DeclarativeBase
from datetime import datetime, timezone
from enum import Enum as PyEnum

# TIMEZONE ARCHITECTURE NOTES:
# =================================
# - ALL DateTime fields in database store UTC time as naive datetime
# - Use services.timezone_utils for IST conversion in API responses
# - Status/type columns are plain strings holding the .value of the enums below


def _utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# ============================================================================
# ENUMS
# ============================================================================

class UserRole(str, PyEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    SALES = "SALES"
    PROJECTS = "PROJECTS"


class SessionStatus(str, PyEnum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class LocationSource(str, PyEnum):
    START_DAY = "START_DAY"
    PING = "PING"
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    END_DAY = "END_DAY"


class VisitType(str, PyEnum):
    SALES_MEETING = "SALES_MEETING"
    SITE_VISIT = "SITE_VISIT"


class VisitStatus(str, PyEnum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class VisitEventType(str, PyEnum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    PHOTO = "PHOTO"
    NOTE = "NOTE"
    STATUS_CHANGE = "STATUS_CHANGE"


class ClaimStatus(str, PyEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalAction(str, PyEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ADJUST = "ADJUST"
    REQUEST_INFO = "REQUEST_INFO"


# ============================================================================
# USER MODEL
# ============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.SALES.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    duty_sessions = relationship("DutySession", back_populates="user")
    expense_claims = relationship("ExpenseClaim", back_populates="user")

    @property
    def is_manager(self) -> bool:
        return self.role in (UserRole.ADMIN.value, UserRole.MANAGER.value)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"


# ============================================================================
# CLIENT / PROJECT REFERENCE DATA
# ============================================================================

class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    projects = relationship("Project", back_populates="client")


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    project_code = Column(String(50), unique=True, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    site_address_text = Column(String(500), nullable=True)
    site_lat = Column(Float, nullable=True)
    site_lng = Column(Float, nullable=True)
    status = Column(String(20), default="ACTIVE")
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    client = relationship("Client", back_populates="projects")


# ============================================================================
# DUTY SESSION & LOCATION TRAIL
# ============================================================================

class DutySession(Base):
    """
    One work day of a field user.

    At most one OPEN session per user: enforced by a partial unique index
    so duplicate day-start taps cannot race past the application check.
    """
    __tablename__ = "duty_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False, default=_utc_now)
    end_at = Column(DateTime, nullable=True)
    start_lat = Column(Float, nullable=True)
    start_lng = Column(Float, nullable=True)
    end_lat = Column(Float, nullable=True)
    end_lng = Column(Float, nullable=True)
    start_address_text = Column(String(500), nullable=True)
    end_address_text = Column(String(500), nullable=True)
    status = Column(String(10), nullable=False, default=SessionStatus.OPEN.value)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    user = relationship("User", back_populates="duty_sessions")
    location_points = relationship(
        "LocationPoint",
        back_populates="session",
        order_by="LocationPoint.captured_at",
    )
    expense_claim = relationship("ExpenseClaim", back_populates="session", uselist=False)

    __table_args__ = (
        Index("idx_duty_sessions_user_start_at", "user_id", "start_at"),
        Index(
            "uq_duty_sessions_one_open_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    def __repr__(self):
        return f"<DutySession(id={self.id}, user_id={self.user_id}, status={self.status})>"


class LocationPoint(Base):
    """Append-only GPS sample. Never updated or deleted."""
    __tablename__ = "location_points"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("duty_sessions.id"), nullable=False)
    captured_at = Column(DateTime, nullable=False, default=_utc_now)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    accuracy_m = Column(Float, nullable=True)
    speed_mps = Column(Float, nullable=True)
    battery_pct = Column(Integer, nullable=True)
    source = Column(String(20), nullable=False)
    is_mock = Column(Boolean, default=False)

    session = relationship("DutySession", back_populates="location_points")

    __table_args__ = (
        Index("idx_location_points_session_captured_at", "session_id", "captured_at"),
    )


# ============================================================================
# VISITS & VISIT EVENTS
# ============================================================================

class Visit(Base):
    __tablename__ = "visits"

    id = Column(Integer, primary_key=True, index=True)
    visit_type = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False)
    purpose = Column(Text, nullable=True)

    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_to_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True)

    planned_start_at = Column(DateTime, nullable=True)
    planned_end_at = Column(DateTime, nullable=True)

    # Target & geofence
    location_address_text = Column(String(500), nullable=False)
    location_lat = Column(Float, nullable=False)
    location_lng = Column(Float, nullable=False)
    geofence_radius_m = Column(Integer, nullable=False, default=150)

    # Cached projection of the event log (see services.visit_service.project_visit_status)
    status = Column(String(20), nullable=False, default=VisitStatus.PLANNED.value)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    assigned_to = relationship("User", foreign_keys=[assigned_to_user_id])
    client = relationship("Client")
    project = relationship("Project")
    events = relationship(
        "VisitEvent",
        back_populates="visit",
        order_by="VisitEvent.event_at",
    )

    __table_args__ = (
        Index("idx_visits_assigned_to_planned_start", "assigned_to_user_id", "planned_start_at"),
    )

    def __repr__(self):
        return f"<Visit(id={self.id}, assignee={self.assigned_to_user_id}, status={self.status})>"


class VisitEvent(Base):
    """Immutable proof/trace record. The set of events is the visit's audit trail."""
    __tablename__ = "visit_events"

    id = Column(Integer, primary_key=True, index=True)
    visit_id = Column(Integer, ForeignKey("visits.id"), nullable=False)
    event_type = Column(String(20), nullable=False)
    event_at = Column(DateTime, nullable=False, default=_utc_now)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    accuracy_m = Column(Float, nullable=True)
    distance_to_target_m = Column(Numeric(10, 2), nullable=True)
    photo_url = Column(String(1000), nullable=True)
    note = Column(Text, nullable=True)
    to_status = Column(String(20), nullable=True)  # STATUS_CHANGE only
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    visit = relationship("Visit", back_populates="events")

    __table_args__ = (
        Index("idx_visit_events_visit_event_at", "visit_id", "event_at"),
    )


# ============================================================================
# EXPENSE POLICY / CLAIM / APPROVAL
# ============================================================================

class ExpensePolicy(Base):
    """Versioned reconciliation thresholds. The active row is recorded on each claim."""
    __tablename__ = "expense_policies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    rate_per_km = Column(Numeric(8, 2), nullable=False)
    min_accuracy_m = Column(Integer, nullable=False, default=80)
    max_ping_gap_minutes = Column(Integer, nullable=False, default=10)
    min_valid_segments = Column(Integer, nullable=False, default=10)
    ping_interval_sec = Column(Integer, nullable=False, default=60)
    geofence_default_m = Column(Integer, nullable=False, default=150)
    effective_from = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    claims = relationship("ExpenseClaim", back_populates="policy")


class ExpenseClaim(Base):
    """
    One claim per closed duty session.

    Claimed fields are written only by reconciliation; status and approved
    fields only by the approval workflow.
    """
    __tablename__ = "expense_claims"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("duty_sessions.id"), nullable=False, unique=True)
    policy_id = Column(Integer, ForeignKey("expense_policies.id"), nullable=True)

    first_business_visit_id = Column(Integer, ForeignKey("visits.id"), nullable=True)
    last_business_visit_id = Column(Integer, ForeignKey("visits.id"), nullable=True)
    business_start_at = Column(DateTime, nullable=True)
    business_end_at = Column(DateTime, nullable=True)

    km_claimed = Column(Numeric(10, 2), nullable=False, default=0)
    km_approved = Column(Numeric(10, 2), nullable=False, default=0)
    amount_claimed = Column(Numeric(10, 2), nullable=False, default=0)
    amount_approved = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(String(20), nullable=False, default=ClaimStatus.DRAFT.value)
    exception_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    user = relationship("User", back_populates="expense_claims")
    session = relationship("DutySession", back_populates="expense_claim")
    policy = relationship("ExpensePolicy", back_populates="claims")
    approvals = relationship(
        "ExpenseApproval",
        back_populates="claim",
        order_by="ExpenseApproval.created_at",
    )

    __table_args__ = (
        Index("idx_expense_claims_status", "status"),
    )

    def __repr__(self):
        return f"<ExpenseClaim(id={self.id}, session_id={self.session_id}, status={self.status})>"


class ExpenseApproval(Base):
    """Append-only record of one manager decision on a claim."""
    __tablename__ = "expense_approvals"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("expense_claims.id"), nullable=False, index=True)
    action = Column(String(20), nullable=False)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    note = Column(Text, nullable=True)
    km_approved = Column(Numeric(10, 2), nullable=True)
    amount_approved = Column(Numeric(10, 2), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    claim = relationship("ExpenseClaim", back_populates="approvals")
    approved_by = relationship("User")


# ============================================================================
# AUDIT LOG
# ============================================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)
    action = Column(String(50), nullable=False)
    before_json = Column(JSON, nullable=True)
    after_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
    )
