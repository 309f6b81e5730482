import os

# Must be set before db/auth/main are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENABLE_SCHEDULER"] = "false"

from datetime import datetime, timedelta

import pytest

from auth import hash_password
from db import SessionLocal, engine
from models import Base, User, UserRole
from seed import default_policy
from services import duty_service, visit_service

T0 = datetime(2024, 6, 3, 4, 0, 0)  # 09:30 IST, naive UTC
BASE_LAT = 28.6139
BASE_LNG = 77.2090
KM_LAT_STEP = 0.008993  # ~1.000 km of latitude


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db(reset_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(email="sales1@yds.in", role=UserRole.SALES, password="Password123!", full_name=None):
        user = User(
            email=email,
            full_name=full_name or email.split("@")[0],
            role=role.value,
            hashed_password=hash_password(password),
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def sales_user(make_user):
    return make_user("sales1@yds.in", UserRole.SALES)


@pytest.fixture
def manager(make_user):
    return make_user("manager@yds.in", UserRole.MANAGER)


@pytest.fixture
def policy(db):
    p = default_policy()
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def make_visit(db):
    def _make(user, lat=BASE_LAT, lng=BASE_LNG, radius=150, planned_start_at=T0, title="Client meeting"):
        return visit_service.create_visit(
            db,
            user,
            visit_type="SALES_MEETING",
            title=title,
            location_address_text="Connaught Place, New Delhi",
            location_lat=lat,
            location_lng=lng,
            planned_start_at=planned_start_at,
            geofence_radius_m=radius,
        )
    return _make


def trail_point(i):
    return BASE_LAT + i * KM_LAT_STEP, BASE_LNG


@pytest.fixture
def field_day(db, make_visit):
    """
    Run one working day: start duty, complete a visit while walking a
    straight north-bound trail, end duty.

    offsets are minutes after T0 for trail points p0..pN: p0 is the check-in
    position (the visit target), pN the check-out position, the rest are
    pings. accuracies (optional) override the 10 m default per point.
    """
    def _run(user, offsets=None, accuracies=None, end=True):
        offsets = offsets if offsets is not None else [2 * i for i in range(11)]
        accuracies = accuracies or [10.0] * len(offsets)
        last = len(offsets) - 1

        session = duty_service.start_duty(
            db, user, BASE_LAT - 0.05, BASE_LNG, accuracy_m=10.0, now=T0 - timedelta(minutes=30)
        )
        visit = make_visit(user)

        lat0, lng0 = trail_point(0)
        visit_service.check_in(db, visit.id, user, lat0, lng0, accuracies[0], now=T0 + timedelta(minutes=offsets[0]))
        visit_service.add_photo(db, visit.id, user, "photos/site.jpg", now=T0 + timedelta(minutes=offsets[0], seconds=20))
        visit_service.add_note(db, visit.id, user, "Met the purchase head", now=T0 + timedelta(minutes=offsets[0], seconds=40))

        for i in range(1, last):
            lat, lng = trail_point(i)
            duty_service.ping_duty(
                db, session.id, user, lat, lng,
                accuracy_m=accuracies[i],
                captured_at=T0 + timedelta(minutes=offsets[i]),
            )

        lat_n, lng_n = trail_point(last)
        visit_service.check_out(
            db, visit.id, user, lat_n, lng_n,
            accuracy_m=accuracies[last],
            now=T0 + timedelta(minutes=offsets[last]),
        )

        if end:
            session = duty_service.end_duty(
                db, session.id, user, lat_n, lng_n, accuracy_m=10.0,
                now=T0 + timedelta(minutes=offsets[last] + 30),
            )
        return session, visit
    return _run
