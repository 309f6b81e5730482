from datetime import timedelta

import pytest

from models import LocationPoint, UserRole, VisitEvent, VisitStatus
from services import duty_service, geo, visit_service
from services.errors import (
    AccuracyTooLow,
    InvalidState,
    InvalidTransition,
    OutsideGeofence,
    ProofIncomplete,
    Unauthorized,
    VisitNotFound,
)
from tests.conftest import BASE_LAT, BASE_LNG, T0


def _events(db, visit_id):
    return db.query(VisitEvent).filter(VisitEvent.visit_id == visit_id).all()


def test_check_in_moves_to_in_progress_and_records_distance(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    event = visit_service.check_in(db, visit.id, sales_user, BASE_LAT + 0.0005, BASE_LNG, 15.0, now=T0)

    db.refresh(visit)
    assert visit.status == VisitStatus.IN_PROGRESS.value
    assert event.event_type == "CHECK_IN"
    assert 50 < float(event.distance_to_target_m) < 60


def test_check_in_requires_assignee(db, sales_user, make_user, make_visit):
    other = make_user("sales2@yds.in", UserRole.SALES)
    visit = make_visit(sales_user)
    with pytest.raises(Unauthorized):
        visit_service.check_in(db, visit.id, other, BASE_LAT, BASE_LNG, 10.0)


def test_check_in_unknown_visit(db, sales_user):
    with pytest.raises(VisitNotFound):
        visit_service.check_in(db, 999, sales_user, BASE_LAT, BASE_LNG, 10.0)


def test_check_in_rejects_poor_accuracy(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    with pytest.raises(AccuracyTooLow) as exc:
        visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 80.5)
    assert exc.value.context == {"accuracy_m": 80.5, "limit_m": 80}
    assert _events(db, visit.id) == []


def test_check_in_accepts_accuracy_at_limit(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 80.0)
    db.refresh(visit)
    assert visit.status == VisitStatus.IN_PROGRESS.value


def test_check_in_outside_geofence_carries_distance(db, sales_user, make_visit):
    visit = make_visit(sales_user, radius=150)
    # ~200 m north of the target
    with pytest.raises(OutsideGeofence) as exc:
        visit_service.check_in(db, visit.id, sales_user, BASE_LAT + 0.0018, BASE_LNG, 10.0)
    assert exc.value.radius == 150
    assert exc.value.distance == pytest.approx(200, abs=2)
    db.refresh(visit)
    assert visit.status == VisitStatus.PLANNED.value


def test_check_in_geofence_boundary(db, sales_user, make_visit, monkeypatch):
    visit = make_visit(sales_user, radius=150)

    monkeypatch.setattr(geo, "distance_meters", lambda a, b: 150.01)
    with pytest.raises(OutsideGeofence):
        visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)

    monkeypatch.setattr(geo, "distance_meters", lambda a, b: 150.0)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    db.refresh(visit)
    assert visit.status == VisitStatus.IN_PROGRESS.value


def test_check_in_twice_is_invalid_transition(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    with pytest.raises(InvalidTransition):
        visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)


def test_check_in_appends_sample_to_open_session(db, sales_user, make_visit):
    session = duty_service.start_duty(db, sales_user, BASE_LAT, BASE_LNG, accuracy_m=5.0, now=T0 - timedelta(hours=1))
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 12.0, now=T0)

    sources = [p.source for p in db.query(LocationPoint).filter(LocationPoint.session_id == session.id)
               .order_by(LocationPoint.captured_at)]
    assert sources == ["START_DAY", "CHECK_IN"]


def test_check_in_without_open_session_still_succeeds(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 12.0)
    assert db.query(LocationPoint).count() == 0


def test_proof_only_while_in_progress(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    with pytest.raises(InvalidState):
        visit_service.add_photo(db, visit.id, sales_user, "photos/a.jpg")
    with pytest.raises(InvalidState):
        visit_service.add_note(db, visit.id, sales_user, "early note")


def test_proof_rejects_blank_values(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    with pytest.raises(InvalidState):
        visit_service.add_note(db, visit.id, sales_user, "   ")
    with pytest.raises(InvalidState):
        visit_service.add_photo(db, visit.id, sales_user, "")


def test_check_out_requires_photo_and_note(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    visit_service.add_note(db, visit.id, sales_user, "Discussed pricing")

    with pytest.raises(ProofIncomplete) as exc:
        visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG)
    assert exc.value.context == {"has_photo": False, "has_note": True}
    db.refresh(visit)
    assert visit.status == VisitStatus.IN_PROGRESS.value


def test_note_first_then_photo_allows_check_out(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0, now=T0)
    visit_service.add_note(db, visit.id, sales_user, "Waiting for the site engineer", now=T0 + timedelta(minutes=1))

    with pytest.raises(ProofIncomplete):
        visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG, now=T0 + timedelta(minutes=2))

    visit_service.add_photo(db, visit.id, sales_user, "photos/site.jpg", now=T0 + timedelta(minutes=3))
    visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG, now=T0 + timedelta(minutes=4))
    db.refresh(visit)
    assert visit.status == VisitStatus.COMPLETED.value


def test_photo_without_any_note_blocks_check_out(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    visit_service.add_photo(db, visit.id, sales_user, "photos/a.jpg")

    with pytest.raises(ProofIncomplete) as exc:
        visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG)
    assert exc.value.context == {"has_photo": True, "has_note": False}
    db.refresh(visit)
    assert visit.status == VisitStatus.IN_PROGRESS.value


def test_inline_note_counts_as_proof(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0, now=T0)
    visit_service.add_photo(db, visit.id, sales_user, "photos/a.jpg", now=T0 + timedelta(minutes=5))

    event = visit_service.check_out(
        db, visit.id, sales_user, BASE_LAT, BASE_LNG, note="Order confirmed",
        now=T0 + timedelta(minutes=30),
    )
    db.refresh(visit)
    assert visit.status == VisitStatus.COMPLETED.value
    assert event.note == "Order confirmed"
    assert float(event.distance_to_target_m) == 0


def test_blank_inline_note_does_not_count(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    visit_service.check_in(db, visit.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    visit_service.add_photo(db, visit.id, sales_user, "photos/a.jpg")
    with pytest.raises(ProofIncomplete):
        visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG, note="  ")


def test_check_out_from_planned_is_invalid(db, sales_user, make_visit):
    visit = make_visit(sales_user)
    with pytest.raises(InvalidTransition):
        visit_service.check_out(db, visit.id, sales_user, BASE_LAT, BASE_LNG, note="x")


def test_cancel_and_no_show_side_exits(db, sales_user, manager, make_visit):
    planned = make_visit(sales_user)
    visit_service.cancel_visit(db, planned.id, sales_user, note="Client rescheduled")
    assert planned.status == VisitStatus.CANCELLED.value
    with pytest.raises(InvalidTransition):
        visit_service.check_in(db, planned.id, sales_user, BASE_LAT, BASE_LNG, 10.0)

    started = make_visit(sales_user)
    visit_service.check_in(db, started.id, sales_user, BASE_LAT, BASE_LNG, 10.0)
    visit_service.mark_no_show(db, started.id, manager)
    assert started.status == VisitStatus.NO_SHOW.value
    with pytest.raises(InvalidTransition):
        visit_service.cancel_visit(db, started.id, manager)


def test_side_exit_by_other_field_user_is_refused(db, sales_user, make_user, make_visit):
    other = make_user("proj1@yds.in", UserRole.PROJECTS)
    visit = make_visit(sales_user)
    with pytest.raises(Unauthorized):
        visit_service.cancel_visit(db, visit.id, other)


def test_event_log_projection_matches_stored_status(db, sales_user, make_visit):
    completed = make_visit(sales_user)
    visit_service.check_in(db, completed.id, sales_user, BASE_LAT, BASE_LNG, 10.0, now=T0)
    visit_service.add_photo(db, completed.id, sales_user, "photos/a.jpg", now=T0 + timedelta(minutes=1))
    visit_service.check_out(db, completed.id, sales_user, BASE_LAT, BASE_LNG, note="done",
                            now=T0 + timedelta(minutes=2))

    cancelled = make_visit(sales_user)
    visit_service.cancel_visit(db, cancelled.id, sales_user)

    untouched = make_visit(sales_user)

    for visit in (completed, cancelled, untouched):
        db.refresh(visit)
        assert visit_service.project_visit_status(_events(db, visit.id)).value == visit.status


def test_assign_visit_requires_manager(db, sales_user, manager, make_user):
    fields = dict(
        visit_type="SITE_VISIT",
        title="Site survey",
        location_address_text="Noida",
        location_lat=28.5355,
        location_lng=77.3910,
    )
    visit = visit_service.assign_visit(db, manager, sales_user.id, **fields)
    assert visit.assigned_to_user_id == sales_user.id
    assert visit.assigned_by_user_id == manager.id
    assert visit.geofence_radius_m == 150

    with pytest.raises(Unauthorized):
        visit_service.assign_visit(db, sales_user, manager.id, **fields)


def test_visit_detail_visibility(db, sales_user, manager, make_user, make_visit):
    visit = make_visit(sales_user)
    assert visit_service.get_visit_detail(db, visit.id, manager).id == visit.id
    other = make_user("sales2@yds.in", UserRole.SALES)
    with pytest.raises(Unauthorized):
        visit_service.get_visit_detail(db, visit.id, other)


def test_list_visits_by_day_and_upcoming(db, sales_user, make_visit):
    today = make_visit(sales_user, planned_start_at=T0, title="today")
    make_visit(sales_user, planned_start_at=T0 + timedelta(days=1), title="tomorrow")

    listed = visit_service.list_visits(db, sales_user, day=T0.date())
    assert [v.id for v in listed] == [today.id]

    upcoming = visit_service.list_visits(db, sales_user, upcoming=True, now=T0 + timedelta(hours=1))
    assert [v.title for v in upcoming] == ["tomorrow"]


def test_default_radius_comes_from_active_policy(db, sales_user, policy, make_visit):
    policy.geofence_default_m = 250
    db.commit()
    visit = visit_service.create_visit(
        db, sales_user,
        visit_type="SITE_VISIT",
        title="Site survey",
        location_address_text="Noida",
        location_lat=28.5355,
        location_lng=77.3910,
    )
    assert visit.geofence_radius_m == 250
    # An explicit radius still wins
    assert make_visit(sales_user, radius=90).geofence_radius_m == 90
