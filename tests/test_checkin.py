import threading

import pytest

from presence import checkin, db
from presence.counters import AtomicCounter, OptimisticCounter
from presence.models import AttendanceRecord
from presence.repository import RepositoryError, SQLAlchemyRepository
from presence.tokens import encode_token

from conftest import make_event, make_user, north_of

VENUE = (6.5244, 3.3792)
HERE = {"lat": VENUE[0], "lng": VENUE[1], "accuracy": 12}


@pytest.fixture()
def validator(services, clock):
    return services.validator()


@pytest.fixture()
def user(repo):
    return make_user(repo, device_id="device-A")


@pytest.fixture()
def event(repo):
    return make_event(repo)


def _records(user_id, event_id):
    return AttendanceRecord.query.filter_by(user_id=user_id, event_id=event_id).count()


def test_successful_check_in_writes_record_and_counts(validator, user, event, repo):
    token = encode_token(event.id, event.end_time)
    result = validator.submit_check_in(user, token, HERE, device_id="device-A", user_agent="pytest")

    assert result.ok
    rec = result.record
    assert rec.event_id == event.id
    assert rec.user_id == user.id
    assert rec.user_name == "Ada Obi"
    assert rec.user_email == "ada@example.com"
    assert rec.device_id == "device-A"
    assert (rec.lat, rec.lng, rec.accuracy) == (VENUE[0], VENUE[1], 12)
    assert rec.status == "present"
    assert rec.checked_in_at.isoformat() == "2024-03-01T10:00:00+00:00"
    assert repo.get_event(event.id).attendee_count == 1
    assert result.message == "Attendance marked for Kickoff!"


def test_second_check_in_is_a_duplicate(validator, user, event, repo):
    assert validator.submit_check_in(user, event.id, HERE).ok
    again = validator.submit_check_in(user, event.id, HERE)
    assert again.code == checkin.DUPLICATE_CHECK_IN
    assert _records(user.id, event.id) == 1
    assert repo.get_event(event.id).attendee_count == 1


@pytest.mark.parametrize("now, code", [
    ("2024-03-01T08:59:00Z", checkin.EVENT_NOT_STARTED),
    ("2024-03-01T11:01:00Z", checkin.EVENT_ENDED),
    ("2024-03-01T10:00:00Z", None),
])
def test_event_time_window(validator, clock, user, event, now, code):
    clock.set(now)
    result = validator.submit_check_in(user, event.id, HERE)
    assert result.code == code
    assert result.ok is (code is None)


def test_expired_token_is_rejected_before_event_lookup(validator, clock, user, repo):
    open_event = make_event(repo, start="2024-02-01T12:00:00Z", end="2024-02-03T00:00:00Z")
    clock.set("2024-02-02T00:00:00Z")

    for event_id in (open_event.id, "no-such-event"):
        token = encode_token(event_id, "2024-02-01T00:00:00Z")
        assert validator.submit_check_in(user, token, HERE).code == checkin.TOKEN_EXPIRED
    assert _records(user.id, open_event.id) == 0


@pytest.mark.parametrize("meters, code", [(80, checkin.OUTSIDE_GEOFENCE), (30, None)])
def test_geofence(validator, user, repo, meters, code):
    fenced = make_event(repo, fixed_location=VENUE, radius=50)
    lat, lng = north_of(VENUE, meters)
    result = validator.submit_check_in(user, fenced.id, {"lat": lat, "lng": lng, "accuracy": 5})
    assert result.code == code


def test_geofence_skipped_without_fixed_location(validator, user, event):
    far_away = {"lat": 51.5072, "lng": -0.1276, "accuracy": 3000}
    assert validator.submit_check_in(user, event.id, far_away).ok


@pytest.mark.parametrize("raw, location, user_given, code", [
    ("", None, False, checkin.MISSING_TOKEN),
    ("   ", HERE, True, checkin.MISSING_TOKEN),
    ("evt", None, False, checkin.LOCATION_UNAVAILABLE),
    ("evt", {"lat": 95.0, "lng": 3.0}, True, checkin.LOCATION_UNAVAILABLE),
    ("evt", {"lng": 3.0}, True, checkin.LOCATION_UNAVAILABLE),
    ("eyJleHBpcnkiOm51bGx9", HERE, False, checkin.MALFORMED_TOKEN),
    ("missing-event", HERE, False, checkin.UNAUTHENTICATED),
    ("missing-event", HERE, True, checkin.EVENT_NOT_FOUND),
])
def test_gates_fail_in_order(validator, user, raw, location, user_given, code):
    result = validator.submit_check_in(user if user_given else None, raw, location)
    assert not result.ok
    assert result.code == code
    assert result.message == checkin.MESSAGES[code]


def test_every_rejection_has_its_own_message():
    messages = list(checkin.MESSAGES.values())
    assert len(messages) == len(set(messages))


def test_user_without_id_is_unauthenticated(validator, event):
    class Anonymous:
        id = None
    assert validator.submit_check_in(Anonymous(), event.id, HERE).code == checkin.UNAUTHENTICATED


def test_counter_failure_does_not_undo_check_in(services, clock, user, event, repo):
    class BrokenCounter(OptimisticCounter):
        def increment(self, event):
            raise RuntimeError("counter offline")

    services.counter = BrokenCounter()
    result = services.validator().submit_check_in(user, event.id, HERE)
    assert result.ok
    assert _records(user.id, event.id) == 1
    assert repo.get_event(event.id).attendee_count == 0


def test_atomic_counter(services, clock, user, event, repo):
    services.counter = AtomicCounter()
    other = make_user(repo, name="Bola", email="bola@example.com")
    assert services.validator().submit_check_in(user, event.id, HERE).ok
    assert services.validator().submit_check_in(other, event.id, HERE).ok
    assert repo.get_event(event.id).attendee_count == 2


def test_write_failure_is_reported_as_retryable(validator, user, event, monkeypatch):
    def fail(**fields):
        raise RepositoryError("disk I/O error")
    monkeypatch.setattr(validator.repository, "create_attendance", fail)

    result = validator.submit_check_in(user, event.id, HERE)
    assert result.code == checkin.PERSISTENCE_FAILURE
    assert result.retryable
    assert result.to_dict()["retryable"] is True


def test_read_failure_is_not_retryable(validator, user, event, monkeypatch):
    def fail(event_id):
        raise RepositoryError("no such table: events")
    monkeypatch.setattr(validator.repository, "get_event", fail)

    result = validator.submit_check_in(user, event.id, HERE)
    assert result.code == checkin.PERSISTENCE_FAILURE
    assert not result.retryable


def test_gates_do_not_write_on_rejection(validator, clock, user, event):
    clock.set("2024-03-01T12:00:00Z")
    assert validator.submit_check_in(user, event.id, HERE).code == checkin.EVENT_ENDED
    assert AttendanceRecord.query.count() == 0
    assert db.session.get(type(event), event.id).attendee_count == 0


def test_concurrent_check_ins_admit_exactly_once(app, services, clock, user, event, monkeypatch):
    user_id, event_id = user.id, event.id
    barrier = threading.Barrier(2)
    original_find = SQLAlchemyRepository.find_attendance

    # both submissions pass the duplicate check before either one writes
    def racing_find(self, user_id, event_id):
        found = original_find(self, user_id, event_id)
        barrier.wait(timeout=10)
        return found

    monkeypatch.setattr(SQLAlchemyRepository, "find_attendance", racing_find)

    results = []
    errors = []

    def attempt():
        try:
            with app.app_context():
                u = services.repository.get_user(user_id)
                results.append(services.validator().submit_check_in(u, event_id, HERE))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not errors
    assert sorted(r.code or "" for r in results) == ["", checkin.DUPLICATE_CHECK_IN]
    db.session.expire_all()
    assert _records(user_id, event_id) == 1
