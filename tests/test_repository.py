import pytest

from presence.repository import DuplicateAttendance, Subscription
from presence.timeutil import parse_iso

from conftest import make_event, make_user


def _attend(repo, user, event, when="2024-03-01T10:00:00Z"):
    return repo.create_attendance(event_id=event.id, user_id=user.id, user_name=user.name,
                                  user_email=user.email, lat=6.5, lng=3.4, accuracy=10,
                                  checked_in_at=parse_iso(when))


def test_uniqueness_is_enforced_by_the_store(repo):
    user, event = make_user(repo), make_event(repo)
    _attend(repo, user, event)
    with pytest.raises(DuplicateAttendance):
        _attend(repo, user, event)
    assert len(repo.attendance_for_user(user.id)) == 1


def test_events_created_between_is_inclusive(repo):
    make_event(repo, name="before", created_at="2024-01-31T23:59:59Z")
    make_event(repo, name="first", created_at="2024-02-01T00:00:00Z")
    make_event(repo, name="last", created_at="2024-02-29T23:59:59Z")
    make_event(repo, name="after", created_at="2024-03-01T00:00:00Z")
    found = repo.events_created_between(parse_iso("2024-02-01T00:00:00Z"),
                                        parse_iso("2024-02-29T23:59:59Z"))
    assert [e.name for e in found] == ["first", "last"]


def test_membership_query_refuses_oversized_batches(repo):
    repo.in_filter_limit = 2
    with pytest.raises(ValueError):
        repo.attendance_for_events(["a", "b", "c"])
    assert repo.attendance_for_events([]) == []


def test_subscription_delivers_changes_until_stopped(repo):
    user, event = make_user(repo), make_event(repo)
    seen = []
    sub = repo.subscribe("attendance", lambda change, doc: seen.append((change, doc["userId"])))

    _attend(repo, user, event)
    assert seen == []

    sub.start()
    other = make_user(repo, name="Bola", email="bola@example.com")
    _attend(repo, other, event)
    sub.stop()

    third = make_user(repo, name="Chidi", email="chidi@example.com")
    _attend(repo, third, event)
    assert seen == [("added", other.id)]


def test_subscription_reports_modifications(repo):
    user = make_user(repo)
    seen = []
    with repo.subscribe("users", lambda change, doc: seen.append((change, doc["deviceId"]))):
        repo.update_user(user, device_id="device-Z", device_verified=True)
    assert seen == [("modified", "device-Z")]


def test_broken_subscriber_does_not_block_writes(repo):
    def explode(change, doc):
        raise RuntimeError("listener bug")
    with repo.subscribe("events", explode):
        event = make_event(repo)
    assert repo.get_event(event.id) is not None


def test_unknown_collection():
    with pytest.raises(ValueError):
        Subscription("rooms", print)
