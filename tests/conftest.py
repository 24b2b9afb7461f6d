import math
import pytest
from werkzeug.security import generate_password_hash

from presence import create_app, db
from presence.timeutil import parse_iso


class FakeClock:
    def __init__(self, now="2024-03-01T10:00:00Z"):
        self.now = parse_iso(now)

    def __call__(self):
        return self.now

    def set(self, iso):
        self.now = parse_iso(iso)


@pytest.fixture()
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'presence_test.db'}",
        "REPORT_TIMEZONE": "UTC",
        "REPORT_RECIPIENTS": ["reports@example.com"],
        "MAIL_DEFAULT_SENDER": "noreply@example.com",
        "MAIL_SUPPRESS_SEND": True,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def services(app):
    return app.extensions["presence"]


@pytest.fixture()
def repo(services):
    return services.repository


@pytest.fixture()
def clock(services):
    c = FakeClock()
    services.clock = c
    return c


@pytest.fixture()
def client(app):
    return app.test_client()


def make_user(repo, name="Ada Obi", email="ada@example.com", role="attendee",
              password="secret", device_id=None):
    return repo.create_user(
        name=name,
        email=email,
        role=role,
        password_hash=generate_password_hash(password),
        device_id=device_id,
        device_verified=device_id is not None,
    )


def make_event(repo, name="Kickoff", start="2024-03-01T09:00:00Z", end="2024-03-01T11:00:00Z",
               created_at="2024-03-01T08:00:00Z", fixed_location=None, radius=None):
    fields = {}
    if fixed_location:
        fields["fixed_lat"], fields["fixed_lng"] = fixed_location
    if radius is not None:
        fields["allowed_radius_meters"] = radius
    return repo.create_event(
        name=name,
        start_time=parse_iso(start),
        end_time=parse_iso(end),
        created_at=parse_iso(created_at),
        **fields,
    )


def north_of(point, meters):
    """Point ``meters`` due north of ``point`` on the haversine sphere."""
    lat, lng = point
    return lat + math.degrees(meters / 6371000), lng
