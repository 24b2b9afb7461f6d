import uuid
from datetime import timezone
from sqlalchemy.types import DateTime, TypeDecorator
from presence import db
from presence.timeutil import as_utc, utcnow


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite drops tzinfo otherwise)."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def _new_event_id():
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    password_hash = db.Column(db.String(300), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="attendee")
    # identifier of the one device this account trusts
    device_id = db.Column(db.String(200), nullable=True)
    device_verified = db.Column(db.Boolean, nullable=False, default=False)
    # device seen at login that is waiting for an admin to approve it
    pending_device_id = db.Column(db.String(200), nullable=True)
    created_at = db.Column(UTCDateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "deviceId": self.device_id,
            "deviceVerified": bool(self.device_verified),
            "pendingDeviceId": self.pending_device_id,
        }


class Event(db.Model):
    __tablename__ = "events"
    id = db.Column(db.String(36), primary_key=True, default=_new_event_id)
    name = db.Column(db.String(200), nullable=False)
    start_time = db.Column(UTCDateTime, nullable=False)
    end_time = db.Column(UTCDateTime, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(UTCDateTime, default=utcnow, index=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    attendee_count = db.Column(db.Integer, nullable=False, default=0)
    fixed_lat = db.Column(db.Float, nullable=True)
    fixed_lng = db.Column(db.Float, nullable=True)
    allowed_radius_meters = db.Column(db.Float, nullable=True)

    @property
    def fixed_location(self):
        if self.fixed_lat is None or self.fixed_lng is None:
            return None
        return (self.fixed_lat, self.fixed_lng)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "createdBy": self.created_by,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "active": bool(self.active),
            "attendeeCount": self.attendee_count or 0,
            "fixedLocation": (
                {"lat": self.fixed_lat, "lng": self.fixed_lng} if self.fixed_location else None
            ),
            "allowedRadiusMeters": self.allowed_radius_meters,
        }


class AttendanceRecord(db.Model):
    __tablename__ = "attendance"
    # one record per (user, event); concurrent duplicates fail at the database
    __table_args__ = (
        db.UniqueConstraint("user_id", "event_id", name="uq_attendance_user_event"),
    )
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(36), db.ForeignKey("events.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_name = db.Column(db.String(150), nullable=False, default="")
    user_email = db.Column(db.String(200), nullable=False, default="")
    device_id = db.Column(db.String(200), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)
    lat = db.Column(db.Float, nullable=False)
    lng = db.Column(db.Float, nullable=False)
    accuracy = db.Column(db.Float, nullable=False, default=0)
    checked_in_at = db.Column(UTCDateTime, nullable=False, default=utcnow)
    status = db.Column(db.String(20), nullable=False, default="present")

    def to_dict(self):
        return {
            "id": self.id,
            "eventId": self.event_id,
            "userId": self.user_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "deviceInfo": {"deviceId": self.device_id, "userAgent": self.user_agent},
            "location": {"lat": self.lat, "lng": self.lng, "accuracy": self.accuracy},
            "checkedInAt": self.checked_in_at.isoformat() if self.checked_in_at else None,
            "status": self.status,
        }
