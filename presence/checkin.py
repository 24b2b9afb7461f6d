"""Check-in validation.

``CheckInValidator.submit_check_in`` runs the gates below in order and stops at
the first failure. Nothing is written until every gate has passed.

    1 token text present          MISSING_TOKEN
    2 location reading usable     LOCATION_UNAVAILABLE
    3 token decodes to an event   MALFORMED_TOKEN
    4 authenticated caller        UNAUTHENTICATED
    5 token not expired           TOKEN_EXPIRED
    6 event exists                EVENT_NOT_FOUND
    7 event window open           EVENT_ENDED / EVENT_NOT_STARTED
    8 not already checked in      DUPLICATE_CHECK_IN
    9 inside geofence             OUTSIDE_GEOFENCE
"""
import logging
from presence.counters import OptimisticCounter
from presence.geo import distance_meters
from presence.repository import DuplicateAttendance, RepositoryError
from presence.timeutil import utcnow
from presence.tokens import decode_token

logger = logging.getLogger(__name__)

MISSING_TOKEN = "MissingToken"
LOCATION_UNAVAILABLE = "LocationUnavailable"
MALFORMED_TOKEN = "MalformedToken"
UNAUTHENTICATED = "Unauthenticated"
TOKEN_EXPIRED = "TokenExpired"
EVENT_NOT_FOUND = "EventNotFound"
EVENT_ENDED = "EventEnded"
EVENT_NOT_STARTED = "EventNotStarted"
DUPLICATE_CHECK_IN = "DuplicateCheckIn"
OUTSIDE_GEOFENCE = "OutsideGeofence"
PERSISTENCE_FAILURE = "PersistenceFailure"

MESSAGES = {
    MISSING_TOKEN: "QR code is required.",
    LOCATION_UNAVAILABLE: "Enable location before submitting.",
    MALFORMED_TOKEN: "Malformed QR code.",
    UNAUTHENTICATED: "Please log in again.",
    TOKEN_EXPIRED: "This QR code has expired.",
    EVENT_NOT_FOUND: "Event not found or invalid QR.",
    EVENT_ENDED: "Event has ended, attendance can no longer be marked.",
    EVENT_NOT_STARTED: "Event not yet started.",
    DUPLICATE_CHECK_IN: "You already marked attendance for this event.",
    OUTSIDE_GEOFENCE: "You are outside the allowed check-in radius.",
    PERSISTENCE_FAILURE: "Could not save attendance. Please try again.",
}


class CheckInResult:
    __slots__ = ("ok", "code", "message", "record", "retryable")

    def __init__(self, ok, code=None, record=None, retryable=False, message=None):
        self.ok = ok
        self.code = code
        self.record = record
        self.retryable = retryable
        self.message = message or MESSAGES.get(code, "")

    @classmethod
    def admitted(cls, record, event_name):
        return cls(True, record=record, message=f"Attendance marked for {event_name}!")

    @classmethod
    def rejected(cls, code, retryable=False):
        return cls(False, code=code, retryable=retryable)

    def to_dict(self):
        data = {"ok": self.ok, "code": self.code, "message": self.message}
        if self.record is not None:
            data["record"] = self.record.to_dict()
        if self.code == PERSISTENCE_FAILURE:
            data["retryable"] = self.retryable
        return data

    def __repr__(self):
        return f"CheckInResult(ok={self.ok}, code={self.code!r})"


def _read_location(reported):
    """(lat, lng, accuracy) from a mapping, or None if unusable."""
    if not reported:
        return None
    try:
        lat = float(reported["lat"])
        lng = float(reported["lng"])
        accuracy = float(reported.get("accuracy") or 0)
        # range check only; the distance is computed later against the event
        distance_meters((lat, lng), (lat, lng))
    except (AttributeError, KeyError, TypeError, ValueError):
        return None
    return lat, lng, accuracy


class CheckInValidator:

    def __init__(self, repository, clock=utcnow, counter=None):
        self.repository = repository
        self.clock = clock
        self.counter = counter or OptimisticCounter()

    def submit_check_in(self, user, raw_scan_input, reported_location,
                        device_id=None, user_agent=None):
        try:
            return self._submit(user, raw_scan_input, reported_location, device_id, user_agent)
        except RepositoryError:
            logger.exception("Store lookup failed during check-in")
            return CheckInResult.rejected(PERSISTENCE_FAILURE)

    def _submit(self, user, raw_scan_input, reported_location, device_id, user_agent):
        raw = (raw_scan_input or "").strip()
        if not raw:
            return CheckInResult.rejected(MISSING_TOKEN)

        location = _read_location(reported_location)
        if location is None:
            return CheckInResult.rejected(LOCATION_UNAVAILABLE)

        token = decode_token(raw)
        if token is None or not token.event_id:
            return CheckInResult.rejected(MALFORMED_TOKEN)

        if user is None or getattr(user, "id", None) is None:
            return CheckInResult.rejected(UNAUTHENTICATED)

        now = self.clock()
        if token.is_expired(now):
            return CheckInResult.rejected(TOKEN_EXPIRED)

        event = self.repository.get_event(token.event_id)
        if event is None:
            return CheckInResult.rejected(EVENT_NOT_FOUND)

        if event.end_time and event.end_time < now:
            return CheckInResult.rejected(EVENT_ENDED)
        if event.start_time and event.start_time > now:
            return CheckInResult.rejected(EVENT_NOT_STARTED)

        if self.repository.find_attendance(user.id, event.id) is not None:
            return CheckInResult.rejected(DUPLICATE_CHECK_IN)

        lat, lng, accuracy = location
        if event.fixed_location and event.allowed_radius_meters:
            distance = distance_meters((lat, lng), event.fixed_location)
            if distance > event.allowed_radius_meters:
                logger.info("User %s is %.0fm from event %s (allowed %.0fm)",
                            user.id, distance, event.id, event.allowed_radius_meters)
                return CheckInResult.rejected(OUTSIDE_GEOFENCE)

        try:
            record = self.repository.create_attendance(
                event_id=event.id,
                user_id=user.id,
                user_name=user.name or "",
                user_email=user.email or "",
                device_id=device_id,
                user_agent=user_agent,
                lat=lat,
                lng=lng,
                accuracy=accuracy,
                checked_in_at=now,
                status="present",
            )
        except DuplicateAttendance:
            # lost the race against a concurrent check-in for the same pair
            return CheckInResult.rejected(DUPLICATE_CHECK_IN)
        except RepositoryError:
            logger.exception("Failed to save attendance for user %s event %s", user.id, event.id)
            return CheckInResult.rejected(PERSISTENCE_FAILURE, retryable=True)

        try:
            self.counter.increment(event)
        except Exception:
            logger.warning("Could not increment attendee count for event %s", event.id, exc_info=True)

        logger.info("Attendance marked: user %s event %s", user.id, event.id)
        return CheckInResult.admitted(record, event.name)
