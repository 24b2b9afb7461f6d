"""Persistence boundary for the check-in engine and the report pipeline.

Callers only talk to :class:`Repository`; nothing outside this module touches
``db.session`` directly except the attendee counters, which are deliberately
allowed to use a store-specific increment.
"""
import logging
from sqlalchemy import event as orm_event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from presence import db
from presence.models import AttendanceRecord, Event, User

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "users": User,
    "events": Event,
    "attendance": AttendanceRecord,
}


class RepositoryError(Exception):
    """The store failed to answer or to persist a change."""


class DuplicateAttendance(RepositoryError):
    """An attendance record for this (user, event) pair already exists."""


class Subscription:
    """Change feed for one collection.

    ``callback(change, document)`` is called with ``"added"`` or ``"modified"``
    and the document's dict form for every flushed insert/update between
    :meth:`start` and :meth:`stop`. The owner is responsible for stopping it.
    """

    def __init__(self, collection, callback):
        if collection not in COLLECTIONS:
            raise ValueError(f"unknown collection: {collection}")
        self.collection = collection
        self.callback = callback
        self.active = False

    def _on_insert(self, mapper, connection, target):
        self._deliver("added", target)

    def _on_update(self, mapper, connection, target):
        self._deliver("modified", target)

    def _deliver(self, change, target):
        try:
            self.callback(change, target.to_dict())
        except Exception:
            # a broken listener must not abort the writer's flush
            logger.exception("Subscriber for %s failed on %s change", self.collection, change)

    def start(self):
        if self.active:
            return self
        model = COLLECTIONS[self.collection]
        orm_event.listen(model, "after_insert", self._on_insert)
        orm_event.listen(model, "after_update", self._on_update)
        self.active = True
        return self

    def stop(self):
        if not self.active:
            return
        model = COLLECTIONS[self.collection]
        orm_event.remove(model, "after_insert", self._on_insert)
        orm_event.remove(model, "after_update", self._on_update)
        self.active = False

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()


class Repository:
    """Scoped queries over users, events and attendance."""

    # maximum number of ids a single membership ("in") query may carry
    in_filter_limit = 30

    def get_user(self, user_id):
        raise NotImplementedError

    def get_user_by_email(self, email):
        raise NotImplementedError

    def create_user(self, **fields):
        raise NotImplementedError

    def update_user(self, user, **fields):
        raise NotImplementedError

    def get_event(self, event_id):
        raise NotImplementedError

    def create_event(self, **fields):
        raise NotImplementedError

    def list_events(self):
        raise NotImplementedError

    def events_created_between(self, start, end):
        raise NotImplementedError

    def find_attendance(self, user_id, event_id):
        raise NotImplementedError

    def create_attendance(self, **fields):
        raise NotImplementedError

    def attendance_for_events(self, event_ids):
        raise NotImplementedError

    def attendance_for_user(self, user_id):
        raise NotImplementedError

    def list_attendance(self):
        raise NotImplementedError

    def subscribe(self, collection, callback):
        return Subscription(collection, callback)


class SQLAlchemyRepository(Repository):

    def __init__(self, in_filter_limit=None):
        if in_filter_limit:
            self.in_filter_limit = in_filter_limit

    def _read(self, fn):
        try:
            return fn()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise RepositoryError(str(e)) from e

    def _write(self, obj):
        try:
            db.session.add(obj)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise RepositoryError(str(e)) from e
        return obj

    # ----------------- USERS -----------------
    def get_user(self, user_id):
        return self._read(lambda: db.session.get(User, user_id))

    def get_user_by_email(self, email):
        return self._read(lambda: User.query.filter_by(email=email).first())

    def create_user(self, **fields):
        return self._write(User(**fields))

    def update_user(self, user, **fields):
        for key, value in fields.items():
            setattr(user, key, value)
        return self._write(user)

    # ----------------- EVENTS -----------------
    def get_event(self, event_id):
        return self._read(lambda: db.session.get(Event, event_id))

    def create_event(self, **fields):
        return self._write(Event(**fields))

    def list_events(self):
        return self._read(lambda: Event.query.order_by(Event.created_at.desc()).all())

    def events_created_between(self, start, end):
        """Events whose creation instant lies in [start, end], both inclusive."""
        return self._read(lambda: Event.query.filter(
            Event.created_at >= start,
            Event.created_at <= end,
        ).order_by(Event.created_at).all())

    # ----------------- ATTENDANCE -----------------
    def find_attendance(self, user_id, event_id):
        return self._read(lambda: AttendanceRecord.query.filter_by(
            user_id=user_id, event_id=event_id).first())

    def create_attendance(self, **fields):
        rec = AttendanceRecord(**fields)
        try:
            db.session.add(rec)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise DuplicateAttendance(
                f"user {fields.get('user_id')} already checked in to {fields.get('event_id')}") from e
        except SQLAlchemyError as e:
            db.session.rollback()
            raise RepositoryError(str(e)) from e
        return rec

    def attendance_for_events(self, event_ids):
        event_ids = list(event_ids)
        if len(event_ids) > self.in_filter_limit:
            raise ValueError(
                f"membership filter accepts at most {self.in_filter_limit} ids, got {len(event_ids)}")
        if not event_ids:
            return []
        return self._read(lambda: AttendanceRecord.query.filter(
            AttendanceRecord.event_id.in_(event_ids)
        ).order_by(AttendanceRecord.checked_in_at).all())

    def attendance_for_user(self, user_id):
        return self._read(lambda: AttendanceRecord.query.filter_by(user_id=user_id)
                          .order_by(AttendanceRecord.checked_in_at.desc()).all())

    def list_attendance(self):
        return self._read(lambda: AttendanceRecord.query
                          .order_by(AttendanceRecord.checked_in_at.desc()).all())
