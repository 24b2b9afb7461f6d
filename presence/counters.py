"""Attendee counter strategies.

The counter on an event is an advisory tally. ``OptimisticCounter`` writes
back ``snapshot + 1`` and may lose increments under contention;
``AtomicCounter`` lets the database do the increment.
"""
from presence import db
from presence.models import Event


class AttendeeCounter:

    def increment(self, event):
        raise NotImplementedError


class OptimisticCounter(AttendeeCounter):

    def increment(self, event):
        try:
            event.attendee_count = (event.attendee_count or 0) + 1
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class AtomicCounter(AttendeeCounter):

    def increment(self, event):
        try:
            db.session.execute(
                db.update(Event)
                .where(Event.id == event.id)
                .values(attendee_count=Event.attendee_count + 1)
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


COUNTERS = {
    "optimistic": OptimisticCounter,
    "atomic": AtomicCounter,
}


def counter_for(name):
    try:
        return COUNTERS[name]()
    except KeyError:
        raise ValueError(f"unknown attendee counter: {name}") from None
