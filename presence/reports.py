"""Monthly attendance report: select, join, render CSV, email."""
import csv
import io
import logging
import re
from datetime import timedelta
from zoneinfo import ZoneInfo
from presence.repository import RepositoryError
from presence.timeutil import as_utc, format_iso, utcnow

logger = logging.getLogger(__name__)

CSV_HEADER = ["Event Name", "Attendee Name", "Email", "Date", "Time",
              "Latitude", "Longitude", "Accuracy (m)"]
EVENT_CSV_HEADER = ["Name", "Email", "Check-in Time", "Latitude", "Longitude", "Accuracy (m)"]


class ReportError(Exception):
    """A report run failed; the scheduler decides whether to retry."""


class QueryFailure(ReportError):
    pass


class RenderFailure(ReportError):
    pass


class DeliveryFailure(ReportError):
    pass


class ReportWindow:
    __slots__ = ("start", "end", "tz")

    def __init__(self, start, end, tz):
        # local (report timezone) bounds, both inclusive
        self.start = start
        self.end = end
        self.tz = tz

    @property
    def start_utc(self):
        return as_utc(self.start)

    @property
    def end_utc(self):
        return as_utc(self.end)

    @property
    def label(self):
        return self.start.strftime("%B %Y")

    @property
    def attachment_name(self):
        return f"attendance_report_{self.label.replace(' ', '_')}.csv"

    def __repr__(self):
        return f"ReportWindow({self.start.isoformat()} .. {self.end.isoformat()})"


class ReportOutcome:
    __slots__ = ("sent", "window", "event_count", "record_count")

    def __init__(self, sent, window, event_count=0, record_count=0):
        self.sent = sent
        self.window = window
        self.event_count = event_count
        self.record_count = record_count

    @property
    def message(self):
        if not self.sent:
            return f"No events found for {self.window.label}; no report sent."
        return "Report generated and sent successfully"


def previous_month_window(now, tz):
    """First through last instant of the calendar month before ``now`` in ``tz``."""
    local = as_utc(now).astimezone(tz)
    first_this_month = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    start = (first_this_month - timedelta(days=1)).replace(day=1)
    end = first_this_month - timedelta(microseconds=1)
    return ReportWindow(start, end, tz)


def chunked(items, size):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _cell(value):
    return "" if value is None else value


def _quoted_writer(si):
    # every cell wrapped in quotes, embedded quotes doubled
    return csv.writer(si, quoting=csv.QUOTE_ALL, lineterminator="\n")


def render_csv(records, event_names, tz):
    """One quoted row per record; events missing from ``event_names`` show their id."""
    si = io.StringIO()
    writer = _quoted_writer(si)
    writer.writerow(CSV_HEADER)
    for r in records:
        checked_in = as_utc(r.checked_in_at).astimezone(tz)
        writer.writerow([
            event_names.get(r.event_id) or r.event_id,
            r.user_name or "",
            r.user_email or "",
            checked_in.strftime("%d/%m/%Y"),
            checked_in.strftime("%H:%M"),
            _cell(r.lat),
            _cell(r.lng),
            _cell(r.accuracy),
        ])
    return si.getvalue()


def render_event_csv(records):
    """Attendance export for a single event, check-in time as an ISO instant."""
    si = io.StringIO()
    writer = _quoted_writer(si)
    writer.writerow(EVENT_CSV_HEADER)
    for r in records:
        writer.writerow([
            r.user_name or "",
            r.user_email or "",
            format_iso(r.checked_in_at) if r.checked_in_at else "",
            _cell(r.lat),
            _cell(r.lng),
            _cell(r.accuracy),
        ])
    return si.getvalue()


def event_export_filename(event):
    safe = re.sub(r"\s+", "_", event.name or event.id)
    safe = re.sub(r"[^\w\-.]", "", safe)
    return f"{safe or event.id}_attendance.csv"


class ReportPipeline:

    def __init__(self, repository, transport, sender, recipients,
                 timezone="UTC", clock=utcnow):
        self.repository = repository
        self.transport = transport
        self.sender = sender
        self.recipients = list(recipients)
        self.tz = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
        self.clock = clock

    def collect(self, window):
        try:
            events = self.repository.events_created_between(window.start_utc, window.end_utc)
            if not events:
                return [], []
            event_ids = [e.id for e in events]
            records = []
            for batch in chunked(event_ids, self.repository.in_filter_limit):
                records.extend(self.repository.attendance_for_events(batch))
        except RepositoryError as e:
            raise QueryFailure(f"Could not load report data for {window.label}: {e}") from e
        return events, records

    def compose(self, window, events, records, csv_content):
        now_local = as_utc(self.clock()).astimezone(self.tz)
        body = (
            f"Please find attached the attendance report for {window.label}.\n\n"
            f"Summary:\n"
            f"- Total Events: {len(events)}\n"
            f"- Total Attendance Records: {len(records)}\n"
            f"- Report Period: {window.start.strftime('%d/%m/%Y')} to {window.end.strftime('%d/%m/%Y')}\n\n"
            f"This is an automated report generated on {now_local.strftime('%d/%m/%Y %H:%M')}."
        )
        return {
            "from": self.sender,
            "to": self.recipients,
            "subject": f"Monthly Attendance Report - {window.label}",
            "body_text": body,
            "attachments": [{
                "filename": window.attachment_name,
                "content": csv_content,
                "content_type": "text/csv",
            }],
        }

    def run(self):
        window = previous_month_window(self.clock(), self.tz)
        logger.info("Generating attendance report for %s", window)

        events, records = self.collect(window)
        if not events:
            logger.info("No events found for %s", window.label)
            return ReportOutcome(False, window)
        logger.info("Found %d events and %d attendance records", len(events), len(records))

        try:
            event_names = {e.id: e.name for e in events}
            csv_content = render_csv(records, event_names, self.tz)
            envelope = self.compose(window, events, records, csv_content)
        except Exception as e:
            logger.exception("Rendering report for %s failed", window.label)
            raise RenderFailure(f"Could not render report for {window.label}: {e}") from e

        try:
            self.transport.send(envelope)
        except Exception as e:
            logger.exception("Sending report for %s failed", window.label)
            raise DeliveryFailure(f"Could not send report for {window.label}: {e}") from e

        logger.info("Report for %s sent to %s", window.label, ", ".join(self.recipients))
        return ReportOutcome(True, window, len(events), len(records))
