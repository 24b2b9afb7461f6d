"""Monthly trigger for the report pipeline.

Runs on day 1 of every month at ``REPORT_HOUR`` in ``REPORT_TIMEZONE``. A
failed run is recorded in ``status`` and the loop waits for the next slot.
"""
import logging
import threading
from datetime import timedelta
from zoneinfo import ZoneInfo
from presence.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


def next_run_after(now, tz, hour=9):
    """Next day-1 ``hour``:00 in ``tz`` strictly after ``now`` (returned in UTC)."""
    local = as_utc(now).astimezone(tz)
    candidate = local.replace(day=1, hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        # jump into next month, then back to day 1
        candidate = (candidate.replace(day=28) + timedelta(days=4)).replace(day=1)
    return as_utc(candidate)


class ReportScheduler:

    def __init__(self, app, run_report, clock=utcnow):
        self.app = app
        self.run_report = run_report
        self.clock = clock
        self.tz = ZoneInfo(app.config["REPORT_TIMEZONE"])
        self.hour = app.config["REPORT_HOUR"]
        self._stop = threading.Event()
        self._run_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._thread = None
        self.status = {
            "state": "idle",        # idle | running | success | skipped | failed
            "started_at": None,
            "finished_at": None,
            "message": "",
            "next_run": None,
        }

    def _set_status(self, **fields):
        with self._status_lock:
            self.status.update(fields)

    def run_once(self):
        """Run one report inside an app context. Returns False if one is already running."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Report run requested while another is in progress")
            return False
        try:
            self._set_status(state="running", started_at=self.clock().isoformat(),
                             finished_at=None, message="Report started...")
            with self.app.app_context():
                outcome = self.run_report()
            self._set_status(state="success" if outcome.sent else "skipped",
                             finished_at=self.clock().isoformat(), message=outcome.message)
        except Exception as e:
            logger.exception("Scheduled report failed")
            self._set_status(state="failed", finished_at=self.clock().isoformat(),
                             message=f"Report failed: {e}")
        finally:
            self._run_lock.release()
        return True

    def loop(self):
        while not self._stop.is_set():
            due = next_run_after(self.clock(), self.tz, self.hour)
            self._set_status(next_run=due.isoformat())
            logger.info("Next monthly report at %s", due.isoformat())
            wait = (due - self.clock()).total_seconds()
            if self._stop.wait(max(wait, 0)):
                break
            self.run_once()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.loop, name="report-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def join(self, poll=0.5):
        """Block until the loop thread exits; short joins keep Ctrl+C responsive."""
        while self.running:
            self._thread.join(poll)
