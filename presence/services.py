from presence.checkin import CheckInValidator
from presence.counters import counter_for
from presence.device import DeviceTrustManager, FingerprintIdentitySource
from presence.mailer import FlaskMailTransport
from presence.reports import ReportPipeline
from presence.repository import SQLAlchemyRepository
from presence.timeutil import utcnow


class Services:
    """Engine collaborators owned by one app instance (``app.extensions["presence"]``).

    ``clock``, ``transport`` and ``device_source`` may be replaced after
    construction; the factories below always read the current attribute.
    """

    def __init__(self, app):
        self.config = app.config
        self.clock = utcnow
        self.repository = SQLAlchemyRepository(in_filter_limit=app.config["QUERY_IN_LIMIT"])
        self.device_source = FingerprintIdentitySource()
        self.trust = DeviceTrustManager(self.repository)
        self.transport = FlaskMailTransport()
        self.counter = counter_for(app.config["ATTENDEE_COUNTER"])

    def now(self):
        return self.clock()

    def validator(self):
        return CheckInValidator(self.repository, clock=self.now, counter=self.counter)

    def report_pipeline(self):
        return ReportPipeline(
            self.repository,
            self.transport,
            sender=self.config["MAIL_DEFAULT_SENDER"],
            recipients=self.config["REPORT_RECIPIENTS"],
            timezone=self.config["REPORT_TIMEZONE"],
            clock=self.now,
        )

    def run_report(self):
        return self.report_pipeline().run()
