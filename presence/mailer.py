import logging
from flask_mail import Message
from presence import mail

logger = logging.getLogger(__name__)


class EmailTransport:
    """Delivers ``{from, to, subject, body_text, attachments}`` envelopes.

    ``send`` raises on failure.
    """

    def send(self, envelope):
        raise NotImplementedError


class FlaskMailTransport(EmailTransport):

    def __init__(self, mailer=None):
        self.mailer = mailer or mail

    def send(self, envelope):
        recipients = envelope["to"]
        if isinstance(recipients, str):
            recipients = [recipients]
        msg = Message(
            subject=envelope["subject"],
            sender=envelope.get("from"),
            recipients=list(recipients),
            body=envelope.get("body_text", ""),
        )
        for a in envelope.get("attachments", []):
            msg.attach(a["filename"], a.get("content_type", "application/octet-stream"), a["content"])
        self.mailer.send(msg)
        logger.debug("Mail %r handed to %s", envelope["subject"], ", ".join(recipients))
