"""QR token codec.

A token is base64 of the JSON object ``{"eventId": ..., "expiry": ...}``. Scanned
text may also arrive wrapped in the QR renderer's URL (token in the ``data``
query parameter) or as a bare event id from older codes.
"""
import base64
import binascii
import io
import json
import logging
from datetime import datetime
from urllib.parse import unquote, urlencode, urlparse
import qrcode
from presence.timeutil import format_iso, parse_iso

logger = logging.getLogger(__name__)


class DecodedToken:
    __slots__ = ("event_id", "expiry", "expires_at")

    def __init__(self, event_id, expiry=None, expires_at=None):
        self.event_id = event_id
        # expiry as carried in the token, expires_at as a parsed UTC datetime
        self.expiry = expiry
        self.expires_at = expires_at

    def is_expired(self, now):
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self):
        return {"eventId": self.event_id, "expiry": self.expiry}

    def __eq__(self, other):
        if not isinstance(other, DecodedToken):
            return NotImplemented
        return (self.event_id, self.expiry) == (other.event_id, other.expiry)

    def __repr__(self):
        return f"DecodedToken(event_id={self.event_id!r}, expiry={self.expiry!r})"


def encode_token(event_id, expiry=None):
    if not event_id:
        raise ValueError("event_id is required")
    if isinstance(expiry, datetime):
        expiry = format_iso(expiry)
    payload = {"eventId": str(event_id), "expiry": expiry}
    raw = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def unwrap_url(raw):
    """Return the ``data`` query parameter when raw is a URL carrying one."""
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw
    if not (parsed.scheme and parsed.netloc):
        return raw
    # "+" is kept literally: base64 tokens are often embedded without escaping
    for pair in parsed.query.split("&"):
        key, _, value = pair.partition("=")
        if unquote(key) == "data" and unquote(value).strip():
            return unquote(value).strip()
    return raw


def _decode_json_payload(text):
    """base64 JSON object, or None when text is not one."""
    try:
        padded = text + "=" * (-len(text) % 4)
        decoded = base64.b64decode(padded, validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def decode_token(raw):
    """Decode scanned text into a DecodedToken, or None when malformed.

    Never raises. Shapes are tried in order: renderer URL with a ``data``
    parameter, base64 JSON, bare event id.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    text = unwrap_url(text)

    payload = _decode_json_payload(text)
    if payload is None:
        logger.debug("Token is not base64 JSON, treating it as a plain event id")
        return DecodedToken(text)

    event_id = payload.get("eventId")
    if not isinstance(event_id, str) or not event_id.strip():
        return None
    expiry = payload.get("expiry") or None
    expires_at = None
    if expiry is not None:
        try:
            expires_at = parse_iso(str(expiry))
        except ValueError:
            logger.info("Token for event %s carries an unreadable expiry %r", event_id, expiry)
            return None
    return DecodedToken(event_id.strip(), expiry, expires_at)


def qr_image_url(token, renderer_url, size=300):
    query = urlencode({"size": f"{size}x{size}", "data": token})
    return f"{renderer_url}?{query}"


def render_qr_png(token):
    img = qrcode.make(token)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
