"""Device binding: one trusted device per account.

Device identifiers are a best-effort fingerprint of the client installation,
not a credential. The identity source is pluggable so a signed installation
credential can replace the fingerprint without changing the trust rules.
"""
import hashlib
import json
import logging
import secrets

logger = logging.getLogger(__name__)

DEVICE_COOKIE = "device_token"


class TrustResult:
    __slots__ = ("ok", "needs_verification")

    def __init__(self, ok, needs_verification=False):
        self.ok = ok
        self.needs_verification = needs_verification

    def __repr__(self):
        return f"TrustResult(ok={self.ok}, needs_verification={self.needs_verification})"


class DeviceIdentitySource:
    """Produces a stable identifier for the device behind a request."""

    # cookie that carries a newly minted identifier back to the client
    cookie_name = DEVICE_COOKIE

    def identify(self, request):
        """Return ``(device_id, is_new)``; ``is_new`` means the caller must persist it."""
        raise NotImplementedError


class FingerprintIdentitySource(DeviceIdentitySource):
    """Fingerprint of client signals, pinned by a long-lived cookie.

    The first request from an installation hashes the agent string, language,
    screen metrics and timezone (the last two reported by the client as
    headers) with a random salt. The result is stored in the ``device_token``
    cookie and reused from then on.
    """

    signal_headers = ("User-Agent", "Accept-Language", "X-Screen-Resolution", "X-Timezone")

    def __init__(self, cookie_name=DEVICE_COOKIE):
        self.cookie_name = cookie_name

    def identify(self, request):
        stored = request.cookies.get(self.cookie_name)
        if stored:
            return stored, False
        signals = {h: request.headers.get(h, "") for h in self.signal_headers}
        signals["salt"] = secrets.token_hex(8)
        digest = hashlib.sha256(json.dumps(signals, sort_keys=True).encode("utf-8")).hexdigest()
        return digest[:32], True


class DeviceTrustManager:

    def __init__(self, repository):
        self.repository = repository

    def bind_or_verify(self, user, presented_device_id):
        if not presented_device_id:
            return TrustResult(False, needs_verification=True)

        # first login from an unbound account trusts whatever device it came from
        if not user.device_id:
            self.repository.update_user(
                user, device_id=presented_device_id, device_verified=True, pending_device_id=None)
            logger.info("Bound device %s to user %s", presented_device_id[:8], user.id)
            return TrustResult(True)

        if user.device_id == presented_device_id:
            return TrustResult(True)

        if user.pending_device_id != presented_device_id:
            self.repository.update_user(user, pending_device_id=presented_device_id)
        logger.warning("User %s logged in from unrecognised device %s", user.id, presented_device_id[:8])
        return TrustResult(False, needs_verification=True)

    def approve_device(self, user, device_id=None):
        """Administrative re-verification: trust ``device_id`` (or the pending one)."""
        device_id = device_id or user.pending_device_id
        if not device_id:
            raise ValueError(f"user {user.id} has no device awaiting approval")
        self.repository.update_user(
            user, device_id=device_id, device_verified=True, pending_device_id=None)
        logger.info("Device %s approved for user %s", device_id[:8], user.id)
        return TrustResult(True)
