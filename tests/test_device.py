import pytest
from flask import request

from presence.device import DeviceIdentitySource, FingerprintIdentitySource

from conftest import make_user


def test_first_login_binds_device(services, repo):
    user = make_user(repo)
    result = services.trust.bind_or_verify(user, "device-A")
    assert result.ok and not result.needs_verification
    user = repo.get_user(user.id)
    assert user.device_id == "device-A"
    assert user.device_verified


def test_matching_device_passes_silently(services, repo):
    user = make_user(repo, device_id="device-A")
    result = services.trust.bind_or_verify(user, "device-A")
    assert result.ok
    assert repo.get_user(user.id).pending_device_id is None


def test_new_device_needs_verification_and_keeps_binding(services, repo):
    user = make_user(repo, device_id="device-A")
    result = services.trust.bind_or_verify(user, "device-B")
    assert not result.ok
    assert result.needs_verification
    user = repo.get_user(user.id)
    assert user.device_id == "device-A"
    assert user.pending_device_id == "device-B"


def test_missing_device_id_needs_verification(services, repo):
    user = make_user(repo)
    assert services.trust.bind_or_verify(user, "").needs_verification
    assert repo.get_user(user.id).device_id is None


def test_approval_overwrites_binding_with_pending_device(services, repo):
    user = make_user(repo, device_id="device-A")
    services.trust.bind_or_verify(user, "device-B")
    services.trust.approve_device(user)
    user = repo.get_user(user.id)
    assert user.device_id == "device-B"
    assert user.device_verified
    assert user.pending_device_id is None
    assert services.trust.bind_or_verify(user, "device-B").ok


def test_approval_without_pending_device_is_an_error(services, repo):
    user = make_user(repo, device_id="device-A")
    with pytest.raises(ValueError):
        services.trust.approve_device(user)


def test_fingerprint_source_reuses_cookie(app):
    source = FingerprintIdentitySource()
    with app.test_request_context(headers={"Cookie": "device_token=abc123"}):
        assert source.identify(request) == ("abc123", False)


def test_fingerprint_source_mints_new_id_without_cookie(app):
    source = FingerprintIdentitySource()
    headers = {"User-Agent": "Mozilla/5.0", "X-Timezone": "Africa/Lagos", "X-Screen-Resolution": "390x844"}
    with app.test_request_context(headers=headers):
        first, is_new = source.identify(request)
        second, _ = source.identify(request)
    assert is_new
    assert len(first) == 32
    # salted, so two fresh installations on identical hardware still differ
    assert first != second


def test_custom_identity_source_uses_default_cookie(app, repo, client):
    class InstallationCredentialSource(DeviceIdentitySource):
        def identify(self, request):
            return "signed-install-1", True

    make_user(repo)
    app.extensions["presence"].device_source = InstallationCredentialSource()
    res = client.post("/login", json={"email": "ada@example.com", "password": "secret"})
    assert res.status_code == 200
    assert any("device_token=signed-install-1" in c for c in res.headers.getlist("Set-Cookie"))
    assert repo.get_user_by_email("ada@example.com").device_id == "signed-install-1"
