import io
import logging
from flask import Blueprint, current_app, jsonify, make_response, request, send_file, session
from werkzeug.security import check_password_hash
from presence import checkin
from presence.reports import ReportError, event_export_filename, render_event_csv
from presence.timeutil import parse_iso
from presence.tokens import encode_token, qr_image_url, render_qr_png

logger = logging.getLogger(__name__)

main = Blueprint("main", __name__)

CHECKIN_STATUS = {
    checkin.MISSING_TOKEN: 400,
    checkin.LOCATION_UNAVAILABLE: 400,
    checkin.MALFORMED_TOKEN: 400,
    checkin.UNAUTHENTICATED: 401,
    checkin.TOKEN_EXPIRED: 410,
    checkin.EVENT_NOT_FOUND: 404,
    checkin.EVENT_ENDED: 410,
    checkin.EVENT_NOT_STARTED: 409,
    checkin.DUPLICATE_CHECK_IN: 409,
    checkin.OUTSIDE_GEOFENCE: 403,
    checkin.PERSISTENCE_FAILURE: 503,
}


def services():
    return current_app.extensions["presence"]


def payload():
    return request.get_json(silent=True) or request.form.to_dict()


def error(message, status):
    return jsonify({"status": "error", "message": message}), status


def session_user():
    uid = session.get("user_id")
    if uid is None:
        return None
    return services().repository.get_user(uid)


def require_role(role):
    """Return (user, None) for a device-verified session in ``role``, else (None, response)."""
    user = session_user()
    if user is None or session.get("role") != role:
        return None, error("Not logged in", 401)
    if not session.get("device_verified"):
        return None, error("Device verification required. Ask an admin to approve this device.", 403)
    return user, None


def with_device_cookie(resp, device_id, is_new):
    if is_new:
        resp.set_cookie(services().device_source.cookie_name, device_id,
                        max_age=current_app.config["DEVICE_COOKIE_MAX_AGE"], httponly=True)
    return resp


# ----------------- AUTH -----------------
@main.route("/login", methods=["POST"])
def login():
    data = payload()
    email = (data.get("email") or "").strip()
    password = data.get("password") or ""
    user = services().repository.get_user_by_email(email)
    if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
        return error("Invalid credentials", 401)

    device_id, is_new = services().device_source.identify(request)
    trust = services().trust.bind_or_verify(user, device_id)

    session.clear()
    session["user_id"] = user.id
    session["role"] = user.role
    session["device_verified"] = trust.ok

    if trust.needs_verification:
        body = {"status": "verify", "view": "device-verify", "deviceId": device_id,
                "message": "New device detected! Admin verification required."}
    else:
        body = {"status": "success", "view": user.role,
                "message": f"Welcome back, {user.name or user.email}!"}
    return with_device_cookie(make_response(jsonify(body)), device_id, is_new)


@main.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"status": "success", "message": "Logged out successfully"})


# ----------------- ADMIN -----------------
@main.route("/admin/events", methods=["POST"])
def admin_create_event():
    admin, denied = require_role("admin")
    if denied:
        return denied
    data = payload()
    name = (data.get("name") or "").strip()
    try:
        start_time = parse_iso(data["startTime"])
        end_time = parse_iso(data["endTime"])
    except (KeyError, TypeError, ValueError, AttributeError):
        return error("startTime and endTime must be ISO-8601 instants", 400)
    if not name:
        return error("Event name is required", 400)
    if end_time <= start_time:
        return error("endTime must be after startTime", 400)

    fields = {}
    location = data.get("fixedLocation")
    radius = data.get("allowedRadiusMeters")
    if location is not None or radius is not None:
        try:
            fields["fixed_lat"] = float(location["lat"])
            fields["fixed_lng"] = float(location["lng"])
            fields["allowed_radius_meters"] = float(radius)
        except (KeyError, TypeError, ValueError):
            return error("fixedLocation needs lat/lng and allowedRadiusMeters a number", 400)

    event = services().repository.create_event(
        name=name,
        start_time=start_time,
        end_time=end_time,
        created_by=admin.id,
        created_at=services().now(),
        active=True,
        attendee_count=0,
        **fields,
    )
    token = encode_token(event.id, event.end_time)
    logger.info("Event %s created by user %s", event.id, admin.id)
    return jsonify({
        "status": "success",
        "message": "Event created & QR generated!",
        "event": event.to_dict(),
        "token": token,
        "qrUrl": qr_image_url(token, current_app.config["QR_RENDERER_URL"]),
    }), 201


@main.route("/admin/events", methods=["GET"])
def admin_events():
    _, denied = require_role("admin")
    if denied:
        return denied
    return jsonify([e.to_dict() for e in services().repository.list_events()])


@main.route("/admin/events/<event_id>/qr.png")
def admin_event_qr(event_id):
    _, denied = require_role("admin")
    if denied:
        return denied
    event = services().repository.get_event(event_id)
    if event is None:
        return error("Event not found", 404)
    png = render_qr_png(encode_token(event.id, event.end_time))
    return send_file(io.BytesIO(png), mimetype="image/png", as_attachment=True,
                     download_name=f"qr_{event.id}.png")


@main.route("/admin/events/<event_id>/attendance.csv")
def admin_event_attendance_csv(event_id):
    _, denied = require_role("admin")
    if denied:
        return denied
    event = services().repository.get_event(event_id)
    if event is None:
        return error("Event not found", 404)
    records = services().repository.attendance_for_events([event.id])
    mem = io.BytesIO(render_event_csv(records).encode("utf-8"))
    return send_file(mem, as_attachment=True, download_name=event_export_filename(event),
                     mimetype="text/csv")


@main.route("/admin/attendance")
def admin_attendance():
    _, denied = require_role("admin")
    if denied:
        return denied
    return jsonify([r.to_dict() for r in services().repository.list_attendance()])


@main.route("/admin/users/<int:uid>/approve-device", methods=["POST"])
def admin_approve_device(uid):
    _, denied = require_role("admin")
    if denied:
        return denied
    user = services().repository.get_user(uid)
    if user is None:
        return error("User not found", 404)
    try:
        services().trust.approve_device(user, payload().get("deviceId"))
    except ValueError as e:
        return error(str(e), 400)
    return jsonify({"status": "success", "user": user.to_dict()})


@main.route("/admin/reports/run", methods=["POST"])
def admin_run_report():
    _, denied = require_role("admin")
    if denied:
        return denied
    try:
        outcome = services().run_report()
    except ReportError as e:
        logger.error("Manual report run failed: %s", e)
        return f"Error generating report: {e}", 500, {"Content-Type": "text/plain"}
    return outcome.message, 200, {"Content-Type": "text/plain"}


# ----------------- ATTENDEE -----------------
@main.route("/attendee/checkin", methods=["POST"])
def attendee_checkin():
    user = session_user()
    device_id = None
    if user is not None:
        if not session.get("device_verified"):
            return error("Device verification required. Ask an admin to approve this device.", 403)
        device_id, _ = services().device_source.identify(request)
        if device_id != user.device_id:
            return error("Device verification failed. Please use your registered device.", 403)

    data = request.get_json(silent=True) or {}
    result = services().validator().submit_check_in(
        user,
        data.get("code") or data.get("raw") or "",
        data.get("location"),
        device_id=device_id,
        user_agent=request.headers.get("User-Agent"),
    )
    if result.ok:
        return jsonify(result.to_dict()), 201
    return jsonify(result.to_dict()), CHECKIN_STATUS.get(result.code, 400)


@main.route("/attendee/attendance")
def attendee_attendance():
    user, denied = require_role("attendee")
    if denied:
        return denied
    records = services().repository.attendance_for_user(user.id)
    return jsonify([r.to_dict() for r in records])
