import logging
import os
from flask import Flask
from flask_mail import Mail
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
mail = Mail()


def _parse_csv(value, fallback):
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_bool(value, fallback):
    if value is None:
        return fallback
    return value.strip().lower() in ("1", "true", "yes", "on")


def create_app(test_config=None):
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "presence_secret_change_me")
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///presence.db")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # QR rendering: tokens are embedded in an image request to this service
    app.config["QR_RENDERER_URL"] = os.environ.get(
        "QR_RENDERER_URL", "https://api.qrserver.com/v1/create-qr-code/")
    app.config["DEVICE_COOKIE_MAX_AGE"] = int(os.environ.get("DEVICE_COOKIE_MAX_AGE", str(365 * 24 * 3600)))

    # "optimistic" (read-modify-write) or "atomic" (single UPDATE)
    app.config["ATTENDEE_COUNTER"] = os.environ.get("ATTENDEE_COUNTER", "optimistic")
    # largest id list handed to a single membership query
    app.config["QUERY_IN_LIMIT"] = int(os.environ.get("QUERY_IN_LIMIT", "30"))

    # Monthly report: runs on day 1 at REPORT_HOUR in REPORT_TIMEZONE
    app.config["REPORT_TIMEZONE"] = os.environ.get("REPORT_TIMEZONE", "Africa/Lagos")
    app.config["REPORT_HOUR"] = int(os.environ.get("REPORT_HOUR", "9"))
    app.config["REPORT_RECIPIENTS"] = _parse_csv(os.environ.get("REPORT_RECIPIENTS"), ["admin@example.com"])

    app.config["MAIL_SERVER"] = os.environ.get("MAIL_SERVER", "localhost")
    app.config["MAIL_PORT"] = int(os.environ.get("MAIL_PORT", "587"))
    app.config["MAIL_USE_TLS"] = _parse_bool(os.environ.get("MAIL_USE_TLS"), True)
    app.config["MAIL_USERNAME"] = os.environ.get("MAIL_USERNAME")
    app.config["MAIL_PASSWORD"] = os.environ.get("MAIL_PASSWORD")
    app.config["MAIL_DEFAULT_SENDER"] = os.environ.get(
        "MAIL_DEFAULT_SENDER", app.config["MAIL_USERNAME"] or "reports@example.com")

    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")

    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db.init_app(app)
    mail.init_app(app)

    from presence.services import Services
    app.extensions["presence"] = Services(app)

    # import and register blueprint
    from presence.routes import main
    app.register_blueprint(main)

    from presence.commands import register_commands
    register_commands(app)

    with app.app_context():
        db.create_all()

    return app
