import logging
import click
from flask import current_app
from werkzeug.security import generate_password_hash
from presence import db
from presence.reports import ReportError
from presence.scheduler import ReportScheduler

logger = logging.getLogger(__name__)


@click.command("init-db")
def init_db_command():
    """Create the database tables."""
    db.create_all()
    click.echo("Initialized the database.")


@click.command("create-user")
@click.option("--name", required=True)
@click.option("--email", required=True)
@click.option("--password", required=True, prompt=True, hide_input=True)
@click.option("--role", type=click.Choice(["admin", "attendee"]), default="attendee")
def create_user_command(name, email, password, role):
    """Create an account (device is bound at its first login)."""
    repo = current_app.extensions["presence"].repository
    if repo.get_user_by_email(email):
        raise click.ClickException(f"{email} already exists")
    user = repo.create_user(name=name, email=email, role=role,
                            password_hash=generate_password_hash(password))
    click.echo(f"Created {role} {user.email} (id {user.id})")


@click.command("run-report")
def run_report_command():
    """Run the monthly attendance report now."""
    try:
        outcome = current_app.extensions["presence"].run_report()
    except ReportError as e:
        raise click.ClickException(f"Error generating report: {e}")
    click.echo(outcome.message)


@click.command("report-scheduler")
def report_scheduler_command():
    """Block and send the report on the first day of every month."""
    app = current_app._get_current_object()
    services = app.extensions["presence"]
    scheduler = ReportScheduler(app, services.run_report, clock=services.now)
    click.echo(f"Monthly report scheduler running ({app.config['REPORT_TIMEZONE']}), Ctrl+C to stop.")
    try:
        scheduler.start()
        scheduler.join()
    except KeyboardInterrupt:
        scheduler.stop(timeout=5)
        click.echo("Scheduler stopped.")


def register_commands(app):
    app.cli.add_command(init_db_command)
    app.cli.add_command(create_user_command)
    app.cli.add_command(run_report_command)
    app.cli.add_command(report_scheduler_command)
