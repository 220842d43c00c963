import logging

import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate

from config import Config
from models import db
from models.user import User, Role
from routes import health_bp, mentorship_bp, payments_bp, webhook_bp, admin_bp
from security.csrf import require_csrf
from services.errors import BookingError
from services.factory import get_engine
from utils.audit import log_event
from utils.auth_context import load_current_user
from utils.seed import seed_roles

logger = logging.getLogger(__name__)


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(mentorship_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Seed default roles at startup (safe & idempotent)
    with app.app_context():
        if app.config.get("CREATE_TABLES"):
            db.create_all()
        seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    # Gateways post here without cookies; payment verification only re-asks the gateway
    # and is safe to replay from a checkout redirect
    CSRF_EXEMPT_PREFIXES = ("/webhooks/", "/health", "/payments/verify")

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.path.startswith(CSRF_EXEMPT_PREFIXES):
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                failure = require_csrf()
                if failure:
                    return failure

    @app.errorhandler(BookingError)
    def _booking_error(err):
        if err.status_code >= 500:
            logger.warning("%s on %s: %s", err.code, request.path, err.details)
        return jsonify(err.to_dict()), err.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("grant-role")
    @click.argument("email")
    @click.argument("role_name")
    def grant_role(email, role_name):
        """Give a user a role by email (MENTOR, ADMIN, ...)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        role_name = role_name.strip().upper()
        role = Role.query.filter_by(name=role_name).first()
        if not role:
            role = Role(name=role_name)
            db.session.add(role)
            db.session.commit()

        if role not in user.roles:
            user.roles.append(role)
            db.session.commit()

        click.echo(f"{user.email} granted {role_name}")

    @app.cli.command("expire-requests")
    def expire_requests():
        """Reject mentorship requests left unanswered past their deadline."""
        expired = get_engine().approvals.expire_overdue()
        for session_id in expired:
            log_event("MENTORSHIP_REQUEST_EXPIRED", entity="mentorship_session", entity_id=session_id)
        click.echo(f"Expired {len(expired)} request(s)")

    @app.cli.command("expire-payments")
    def expire_payments():
        """Fail pending payments older than PAYMENT_WINDOW_MINUTES."""
        expired = get_engine().payments.expire_stale_transactions()
        for reference in expired:
            log_event("PAYMENT_EXPIRED", entity="transaction", entity_id=reference)
        click.echo(f"Expired {len(expired)} payment(s)")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
