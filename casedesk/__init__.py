"""
CaseDesk — DTR case-management engine
Flask Application Factory.

Usage:
    from casedesk import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from casedesk.config import config
from casedesk.middleware.actor_context import init_actor_context
from casedesk.middleware.logging_config import configure_logging
from casedesk.middleware.timing import init_request_timing
from casedesk.models import db
from casedesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # bulk import carries its own limit
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiated so ProductionConfig can refuse to start without its env vars
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_actor_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from casedesk.models import asset as _asset_models          # noqa: F401
    from casedesk.models import audit as _audit_models          # noqa: F401
    from casedesk.models import dtr as _dtr_models              # noqa: F401
    from casedesk.models import notification as _notification_models  # noqa: F401
    from casedesk.models import rma as _rma_models              # noqa: F401

    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from casedesk.blueprints.dtr_bp import dtr_bp
    app.register_blueprint(dtr_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("import-dtrs")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    def import_dtrs_cmd(path):
        """Bulk import DTRs from a .csv or .xlsx file as the system actor."""
        from casedesk.services.dtr_import_service import import_from_file
        from casedesk.services.permission import Actor

        with open(path, "rb") as fh:
            result = import_from_file(Actor.system(), os.path.basename(path), fh.read())
        click.echo(result["message"])
        for error in result["errors"]:
            click.echo(f"  {error}", err=True)

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "CaseDesk"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"No route for {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed on {request.path}")

    @app.errorhandler(413)
    def too_large(e):
        return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large",
                         details={"max_bytes": app.config.get("MAX_CONTENT_LENGTH")})

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    return app
