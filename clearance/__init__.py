"""
Staff Clearance Service
Flask Application Factory.

Usage:
    from clearance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from clearance.config import config
from clearance.models import db
from clearance.middleware.logging_config import configure_logging
from clearance.middleware.rate_limiter import init_rate_limits
from clearance.middleware.security_headers import init_security_headers
from clearance.middleware.timing import init_request_timing

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
    default_limits=[],                     # no global limit; limits are per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    app.config.from_object(config[config_name]())

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

    init_security_headers(app)
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                return {"error": "Content-Type must be application/json"}, 415
        return None

    # ── Import all models so Alembic can detect them ─────────────────────
    from clearance.models import activity as _activity_models          # noqa: F401
    from clearance.models import clearance as _clearance_models        # noqa: F401
    from clearance.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables outside production (migrations own the schema there)
    with app.app_context():
        if config_name != "production":
            os.makedirs(app.instance_path, exist_ok=True)
            db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from clearance.blueprints.clearance_bp import clearance_bp
    from clearance.blueprints.health_bp import health_bp
    from clearance.blueprints.notification_bp import notification_bp

    app.register_blueprint(clearance_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    init_rate_limits(app, limiter)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "detail": str(e.description)}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    logger.debug("Clearance app created (config=%s)", config_name)
    return app
