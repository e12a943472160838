"""
Staff Clearance Service
Configuration classes for the application factory.

Selected by name in ``create_app`` (``APP_ENV`` when no name is given):

    development  local SQLite file unless DATABASE_URL is set, readable logs
    testing      in-memory SQLite, rate limiter off
    production   DATABASE_URL and SECRET_KEY required, JSON logs
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'clearance_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _database_url(default=None):
    # SQLAlchemy 2 only accepts the postgresql:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else default


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    LOG_LEVEL = os.getenv("LOG_LEVEL")
    LOG_FORMAT = os.getenv("LOG_FORMAT")

    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Reference codes look like TCS-2026-00042
    CLEARANCE_REFERENCE_PREFIX = os.getenv("CLEARANCE_REFERENCE_PREFIX", "TCS")
    # Template used when a submission does not name one
    CLEARANCE_WORKFLOW = os.getenv("CLEARANCE_WORKFLOW", "academic_staff")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    CLEARANCE_REFERENCE_PREFIX = "TCS"
    CLEARANCE_WORKFLOW = "academic_staff"


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # row locks held by gate decisions must not outlive a stuck statement
        "connect_args": {"options": "-c statement_timeout=30000 -c lock_timeout=10000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
