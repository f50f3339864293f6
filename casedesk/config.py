"""
CaseDesk — DTR case-management engine
Environment configuration consumed by ``create_app``.

Usage:
    app.config.from_object(config[os.getenv("APP_ENV", "development")]())

Every case-desk tunable (import limits, retry counts, attachment size)
can be overridden by an environment variable of the same name.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
instance_dir = os.path.join(basedir, "instance")

_SQLITE_DEV = f"sqlite:///{os.path.join(instance_dir, 'casedesk_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Regenerated per process; sessions and tokens do not survive a dev restart
_DEV_SECRET = secrets.token_hex(32)

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _database_url(fallback: str | None) -> str | None:
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    # Spreadsheet uploads and attachments share this ceiling
    MAX_CONTENT_LENGTH = 60 * 1024 * 1024
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(instance_dir, "uploads"))

    # ── Bulk import ──────────────────────────────────────────────────────
    BULK_IMPORT_MAX_ROWS = _int_env("BULK_IMPORT_MAX_ROWS", 1000)
    BULK_IMPORT_BATCH_SIZE = _int_env("BULK_IMPORT_BATCH_SIZE", 50)
    BULK_IMPORT_TIMEOUT_SECONDS = _int_env("BULK_IMPORT_TIMEOUT_SECONDS", 300)
    BULK_IMPORT_ERROR_CAP = _int_env("BULK_IMPORT_ERROR_CAP", 50)
    BULK_IMPORT_RATE_LIMIT = os.getenv("BULK_IMPORT_RATE_LIMIT", "10 per minute")

    # ── Case operations ──────────────────────────────────────────────────
    BULK_DELETE_MAX_IDS = _int_env("BULK_DELETE_MAX_IDS", 1000)
    CONVERSION_UPDATE_RETRIES = _int_env("CONVERSION_UPDATE_RETRIES", 3)
    ATTACHMENT_MAX_BYTES = _int_env("ATTACHMENT_MAX_BYTES", 50 * 1024 * 1024)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)
    if SQLALCHEMY_DATABASE_URI == _SQLITE_DEV:
        SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "casedesk-test-secret-key-with-32-bytes!"
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Requires DATABASE_URL and SECRET_KEY. Set CORS_ORIGINS; when empty every origin is allowed."""

    SQLALCHEMY_DATABASE_URI = _database_url(None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
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
