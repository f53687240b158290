"""
Compliance Journey Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'journey_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _thresholds(raw):
    return tuple(sorted(int(x) for x in raw.split(",") if x.strip()))


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Compliance journey engine ────────────────────────────────────────
    # sql    → SqlJourneyRepository on db.session (durable)
    # memory → InMemoryJourneyRepository (process-local, for demos/tests)
    JOURNEY_REPOSITORY = os.getenv("JOURNEY_REPOSITORY", "sql")
    JOURNEY_MILESTONE_THRESHOLDS = _thresholds(os.getenv("JOURNEY_MILESTONE_THRESHOLDS", "25,50,75,100"))
    JOURNEY_WRITE_MAX_RETRIES = int(os.getenv("JOURNEY_WRITE_MAX_RETRIES", "3"))
    JOURNEY_WRITE_RETRY_BACKOFF = float(os.getenv("JOURNEY_WRITE_RETRY_BACKOFF", "0.05"))
    JOURNEY_UPCOMING_DEADLINE_DAYS = int(os.getenv("JOURNEY_UPCOMING_DEADLINE_DAYS", "7"))
    JOURNEY_VELOCITY_WINDOW_DAYS = int(os.getenv("JOURNEY_VELOCITY_WINDOW_DAYS", "7"))
    JOURNEY_SNAPSHOT_ON_COMPLETION = os.getenv("JOURNEY_SNAPSHOT_ON_COMPLETION", "true").lower() == "true"


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite uses a static pool; pool sizing options don't apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    JOURNEY_WRITE_RETRY_BACKOFF = 0.0


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
