import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class with common settings."""
    # Stripe configuration
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # Prodigi configuration
    PRODIGI_API_KEY = os.environ.get("PRODIGI_API_KEY")
    PRODIGI_ENVIRONMENT = os.environ.get("PRODIGI_ENVIRONMENT", "sandbox")
    PRODIGI_WEBHOOK_SECRET = os.environ.get("PRODIGI_WEBHOOK_SECRET")
    PRODIGI_TIMEOUT_SECONDS = _env_float("PRODIGI_TIMEOUT_SECONDS", 20.0)
    DEFAULT_PROVIDER = os.environ.get("DEFAULT_PROVIDER", "prodigi")

    # Public storage base used to turn stored image paths into absolute URLs
    PUBLIC_IMAGE_BASE_URL = os.environ.get("PUBLIC_IMAGE_BASE_URL", "")

    # Retry engine
    RETRY_BASE_DELAY_MS = _env_int("RETRY_BASE_DELAY_MS", 1000)
    RETRY_MULTIPLIER = _env_float("RETRY_MULTIPLIER", 2.0)
    RETRY_MAX_DELAY_MS = _env_int("RETRY_MAX_DELAY_MS", 300000)
    RETRY_MAX_RETRIES = _env_int("RETRY_MAX_RETRIES", 5)
    RETRY_JITTER = _env_float("RETRY_JITTER", 0.0)
    RETRY_FAST_FAIL_PERMANENT = _env_bool("RETRY_FAST_FAIL_PERMANENT", True)
    RETRY_CLAIM_TIMEOUT_SECONDS = _env_int("RETRY_CLAIM_TIMEOUT_SECONDS", 300)

    # Sweeper
    SWEEP_INTERVAL_SECONDS = _env_int("SWEEP_INTERVAL_SECONDS", 60)
    SWEEP_BATCH_SIZE = _env_int("SWEEP_BATCH_SIZE", 100)

    # Health thresholds
    HEALTH_FAILED_CRITICAL = _env_int("HEALTH_FAILED_CRITICAL", 10)
    HEALTH_FAILED_DEGRADED = _env_int("HEALTH_FAILED_DEGRADED", 5)
    HEALTH_OVERDUE_DEGRADED = _env_int("HEALTH_OVERDUE_DEGRADED", 5)
    HEALTH_SUCCESS_RATE_CRITICAL = _env_float("HEALTH_SUCCESS_RATE_CRITICAL", 50.0)
    HEALTH_SUCCESS_RATE_DEGRADED = _env_float("HEALTH_SUCCESS_RATE_DEGRADED", 80.0)
    HEALTH_MIN_SAMPLE = _env_int("HEALTH_MIN_SAMPLE", 10)
    HEALTH_STUCK_ORDER_HOURS = _env_int("HEALTH_STUCK_ORDER_HOURS", 2)
    HEALTH_STUCK_PERCENT_DEGRADED = _env_float("HEALTH_STUCK_PERCENT_DEGRADED", 20.0)
    HEALTH_CANCELLED_PERCENT_DEGRADED = _env_float("HEALTH_CANCELLED_PERCENT_DEGRADED", 10.0)
    # Call the provider API from the health report
    HEALTH_PROBE_PROVIDER = _env_bool("HEALTH_PROBE_PROVIDER", True)

    # Retention for purged operations
    PURGE_COMPLETED_DAYS = _env_int("PURGE_COMPLETED_DAYS", 7)
    PURGE_FAILED_DAYS = _env_int("PURGE_FAILED_DAYS", 30)

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    # Shared token for the admin health/reconciliation endpoints
    ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")
    LOG_JSON = _env_bool("LOG_JSON", True)

    # Run the in-process sweep scheduler
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True
    LOG_JSON = _env_bool("LOG_JSON", False)


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False
    PRODIGI_ENVIRONMENT = os.environ.get("PRODIGI_ENVIRONMENT", "production")


class TestingConfig(Config):
    """Configuration for the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    SCHEDULER_ENABLED = False
    ADMIN_TOKEN = "test-admin-token"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    PRODIGI_WEBHOOK_SECRET = "prodigi-test-secret"
    PRODIGI_API_KEY = "test-key"
    HEALTH_PROBE_PROVIDER = False
    PUBLIC_IMAGE_BASE_URL = "https://cdn.example.com/images"


def get_config():
    """Config class for FLASK_ENV / ENVIRONMENT (local, sandbox, production, testing); local by default."""
    from fulfillment.db_config import resolve_environment

    return {
        "local": LocalConfig,
        "sandbox": SandboxConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
    }[resolve_environment()]
