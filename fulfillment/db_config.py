"""Database URI and engine options per deployment environment."""
import os

ENVIRONMENT_ALIASES = {
    "local": "local", "development": "local", "dev": "local",
    "sandbox": "sandbox", "staging": "sandbox", "stage": "sandbox",
    "production": "production", "prod": "production",
    "testing": "testing", "test": "testing",
}

# Checked in order; the first one set wins
DATABASE_URL_VARS = {
    "local": ("LOCAL_DATABASE_URL",),
    "sandbox": ("SANDBOX_DATABASE_URL",),
    "production": ("PRODUCTION_DATABASE_URL", "DATABASE_URL"),
    "testing": ("TEST_DATABASE_URL",),
}

SQLITE_DEFAULTS = {
    "local": "sqlite:///fulfillment.sqlite",
    "testing": "sqlite:///:memory:",
}


def resolve_environment(environment=None):
    """Canonical environment name; unknown names fall back to local."""
    if environment is None:
        environment = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    return ENVIRONMENT_ALIASES.get(environment.lower(), "local")


def postgres_engine_options(statement_timeout_ms=30000):
    """
    Pool settings for hosted PostgreSQL.

    The pool is shared by webhook workers and the sweep scheduler threads, so
    it is sized for the scheduler's thread pool plus request concurrency.
    """
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "connect_args": {
            "sslmode": "require",
            "connect_timeout": 10,
            "application_name": "fulfillment_engine",
            "options": f"-c statement_timeout={statement_timeout_ms}",
        },
    }


def normalize_database_url(url):
    """Rewrite the legacy postgres:// scheme, which SQLAlchemy no longer accepts."""
    if url and url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def get_database_config(environment=None):
    """
    Returns:
        tuple: (database_uri, engine_options or None)

    Raises:
        ValueError: a hosted environment has no database URL configured
    """
    environment = resolve_environment(environment)
    url_vars = DATABASE_URL_VARS[environment]
    url = next((os.environ[var] for var in url_vars if os.environ.get(var)), None)

    if url is None:
        if environment not in SQLITE_DEFAULTS:
            raise ValueError(f"{' or '.join(url_vars)} must be set for the {environment} environment")
        url = SQLITE_DEFAULTS[environment]

    url = normalize_database_url(url)
    hosted = environment in ("sandbox", "production")
    engine_options = postgres_engine_options() if hosted and url.startswith("postgresql") else None
    return url, engine_options


def configure_database(app, environment=None):
    """Set the SQLAlchemy settings on the Flask app for its environment."""
    database_uri, engine_options = get_database_config(environment or app.config.get("ENV"))

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config.setdefault("SQLALCHEMY_ECHO", False)
    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
