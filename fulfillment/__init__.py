import atexit
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from sqlalchemy.engine import make_url
from werkzeug.exceptions import HTTPException
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor

from fulfillment.logging_config import configure_logging, get_logger, is_configured
from fulfillment.models import db

logger = get_logger(__name__)


def init_services(app):
    """Build the engine services once per app and store them on app.extensions."""
    from fulfillment.prodigi.client import ProdigiClient
    from fulfillment.retry.backoff import RetryConfig
    from fulfillment.services.executors import ExecutorRegistry
    from fulfillment.services.health_service import HealthService
    from fulfillment.services.order_materializer import OrderMaterializer
    from fulfillment.services.payment_events import PaymentEventHandler
    from fulfillment.services.retry_service import RetryService

    registry = ExecutorRegistry(
        client_factories={"prodigi": lambda: ProdigiClient.from_config(app.config)},
        image_base_url=app.config.get("PUBLIC_IMAGE_BASE_URL", ""),
    )
    retry_service = RetryService(RetryConfig.from_app_config(app.config), registry)
    materializer = OrderMaterializer(retry_service, default_provider=app.config.get("DEFAULT_PROVIDER", "prodigi"))

    services = {
        "registry": registry,
        "retry_service": retry_service,
        "materializer": materializer,
        "payment_events": PaymentEventHandler(materializer, retry_service),
        "health_service": HealthService(retry_service, app.config),
    }
    app.extensions["fulfillment"] = services
    return services



def _is_scheduler_process():
    # The reloader parent and extra gunicorn workers must not sweep too
    return os.environ.get("WERKZEUG_RUN_MAIN") == "true" or bool(os.environ.get("IS_SCHEDULER"))


def init_scheduler(app):
    """Run the batch sweeper on an interval in this process."""
    if not _is_scheduler_process():
        logger.info("Skipping sweep scheduler on this worker", pid=os.getpid())
        return None

    retry_service = app.extensions["fulfillment"]["retry_service"]
    batch_size = app.config.get("SWEEP_BATCH_SIZE", 100)
    interval = app.config.get("SWEEP_INTERVAL_SECONDS", 60)

    def sweep_job():
        with app.app_context():
            try:
                retry_service.sweep(limit=batch_size)
            except Exception as e:
                logger.error("Scheduled sweep failed", error=str(e), exc_info=True)

    scheduler = BackgroundScheduler(executors={"default": ThreadPoolExecutor(3)})
    # One sweep at a time; missed runs collapse into the next one
    scheduler.add_job(
        func=sweep_job,
        trigger="interval",
        seconds=interval,
        id="retry_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Sweep scheduler started", interval_seconds=interval, batch_size=batch_size)
    return scheduler


def _cors_origins(value):
    if not value or value == "*":
        return "*"
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def create_app(config_class=None):
    from fulfillment.config import get_config
    from fulfillment.db_config import configure_database

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    if not is_configured():
        configure_logging(
            log_level=app.config.get("LOG_LEVEL", "INFO"),
            log_file=app.config.get("LOG_FILE"),
            json_logs=app.config.get("LOG_JSON", True),
        )

    configure_database(app)
    logger.info(
        "Starting fulfillment engine",
        environment=config_class.ENV,
        database=make_url(app.config["SQLALCHEMY_DATABASE_URI"]).get_backend_name(),
    )

    # Webhooks are server-to-server; only the operator endpoints need CORS
    CORS(app,
         resources={r"/admin/*": {"origins": _cors_origins(app.config.get("CORS_ORIGINS"))}},
         allow_headers=["Content-Type", "X-Admin-Token", "X-Admin-Actor"],
         methods=["GET", "POST", "OPTIONS"])

    db.init_app(app)
    init_services(app)

    from fulfillment.webhooks import webhooks_bp
    from fulfillment.admin import admin_bp

    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")
    app.register_blueprint(admin_bp, url_prefix="/admin")

    @app.route("/health")
    def liveness():
        return jsonify({"status": "ok"}), 200

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({"error": e.name, "message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_exception(e):
        db.session.rollback()
        logger.error("Unhandled exception", path=request.path, error=str(e), exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    if app.config.get("SCHEDULER_ENABLED"):
        try:
            init_scheduler(app)
        except Exception as e:
            logger.error("Failed to start sweep scheduler", error=str(e), exc_info=True)

    return app
