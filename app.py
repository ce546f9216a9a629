import os
import uuid
import logging
from logging.handlers import RotatingFileHandler
from time import time

from flask import Flask, request, current_app, g, jsonify
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
from models.base import init_engine_and_session, Base
from controllers.auth import login_manager
from controllers.billing import billing_bp
from controllers.payments import payments_bp
from controllers.webhooks import webhooks_bp
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY
from services.notifications import install_notifier
from services.payments.errors import Internal, PaymentError
from services.payments.registry import install_gateways
from sqlalchemy import text

# gateway keys and API tokens live in .env during development
load_dotenv()

# config keys copied verbatim from the environment
_ENV_KEYS = (
    "API_TOKENS", "APP_TIMEZONE", "PAYMENT_CURRENCY", "GATEWAY_TIMEOUT_SEC",
    "MIDTRANS_SERVER_KEY", "MIDTRANS_IS_PRODUCTION",
    "STRIPE_API_KEY", "STRIPE_WEBHOOK_SECRET",
    "NOTIFY_CHANNEL", "WHATSAPP_PHONE_NUMBER_ID", "WHATSAPP_ACCESS_TOKEN", "WHATSAPP_API_URL",
    "ORPHAN_TTL_HOURS",
)


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _setup_logging() -> None:
    # default on in containers
    log_to_stdout = os.getenv("LOG_TO_STDOUT", "1") == "1"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    if log_to_stdout:
        handler = logging.StreamHandler()
    else:
        log_dir = os.path.join(os.path.dirname(__file__), "log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            # read-only filesystem: fall back to stdout
            handler = logging.StreamHandler()

    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    # ---- Base config from environment (no hardcoded secrets) ----
    APP_ENV = os.getenv("APP_ENV", "development").lower()

    secret_key = os.getenv("FLASK_SECRET_KEY")
    if not secret_key and APP_ENV == "production":
        raise RuntimeError("FLASK_SECRET_KEY must be set in production (.env)")
    if not secret_key:
        secret_key = os.urandom(32)  # dev-only fallback

    if APP_ENV == "production" and not os.getenv("AUDIT_HMAC_SECRET"):
        raise RuntimeError("AUDIT_HMAC_SECRET must be set in production (.env)")

    app.config.from_mapping(
        SECRET_KEY=secret_key,
        APP_ENV=APP_ENV,
        APP_TIMEZONE="Asia/Jakarta",
        PAYMENT_CURRENCY="IDR",
        GATEWAY_TIMEOUT_SEC=5,
        NOTIFY_CHANNEL="log",
        ORPHAN_TTL_HOURS=24,
        METRICS_ENABLED=_env_bool("METRICS_ENABLED", True),
    )
    app.config.from_mapping({k: os.environ[k] for k in _ENV_KEYS if os.getenv(k)})
    if test_config:
        app.config.update(test_config)

    # ---- Logging ----
    _setup_logging()
    app.logger.setLevel(logging.INFO)

    # ---- DB init ----
    engine, _Session = init_engine_and_session()
    if os.getenv("AUTO_CREATE_SCHEMA", "1") in ("1", "true", "yes", "on"):
        Base.metadata.create_all(engine, checkfirst=True)

    # ---- Collaborators (adapters + notifier), built once ----
    install_gateways(app, app.config.get("PAYMENT_GATEWAYS"))
    install_notifier(app, app.config.get("NOTIFIER"))

    login_manager.init_app(app)

    # ---- Blueprints ----
    app.register_blueprint(payments_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)

    # Prometheus
    if app.config["METRICS_ENABLED"]:
        init_metrics(app)

    # ---- Errors ----

    @app.errorhandler(PaymentError)
    def payment_error(e: PaymentError):
        if isinstance(e, Internal):
            app.logger.error("%s %s -> %s", request.method, request.path, e.message,
                             exc_info=e)
        else:
            app.logger.warning("%s %s -> %s %s %s", request.method, request.path,
                               e.http_status, e.message, e.context or "")
        return jsonify({"error": e.message}), e.http_status

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        app.logger.warning("%s %s %s", e.code, request.method, request.path)
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def unhandled(e: Exception):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal error"}), 500

    # ---- Routes ----
    @app.before_request
    def _start_timer():
        g._t0 = time()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _log_request(resp):
        try:
            ms = (time() - getattr(g, "_t0", time())) * 1000
            app.logger.info("%s %s %s %s %.1fms",
                            request.remote_addr, request.method, request.full_path, resp.status_code, ms)
            resp.headers["X-Request-ID"] = getattr(g, "request_id", "")

            # --- Skip self-scrapes to keep series clean ---
            ep = request.endpoint or ""
            path = request.path or ""
            if path.startswith("/metrics"):
                return resp

            endpoint = ep.replace(".", "_") or "unknown"
            method = request.method
            status = str(resp.status_code)

            REQUEST_COUNT.labels(
                method=method, endpoint=endpoint, status=status).inc()
            REQUEST_LATENCY.labels(
                endpoint=endpoint, method=method).observe(ms / 1000.0)
        except Exception:
            app.logger.exception("Failed to log request")
        return resp

    @app.get("/healthz")
    def healthz():
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # database reachable and adapters wired
        try:
            engine, _ = init_engine_and_session()
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ok", gateways=sorted(
                m.value for m in app.extensions["payment_gateways"])), 200
        except Exception as e:
            current_app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=(
        app.config["APP_ENV"] != "production"))
