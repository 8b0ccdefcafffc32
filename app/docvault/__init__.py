import logging
import os
import time
from datetime import timedelta

from flask import Flask, g, request, session
from dotenv import load_dotenv

# Models first: module tables register on Base.metadata at import time.
from app.docvault import models  # noqa: F401
from app.docvault.config import load_config
from app.docvault.db import init_db, teardown_db_session
from app.docvault.routes import bp as routes_bp
from app.docvault.auth import bp as auth_bp, load_current_user
from app.docvault.modules.documents.api import bp as documents_bp
from app.docvault.modules.documents.custody import EXTENSION_KEY, custody_from_app
from app.docvault.security import ensure_csrf_token, validate_csrf


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("app.docvault").setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    @app.before_request
    def _csrf_guard():
        g.request_started = time.perf_counter()
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow auth endpoints to pass through (register/login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return {"error": "CSRF token missing or invalid."}, 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Master key problems are fatal here, never per request.
    custody = custody_from_app(app)
    app.extensions[EXTENSION_KEY] = custody

    # Content store / ledger config checks (log loudly, do not block boot)
    if app.config.get("CONTENT_STORE_BACKEND") == "pinata":
        missing = [k for k in ("PINATA_JWT", "PINATA_GATEWAY") if not app.config.get(k)]
        if missing:
            app.logger.error("CONTENT STORE CONFIG ERROR: Missing required Pinata env vars: %s", ", ".join(missing))
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            k
            for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(k)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
    ledger_missing = [
        k for k in ("LEDGER_RPC_URL", "LEDGER_PRIVATE_KEY", "LEDGER_CONTRACT_ADDRESS") if not app.config.get(k)
    ]
    if ledger_missing:
        app.logger.warning(
            "Ledger configuration incomplete; document commits will fail. Missing: %s", ", ".join(ledger_missing)
        )
    elif (os.environ.get("LEDGER_CHECK_ON_START") or "").strip() == "1":
        from app.docvault.ledger import LedgerError

        try:
            info = custody.ledger.check_connection()
            app.logger.info(
                "Ledger connection OK (chain=%s, documents=%s)", info["chain_id"], info["document_counter"]
            )
        except LedgerError as e:
            app.logger.error("LEDGER CONFIG ERROR: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/documents")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.after_request
    def _log_request(response):
        started = getattr(g, "request_started", None)
        duration_ms = (time.perf_counter() - started) * 1000 if started else 0.0
        msg = "%s %s %s %.0fms (request_id=%s)"
        args = (request.method, request.full_path.rstrip("?"), response.status_code, duration_ms, getattr(g, "request_id", None))
        if response.status_code >= 500:
            app.logger.error(msg, *args)
        elif response.status_code >= 400:
            app.logger.warning(msg, *args)
        else:
            app.logger.info(msg, *args)
        return response

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return {"error": "Internal Server Error"}, 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return {"error": "Not found"}, 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return {"error": "File too large."}, 413

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
