import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request, session
from werkzeug.exceptions import HTTPException

from app.pcms.auth import bp as auth_bp, load_current_user
from app.pcms.config import load_config
from app.pcms.db import init_db, teardown_db_session
from app.pcms.errors import PcmsError
from app.pcms.modules.cases.admin import bp as cases_bp
from app.pcms.modules.cases.service import collaborators_from_config
from app.pcms.modules.documents.admin import bp as documents_bp
from app.pcms.modules.notifications.admin import bp as notifications_bp
from app.pcms.routes import bp as routes_bp

logger = logging.getLogger(__name__)


def _error_response(status: int, code: str, message: str) -> tuple[dict, int]:
    return {"error": {"code": code, "type": "HTTPError", "message": message, "details": {}}}, status


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.pcms.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        ensure_csrf_token()
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout establish or drop the session itself
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return _error_response(400, "CSRF_FAILED", "CSRF token missing or invalid.")
        return None

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("CSRF_ENABLED"):
            app.logger.warning("CSRF_ENABLED=0 in production; cookie-session clients are unprotected.")

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    if not app.config.get("SMTP_HOST"):
        app.logger.info("SMTP_HOST not set; notification emails are disabled.")

    # Collaborators shared by the blueprints; tests may replace these entries.
    collaborators = collaborators_from_config(app.config)
    app.extensions["pcms_notification_dispatcher"] = collaborators.dispatcher
    app.extensions["pcms_case_collaborators"] = collaborators

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(cases_bp, url_prefix="/api/cases")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(PcmsError)
    def _err_pcms(e: PcmsError):
        if e.status_code >= 500:
            app.logger.exception("Unhandled platform error (request_id=%s)", getattr(g, "request_id", None))
        return e.to_dict(), e.status_code

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):
        if e.code == 413:
            return _error_response(413, "PAYLOAD_TOO_LARGE", "File too large. Maximum size is 25MB.")
        return _error_response(e.code or 500, (e.name or "error").upper().replace(" ", "_"), e.description or "")

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _error_response(500, "INTERNAL_ERROR", "Internal server error.")

    logger.info("create_app() complete; app ready to serve")
    return app
