import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, redirect, render_template, request, session, url_for
from dotenv import load_dotenv
from werkzeug.middleware.proxy_fix import ProxyFix

from app.cms.config import load_config
from app.cms.db import init_db, teardown_db_session
from app.cms.routes import bp as routes_bp
from app.cms.auth import bp as auth_bp, load_current_user
from app.cms.modules.content.admin import bp as content_bp
from app.cms.modules.content.public import bp as content_public_bp
from app.cms.modules.crm.admin import bp as crm_bp
from app.cms.modules.dashboard.admin import bp as dashboard_bp
from app.cms.modules.events.admin import bp as events_bp
from app.cms.modules.events.public import bp as events_public_bp
from app.cms.modules.forms.admin import bp as forms_bp
from app.cms.modules.forms.public import bp as forms_public_bp
from app.cms.modules.media.admin import bp as media_bp
from app.cms.modules.media.public import bp as media_public_bp
from app.cms.modules.memberships.admin import bp as memberships_bp
from app.cms.modules.profiles.admin import bp as profiles_bp
from app.cms.modules.settings.admin import bp as settings_bp
from app.cms.modules.superadmin.admin import bp as superadmin_bp
from app.cms.tenancy import is_valid_schema_name

logger = logging.getLogger(__name__)

# Endpoints that accept unauthenticated writes without a session CSRF token.
_CSRF_EXEMPT_ENDPOINTS = ("forms_public.submit",)
_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")
# Paths that stay reachable while the site is in coming-soon mode.
_COMING_SOON_OPEN_PREFIXES = ("/admin", "/api/", "/auth/", "/coming-soon", "/media/") + _UNGUARDED_PREFIXES


def _wants_json() -> bool:
    return request.path.startswith("/api/")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.cms.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_features() -> dict:
        from app.cms.rbac import user_has_feature

        def has_feature(slug: str) -> bool:
            return user_has_feature(getattr(g, "current_user", None), slug)

        return {"has_feature": has_feature}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            endpoint = request.endpoint or ""
            if endpoint.startswith("auth.") or endpoint in _CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                if _wants_json():
                    return jsonify({"error": "CSRF token missing or invalid."}), 400
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    schema = app.config.get("CLIENT_SCHEMA") or ""
    if schema and not is_valid_schema_name(schema):
        raise RuntimeError(f"CLIENT_SCHEMA {schema!r} is invalid; use letters, numbers and underscores only.")

    hops = int(app.config.get("TRUST_PROXY_HOPS") or 0)
    if hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_base_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(crm_bp)
    app.register_blueprint(forms_bp)
    app.register_blueprint(forms_public_bp)
    app.register_blueprint(memberships_bp)
    app.register_blueprint(profiles_bp)
    app.register_blueprint(content_bp)
    app.register_blueprint(content_public_bp)
    app.register_blueprint(media_bp)
    app.register_blueprint(media_public_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(events_public_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(superadmin_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.before_request
    def _coming_soon_guard():
        if request.method != "GET" or request.path.startswith(_COMING_SOON_OPEN_PREFIXES):
            return None
        user = getattr(g, "current_user", None)
        if user is not None and not user.is_member:
            return None
        from app.cms.db import db_session
        from app.cms.tenancy import current_tenant_site

        site = current_tenant_site(db_session())
        if site is not None and site.site_mode == "coming_soon":
            return redirect(url_for("public.coming_soon"))
        return None

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "Bad request"}), 400
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_feature=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Forbidden"}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "Not found"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "File too large. Maximum size is 25MB."}), 413
        from flask import flash

        flash("File too large. Maximum size is 25MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("dashboard.dashboard")), 302

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Internal server error"}), 500
        return render_template("errors/500.html"), 500

    logger.info("create_app() complete; app ready to serve")
    return app
