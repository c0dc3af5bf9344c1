from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from app.cms.audit import record_event
from app.cms.db import db_session
from app.cms.models import User
from app.cms.security import validate_password
from app.cms.utils import json_body, json_error

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


def authenticate(email: str, password: str) -> User | None:
    """Check credentials and audit the attempt. Caller commits."""
    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        return None
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    return user


def _start_session(user: User, ip: str) -> None:
    session.clear()
    session["user_id"] = user.id
    _login_attempts[ip].clear()


@bp.get("/auth/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/auth/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    user = authenticate(email, password)
    s.commit()
    if not user:
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    _start_session(user, ip)
    # Optional "next" redirect (only allow local paths to avoid open redirects).
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    if user.is_member:
        return redirect(url_for("public.index"))
    return redirect(url_for("dashboard.dashboard"))


@bp.post("/api/auth/login")
def api_login():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")
    ip = request.remote_addr or "unknown"
    if not email or not password:
        return json_error("Email and password are required", 400)
    if _check_rate_limit(ip):
        return json_error("Too many login attempts. Please wait 5 minutes.", 429)
    _record_attempt(ip)

    s = db_session()
    user = authenticate(email, password)
    s.commit()
    if not user:
        return json_error("Invalid credentials", 401)
    _start_session(user, ip)
    return jsonify({"success": True, "user": {"id": user.id, "email": user.email, "type": user.user_type}})


@bp.post("/api/auth/signup")
def api_signup():
    """Member self-signup; the new account is synced into the tenant CRM."""
    from app.cms.modules.automations import on_member_signup

    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    email = str(body.get("email") or "").strip().lower()
    password = str(body.get("password") or "")
    display_name = str(body.get("display_name") or "").strip() or None
    if not email or "@" not in email:
        return json_error("A valid email is required", 400)
    pw_error = validate_password(password, email=email)
    if pw_error:
        return json_error(pw_error, 400)

    s = db_session()
    if s.query(User.id).filter(User.email == email).first():
        return json_error("An account with this email already exists", 409)

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        user_type="member",
        display_name=display_name,
        is_active=True,
    )
    s.add(user)
    s.flush()
    result = on_member_signup(s, user)
    if result.error:
        s.rollback()
        current_app.logger.error("Member signup CRM sync failed for %s: %s", email, result.error)
        return json_error("Failed to create member", 500)
    record_event(s, actor=user, action="auth.signup", entity_type="User", entity_id=str(user.id))
    s.commit()

    session.clear()
    session["user_id"] = user.id
    return jsonify({"success": True, "user_id": user.id, "contact_id": result.contact.id if result.contact else None}), 201


@bp.get("/auth/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("public.index"))


@bp.get("/api/admin/me/context")
def api_me_context():
    """Who is signed in, their role on this site and the features it grants."""
    from app.cms.rbac import current_effective_features, resolve_role
    from app.cms.tenancy import current_tenant_site

    user = getattr(g, "current_user", None)
    if not user:
        return json_error("Unauthorized", 401)
    s = db_session()
    site = current_tenant_site(s)
    return jsonify(
        {
            "user": {"id": user.id, "email": user.email, "display_name": user.display_name, "type": user.user_type},
            "role": resolve_role(s, user, site),
            "features": current_effective_features(),
            "tenant_site_id": site.id if site else None,
            "is_superadmin": user.is_superadmin,
        }
    )
