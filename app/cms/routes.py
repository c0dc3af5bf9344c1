from flask import Blueprint, render_template

from app.cms.db import db_session
from app.cms.tenancy import current_tenant_site

bp = Blueprint("public", __name__)


@bp.get("/")
def index():
    from app.cms.access import can_view, current_viewer
    from app.cms.modules.content.models import Content
    from app.cms.modules.content.service import content_query

    s = db_session()
    viewer = current_viewer()
    posts = [
        c
        for c in content_query(s, type_slug="post", status="published").order_by(Content.published_at.desc()).limit(20).all()
        if can_view(viewer, c.access_level, [c.required_mag_id] if c.required_mag_id else [])
    ]
    return render_template("public/index.html", site=current_tenant_site(s), posts=posts)


@bp.get("/coming-soon")
def coming_soon():
    from app.cms.models import CodeSnippet

    s = db_session()
    site = current_tenant_site(s)
    snippet = s.get(CodeSnippet, site.coming_soon_snippet_id) if site and site.coming_soon_snippet_id else None
    return render_template("public/coming_soon.html", site=site, snippet=snippet)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load balancers. No DB access, minimal overhead.
    """
    return "ok", 200
