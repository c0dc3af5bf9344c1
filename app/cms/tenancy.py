"""
Schema-per-tenant helpers.

Tenant-owned tables are declared with ``schema=TENANT_SCHEMA``. At runtime the
engine's ``schema_translate_map`` rewrites that placeholder to the real schema
name of the tenant this deployment serves (``CLIENT_SCHEMA``). Platform tables
(users, tenant sites, roles, features, audit) carry no schema and live in the
database default schema.
"""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.engine import Engine

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import TenantSite

logger = logging.getLogger(__name__)

TENANT_SCHEMA = "tenant"

_SCHEMA_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")


def is_valid_schema_name(name: str | None) -> bool:
    return bool(name) and bool(_SCHEMA_NAME_RE.match(name or ""))


def client_bucket(schema: str | None) -> str:
    """Storage bucket/prefix for a tenant: ``client-{schema}``."""
    return f"client-{schema or 'default'}"


def tenant_engine(engine: Engine, schema: str | None) -> Engine:
    if schema is not None and not is_valid_schema_name(schema):
        raise ValueError(f"Invalid schema name: {schema!r}")
    return engine.execution_options(schema_translate_map={TENANT_SCHEMA: schema})


def tenant_tables():
    from app.cms.models import Base

    return [t for t in Base.metadata.sorted_tables if t.schema == TENANT_SCHEMA]


def provision_tenant_schema(engine: Engine, schema: str) -> None:
    """Create the schema (Postgres) and every tenant table inside it. Idempotent."""
    if not is_valid_schema_name(schema):
        raise ValueError(f"Invalid schema name: {schema!r}")
    from app.cms.models import Base

    if engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
        target = tenant_engine(engine, schema)
    else:
        # SQLite has no schemas; tenant tables land in the main database.
        target = tenant_engine(engine, None)
    Base.metadata.create_all(bind=target, tables=tenant_tables())
    logger.info("Provisioned tenant schema %s (%s)", schema, engine.dialect.name)


def current_tenant_site(s: "Session") -> "TenantSite | None":
    """The tenant_sites row matching this deployment's schema (cached on ``g`` per request)."""
    from flask import current_app, g, has_request_context

    from app.cms.models import TenantSite

    if has_request_context() and hasattr(g, "tenant_site"):
        return g.tenant_site
    schema = (current_app.config.get("CLIENT_SCHEMA") or "").strip() or "public"
    site = s.query(TenantSite).filter(TenantSite.schema_name == schema).one_or_none()
    if has_request_context():
        g.tenant_site = site
    return site
