"""
Release phase for one tenant deployment.

Steps, in order:
- validate DATABASE_URL / CLIENT_SCHEMA (no SQLite in production);
- upgrade the platform tables with Alembic;
- provision the tenant schema and seed registry, system roles, superadmin and
  the deployment's tenant site (idempotent; existing passwords are kept).

Usage:
  python scripts/release.py [--skip-migrations] [--schema extra_tenant ...]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cms.tenancy import is_valid_schema_name  # noqa: E402


def _release_env() -> tuple[str, str, str]:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release a production tenant onto SQLite. Point DATABASE_URL at Postgres.")
    schema = (os.environ.get("CLIENT_SCHEMA") or "").strip()
    if schema and not is_valid_schema_name(schema):
        raise RuntimeError(f"Invalid CLIENT_SCHEMA: {schema!r}")
    return db_url, env, schema


def _upgrade_platform(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def run_release(*, skip_migrations: bool = False, extra_schemas: list[str] | None = None) -> None:
    db_url, env, schema = _release_env()
    print(f"=== release: env={env or '(unset)'} schema={schema or '(default)'} ===", flush=True)

    if skip_migrations:
        print("Skipping platform migrations.", flush=True)
    else:
        print("Upgrading platform tables...", flush=True)
        _upgrade_platform(db_url)

    from scripts import init_db
    from scripts._db_utils import create_script_engine
    from app.cms.tenancy import provision_tenant_schema

    print("Seeding registry, roles and tenant site...", flush=True)
    init_db.seed_only(database_url=db_url)

    extras = [x for x in (extra_schemas or []) if x and x != schema]
    if extras:
        engine = create_script_engine(db_url)
        try:
            for name in extras:
                if not is_valid_schema_name(name):
                    raise RuntimeError(f"Invalid schema name: {name!r}")
                provision_tenant_schema(engine, name)
                print(f"Provisioned extra tenant schema {name}.", flush=True)
        finally:
            engine.dispose()
    print("=== release done ===", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate, provision and seed a tenant deployment.")
    parser.add_argument("--skip-migrations", action="store_true", help="Do not run Alembic upgrades")
    parser.add_argument("--schema", action="append", default=[], help="Also provision this tenant schema")
    args = parser.parse_args()
    run_release(skip_migrations=args.skip_migrations, extra_schemas=args.schema)


if __name__ == "__main__":
    main()
