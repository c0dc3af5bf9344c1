import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cms.models import Base, TenantSite, User
from app.cms.modules.content.service import ensure_core_types
from app.cms.rbac import ensure_system_roles
from app.cms.tenancy import is_valid_schema_name, provision_tenant_schema
from scripts._db_utils import create_script_engine, script_session


def seed_only(*, database_url: str | None = None, create_tables: bool = False) -> None:
    """
    Seed the feature registry, system roles, the superadmin account and this
    deployment's tenant site. Idempotent; does NOT overwrite an existing
    superadmin password.
    """
    admin_email = (os.environ.get("SUPERADMIN_EMAIL") or "superadmin@example.com").strip().lower()
    admin_password = os.environ.get("SUPERADMIN_PASSWORD") or "change-me"
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///cms.db").strip()
    schema = (os.environ.get("CLIENT_SCHEMA") or "").strip()
    if schema and not is_valid_schema_name(schema):
        raise RuntimeError(f"Invalid CLIENT_SCHEMA: {schema!r}")

    engine = create_script_engine(db_url)
    try:
        if create_tables:
            # Platform tables only; alembic owns them when migrations run.
            Base.metadata.create_all(bind=engine, tables=[t for t in Base.metadata.sorted_tables if t.schema is None])
        provision_tenant_schema(engine, schema or "public")
    finally:
        engine.dispose()

    with script_session(db_url, schema) as s:
        ensure_system_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                user_type="superadmin",
                display_name="Super Admin",
                is_active=True,
            )
            s.add(user)

        site_schema = schema or "public"
        site = s.query(TenantSite).filter(TenantSite.schema_name == site_schema).one_or_none()
        if not site:
            name = (os.environ.get("SITE_NAME") or site_schema).strip()
            s.add(TenantSite(name=name, slug=site_schema.replace("_", "-").lower(), schema_name=site_schema))

        ensure_core_types(s)

    print("Initialized database (seed_only).")
    print(f"Superadmin email: {admin_email}")
    print("Superadmin password: (from SUPERADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None, create_tables="--create-tables" in sys.argv[1:])


if __name__ == "__main__":
    main()
