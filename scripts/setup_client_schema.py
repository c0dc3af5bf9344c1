#!/usr/bin/env python3
"""Create a tenant schema and its tables (idempotent).

Usage:
  python scripts/setup_client_schema.py --schema acme_corp
"""

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cms.tenancy import client_bucket, is_valid_schema_name, provision_tenant_schema
from scripts._db_utils import create_script_engine


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--schema", required=True, help="Tenant schema name (letters, numbers, underscores)")
    args = parser.parse_args()

    if not is_valid_schema_name(args.schema):
        print(f"Invalid schema name: {args.schema!r}. Use letters, numbers and underscores only.")
        sys.exit(1)

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///cms.db").strip()
    engine = create_script_engine(db_url)
    try:
        provision_tenant_schema(engine, args.schema)
    finally:
        engine.dispose()
    print(f"Schema ready: {args.schema}")
    print(f"Storage bucket/prefix: {client_bucket(args.schema)}")
    print(f"Set CLIENT_SCHEMA={args.schema} for the deployment that serves this tenant.")


if __name__ == "__main__":
    main()
