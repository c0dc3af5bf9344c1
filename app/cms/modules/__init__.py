"""
Feature modules live under this package.

Each module owns its tenant-scoped models, service functions and blueprints,
and reuses the platform primitives (auth, RBAC, audit, storage, DB session).
"""
