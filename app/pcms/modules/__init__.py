"""
Feature modules live under this package.

Each module owns its models, service functions and JSON blueprint, and reuses the
platform primitives (access policy, RBAC, audit, storage, DB session).
"""
