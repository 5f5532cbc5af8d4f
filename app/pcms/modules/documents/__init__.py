"""
Shared documents with role/attribute access control and append-only versions.
"""
