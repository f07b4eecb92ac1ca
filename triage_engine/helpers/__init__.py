# triage_engine/helpers/__init__.py
"""Shared helper modules.

coercion is used by the pure core; database (SQLAlchemy) is imported
explicitly by services and tasks only.
"""

from .coercion import ensure_boolean, ensure_mapping, ensure_number, ensure_string, parse_timestamp

__all__ = [
    "ensure_boolean",
    "ensure_mapping",
    "ensure_number",
    "ensure_string",
    "parse_timestamp",
]
