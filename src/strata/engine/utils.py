"""Shared utility functions for the strata engine layer."""

from __future__ import annotations

import re

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Validate that a value is a safe SQL identifier.

    Only allows alphanumeric characters and underscores, starting with a letter
    or underscore. Raises ValueError if the identifier is unsafe.

    This is the single validation point for identifiers interpolated into SQL
    (node names, snapshot key columns, test columns).
    """
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r} (must match [A-Za-z_][A-Za-z0-9_]*)")
    return value


def validate_relation(value: str, label: str = "relation") -> str:
    """Validate a ``schema.name`` (or bare ``name``) relation reference."""
    for part in value.split("."):
        validate_identifier(part, label)
    return value


def quote_identifier(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'
