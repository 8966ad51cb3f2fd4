"""Suggest which columns of a table look like they hold personal data.

Output is advisory: it is meant to be reviewed and copied into the field
configuration, never applied automatically.
"""
from __future__ import annotations

import re
from collections.abc import Iterable

from fieldvault.models.field_spec import FieldSpec

SENSITIVE_PATTERNS = (
    "email",
    "phone",
    "mobile",
    "telephone",
    "ssn",
    "social_security",
    "tax_id",
    "credit_card",
    "card_number",
    "passport",
    "driver_license",
)

_EXACT_NAMES_RE = re.compile(r"^(e_mail|mail|tel|contact_number)$", re.IGNORECASE)
_SIBLING_SUFFIXES = ("_hash", "_backup")


def is_sensitive_column(name: str) -> bool:
    lowered = name.lower()
    if lowered.endswith(_SIBLING_SUFFIXES):
        return False
    if any(pattern in lowered for pattern in SENSITIVE_PATTERNS):
        return True
    return bool(_EXACT_NAMES_RE.match(name))


def suggest_sensitive_columns(columns: Iterable[str]) -> list[str]:
    return [c for c in columns if is_sensitive_column(c)]


def suggest_field_specs(columns: Iterable[str]) -> list[FieldSpec]:
    """FieldSpecs for the sensitive columns; searchable where a hash column exists."""
    available = list(columns)
    return [
        FieldSpec(name=c, searchable=f"{c}_hash" in available)
        for c in suggest_sensitive_columns(available)
    ]
