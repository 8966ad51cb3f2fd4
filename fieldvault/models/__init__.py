from __future__ import annotations

from fieldvault.models.field_spec import FieldSpec, UnsafeIdentifier, validate_identifier  # noqa: F401
from fieldvault.models.backfill import BackfillRequest  # noqa: F401
