"""BackfillRequest: invocation contract handed to the pipeline by the CLI layer."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from fieldvault.models.field_spec import FieldSpec, validate_identifier


class BackfillRequest(BaseModel):
    table: str
    fields: list[FieldSpec] = Field(min_length=1)
    chunk_size: int = Field(default=1000, gt=0)
    dry_run: bool = False
    backup: bool = False
    force: bool = False  # Only suppresses the CLI's confirmation prompt
    model_type: str | None = None  # Search document type; defaults to the table name
    sync_index: bool = True

    @field_validator("table")
    @classmethod
    def _check_table(cls, value: str) -> str:
        return validate_identifier(value)

    @field_validator("fields")
    @classmethod
    def _check_unique_fields(cls, value: list[FieldSpec]) -> list[FieldSpec]:
        names = [f.name for f in value]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate fields: {', '.join(duplicates)}")
        return value

    @property
    def document_type(self) -> str:
        return self.model_type or self.table

    @property
    def searchable_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.searchable]
