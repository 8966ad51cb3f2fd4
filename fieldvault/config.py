from __future__ import annotations

import json
import logging
from functools import lru_cache
from pathlib import Path

from pydantic import TypeAdapter, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fieldvault.models.field_spec import FieldSpec


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # "base64:<key>", 64 hex chars, or a passphrase stretched with Argon2id
    encryption_key: str = ""
    # Must never change once digests exist; rotating it breaks exact-match lookup
    hash_salt: str = ""

    @model_validator(mode="after")
    def _check_secrets(self) -> Settings:
        self.encryption_key = self.encryption_key.strip()
        if not self.encryption_key:
            raise ValueError(
                "ENCRYPTION_KEY is not set. Without it encrypted columns are "
                "unrecoverable; set ENCRYPTION_KEY in .env before running a backfill."
            )
        if not self.hash_salt:
            raise ValueError(
                "HASH_SALT is not set. Exact-match lookup needs the same salt "
                "for every record, forever; set HASH_SALT in .env."
            )
        return self

    db_url: str = "sqlite:///fieldvault.db"
    primary_key: str = "id"
    default_chunk_size: int = 1000
    # Meilisearch (external partial-match index)
    meilisearch_enabled: bool = True
    meilisearch_url: str = "http://localhost:7700"
    meilisearch_key: str = ""
    meilisearch_index_prefix: str = "encrypted_"
    search_timeout_seconds: float = 5.0
    search_sync_workers: int = 4
    # JSON file: {"<table>": [{"name": "email", "searchable": true}, ...]}
    field_config_path: Path | None = None
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


_FIELD_CONFIG_ADAPTER = TypeAdapter(dict[str, list[FieldSpec]])


def load_field_config(path: Path) -> dict[str, list[FieldSpec]]:
    """Load the per-table field configuration.

    Field selection is declarative input to a run; it is never inferred
    from or written into application source.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return _FIELD_CONFIG_ADAPTER.validate_python(raw)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging; ``level`` defaults to LOG_LEVEL."""
    level = level or get_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
