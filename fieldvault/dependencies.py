"""Wiring of services from Settings, for whatever front end drives a run."""

from __future__ import annotations

from typing import Any

from fieldvault.config import Settings, get_settings, load_field_config
from fieldvault.db import create_db_engine
from fieldvault.models.backfill import BackfillRequest
from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.backfill import BackfillPipeline
from fieldvault.services.envelope import EnvelopeCodec, parse_key
from fieldvault.services.hashing import HashIndex
from fieldvault.services.query import QueryResolver
from fieldvault.services.repository import SqlRepository
from fieldvault.services.search_index import MeilisearchIndex
from fieldvault.services.transform import FieldTransformer


def get_codec(settings: Settings | None = None) -> EnvelopeCodec:
    settings = settings or get_settings()
    return EnvelopeCodec(parse_key(settings.encryption_key, settings.hash_salt.encode("utf-8")))


def get_hash_index(settings: Settings | None = None) -> HashIndex:
    settings = settings or get_settings()
    return HashIndex(settings.hash_salt)


def get_transformer(settings: Settings | None = None) -> FieldTransformer:
    settings = settings or get_settings()
    return FieldTransformer(get_codec(settings), get_hash_index(settings))


def get_repository(settings: Settings | None = None) -> SqlRepository:
    settings = settings or get_settings()
    return SqlRepository(create_db_engine(settings.db_url), primary_key=settings.primary_key)


def get_search_index(settings: Settings | None = None) -> MeilisearchIndex:
    return MeilisearchIndex.from_settings(settings or get_settings())


def get_backfill_pipeline(
    settings: Settings | None = None,
    workers: int = 1,
) -> BackfillPipeline:
    settings = settings or get_settings()
    return BackfillPipeline(
        repository=get_repository(settings),
        transformer=get_transformer(settings),
        search_index=get_search_index(settings),
        workers=workers,
        sync_workers=settings.search_sync_workers,
    )


def get_query_resolver(settings: Settings | None = None) -> QueryResolver:
    settings = settings or get_settings()
    return QueryResolver(
        repository=get_repository(settings),
        hash_index=get_hash_index(settings),
        search_index=get_search_index(settings),
    )


def get_field_config(settings: Settings | None = None) -> dict[str, list[FieldSpec]]:
    settings = settings or get_settings()
    if settings.field_config_path is None:
        raise ValueError("FIELD_CONFIG_PATH is not set; it names the JSON field configuration.")
    return load_field_config(settings.field_config_path)


def get_backfill_request(
    table: str,
    settings: Settings | None = None,
    **options: Any,
) -> BackfillRequest:
    """BackfillRequest for ``table`` with its configured fields.

    ``chunk_size`` defaults to DEFAULT_CHUNK_SIZE; other ``options``
    (dry_run, backup, ...) pass straight through.
    """
    settings = settings or get_settings()
    config = get_field_config(settings)
    if table not in config:
        raise ValueError(f"No fields configured for table {table!r}")
    options.setdefault("chunk_size", settings.default_chunk_size)
    return BackfillRequest(table=table, fields=config[table], **options)
