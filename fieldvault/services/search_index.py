"""Meilisearch synchronizer: best-effort partial-match index for encrypted fields.

Writes to the index never raise: the encrypted data is already committed
when a document is pushed, so an unreachable or misconfigured search
service only costs search freshness. Failed pushes are not retried here;
the next backfill run or record write pushes again.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any

import httpx

from fieldvault.config import Settings
from fieldvault.models.field_spec import FieldSpec

logger = logging.getLogger(__name__)

SEARCH_TOKENS_ATTRIBUTE = "search_tokens"
DEFAULT_SEARCH_LIMIT = 100

_UNSAFE_UID_CHARS_RE = re.compile(r"[^a-z0-9_-]+")


class IndexSyncFailure(Exception):
    """Raised when the search service cannot answer a query."""


def default_index_settings(fields: Sequence[FieldSpec]) -> dict[str, Any]:
    """Index settings for a table's searchable fields."""
    hash_columns = [f.hash_column for f in fields if f.searchable]
    return {
        "searchableAttributes": [SEARCH_TOKENS_ATTRIBUTE],
        "filterableAttributes": ["model_type", *hash_columns],
    }


class MeilisearchIndex:
    """Thin Meilisearch REST client with best-effort writes."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        index_prefix: str = "encrypted_",
        timeout: float = 5.0,
        enabled: bool = True,
        client: httpx.Client | None = None,
    ) -> None:
        self._index_prefix = index_prefix
        self.enabled = enabled
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> MeilisearchIndex:
        return cls(
            base_url=settings.meilisearch_url,
            api_key=settings.meilisearch_key,
            index_prefix=settings.meilisearch_index_prefix,
            timeout=settings.search_timeout_seconds,
            enabled=settings.meilisearch_enabled,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> MeilisearchIndex:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def index_name(self, model_type: str) -> str:
        """Index uid for a model type, e.g. ``encrypted_contacts``."""
        normalized = _UNSAFE_UID_CHARS_RE.sub("_", model_type.lower()).strip("_")
        return f"{self._index_prefix}{normalized}"

    def ensure_index(
        self,
        index: str,
        settings: dict[str, Any],
        force: bool = False,
    ) -> bool:
        """Create the index if it does not exist yet.

        An existing index keeps its server-side settings unless ``force`` is
        given. Returns False if the search service could not be reached.
        """
        if not self.enabled:
            return False
        try:
            resp = self._client.get(f"/indexes/{index}")
            if resp.status_code == 200 and not force:
                logger.info("Search index '%s' already exists", index)
                return True
            if resp.status_code == 404:
                create = self._client.post(
                    "/indexes", json={"uid": index, "primaryKey": "id"}
                )
                create.raise_for_status()
                logger.info("Created search index '%s'", index)
            else:
                resp.raise_for_status()
            update = self._client.patch(f"/indexes/{index}/settings", json=settings)
            update.raise_for_status()
            return True
        except httpx.HTTPError:
            logger.warning("Failed to ensure search index '%s'", index, exc_info=True)
            return False

    def push(self, index: str, document: dict[str, Any]) -> bool:
        """Add or update one document. Never raises.

        Uses the update route: attributes missing from ``document`` keep
        their indexed values.
        """
        if not self.enabled:
            return False
        try:
            resp = self._client.put(
                f"/indexes/{index}/documents",
                params={"primaryKey": "id"},
                json=[document],
            )
            resp.raise_for_status()
            return True
        except httpx.HTTPError:
            logger.warning(
                "Search indexing failed for document %s in '%s'",
                document.get("id"),
                index,
                exc_info=True,
            )
            return False

    def remove(self, index: str, doc_id: str) -> bool:
        """Delete one document. Never raises."""
        if not self.enabled:
            return False
        try:
            resp = self._client.delete(f"/indexes/{index}/documents/{doc_id}")
            resp.raise_for_status()
            return True
        except httpx.HTTPError:
            logger.warning(
                "Failed to remove document %s from '%s'", doc_id, index, exc_info=True
            )
            return False

    def search(
        self,
        index: str,
        query: str,
        attributes: Sequence[str] = (SEARCH_TOKENS_ATTRIBUTE,),
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[str]:
        """Return the ids of matching documents, best match first.

        Raises IndexSyncFailure if the service is disabled, unreachable, or
        answers with an error.
        """
        if not self.enabled:
            raise IndexSyncFailure("Search index is disabled")
        try:
            resp = self._client.post(
                f"/indexes/{index}/search",
                json={
                    "q": query.strip().lower(),
                    "attributesToSearchOn": list(attributes),
                    "limit": limit,
                },
            )
            resp.raise_for_status()
            hits = resp.json()["hits"]
            return [str(hit["id"]) for hit in hits]
        except httpx.HTTPError as exc:
            raise IndexSyncFailure(f"Search on '{index}' failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise IndexSyncFailure(f"Unexpected search response from '{index}': {exc}") from exc

    def stats(self, index: str) -> dict[str, Any]:
        """Index statistics, or an empty dict when unavailable."""
        if not self.enabled:
            return {}
        try:
            resp = self._client.get(f"/indexes/{index}/stats")
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError):
            logger.warning("Failed to fetch stats for '%s'", index, exc_info=True)
            return {}
