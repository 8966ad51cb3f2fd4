"""Search documents for the external partial-match index.

Documents carry lowercase value fragments and exact-match digests, never
ciphertext and never null-valued keys.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from fieldvault.models.field_spec import FieldSpec

SearchDocument = dict[str, Any]


def extract_search_tokens(value: str) -> list[str]:
    """Split a value into partial-match tokens.

    ``"user@mail.example.com"`` gives the full value, ``"user"``,
    ``"mail.example.com"`` and ``"mail"``.
    """
    normalized = value.strip().lower()
    if not normalized:
        return []

    tokens = [normalized]
    if "@" in normalized:
        local_part, domain = normalized.split("@", 1)
        tokens.extend([local_part, domain])
        labels = domain.split(".")
        if len(labels) > 1:
            tokens.append(labels[0])

    # dict.fromkeys keeps first-seen order
    return [t for t in dict.fromkeys(tokens) if t]


def build_search_document(
    record_id: Any,
    model_type: str,
    fields: Sequence[FieldSpec],
    plaintext: Mapping[str, str],
    hashes: Mapping[str, str],
) -> SearchDocument | None:
    """Build the index document for one record's searchable fields.

    Returns None when no searchable field contributed anything.
    """
    document: SearchDocument = {"id": str(record_id), "model_type": model_type}
    tokens: list[str] = []

    for spec in fields:
        if not spec.searchable:
            continue
        digest = hashes.get(spec.name)
        if digest:
            document[spec.hash_column] = digest
        value = plaintext.get(spec.name)
        if value:
            tokens.extend(extract_search_tokens(value))

    if tokens:
        document["search_tokens"] = list(dict.fromkeys(tokens))
    if len(document) == 2:
        return None
    return document
