"""Field transform orchestrator.

Decides, per record and per configured field, whether a stored value gets
encrypted, and produces the column updates for that record. Holds no state
besides the codec and hash index it was built with, so running it twice on
the same row, from any process, gives the same persisted result.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.envelope import (
    DecodeError,
    EncryptionFailure,
    EnvelopeCodec,
    EnvelopeState,
    classify,
    looks_like_envelope,
)
from fieldvault.services.hashing import HashIndex

logger = logging.getLogger(__name__)

RecordUpdate = dict[str, str]


class RecordOutcome(str, Enum):
    ENCRYPTED = "encrypted"
    SKIPPED = "skipped"
    ERRORED = "errored"


class FieldAction(str, Enum):
    SKIP_BLANK = "skip_blank"
    SKIP_ENCRYPTED = "skip_encrypted"
    SKIP_MALFORMED = "skip_malformed"  # envelope-like, never encrypted twice
    TRANSFORM = "transform"


@dataclass
class TransformResult:
    """Outcome of transforming one record."""

    outcome: RecordOutcome
    updates: RecordUpdate = field(default_factory=dict)
    hashes: dict[str, str] = field(default_factory=dict)  # field name -> digest
    plaintext: dict[str, str] = field(default_factory=dict)  # searchable fields only
    errors: list[str] = field(default_factory=list)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, bytes)):
        return not value.strip()
    return False


def classify_field(value: Any) -> FieldAction:
    if _is_blank(value):
        return FieldAction.SKIP_BLANK
    state = classify(value)
    if state is EnvelopeState.ENCRYPTED:
        return FieldAction.SKIP_ENCRYPTED
    if state is EnvelopeState.MALFORMED:
        return FieldAction.SKIP_MALFORMED
    return FieldAction.TRANSFORM


class FieldTransformer:
    """Encrypts configured fields of a record in place."""

    __slots__ = ("codec", "hash_index")

    def __init__(self, codec: EnvelopeCodec, hash_index: HashIndex) -> None:
        self.codec = codec
        self.hash_index = hash_index

    def transform(
        self,
        record: Mapping[str, Any],
        fields: Sequence[FieldSpec],
        backup: bool = False,
    ) -> TransformResult:
        """Compute the updates for one record.

        Either every field that needs encrypting succeeds and all updates are
        returned, or the record is ERRORED and no update is returned at all.
        """
        updates: RecordUpdate = {}
        hashes: dict[str, str] = {}
        plaintext: dict[str, str] = {}
        errors: list[str] = []
        already_encrypted: list[tuple[FieldSpec, Any]] = []

        for spec in fields:
            value = record.get(spec.name)
            try:
                action = classify_field(value)
                if action is FieldAction.SKIP_ENCRYPTED and spec.searchable:
                    already_encrypted.append((spec, value))
                if action is FieldAction.SKIP_MALFORMED:
                    logger.warning(
                        "Column %s holds an envelope-like value with unexpected keys; left as is",
                        spec.name,
                    )
                if action is not FieldAction.TRANSFORM:
                    continue

                if isinstance(value, bytes):
                    value = value.decode("utf-8")
                if not isinstance(value, str):
                    raise EncryptionFailure(
                        f"Column {spec.name} holds {type(value).__name__}, not text"
                    )
                field_updates = {spec.name: self.codec.encode(value)}
                if spec.searchable:
                    field_updates[spec.hash_column] = self.hash_index.digest(value)
                if backup and _is_blank(record.get(spec.backup_column)):
                    field_updates[spec.backup_column] = value
            except Exception as exc:  # noqa: BLE001 - isolated to this record
                errors.append(f"{spec.name}: {exc}")
                continue

            updates.update(field_updates)
            if spec.searchable:
                hashes[spec.name] = field_updates[spec.hash_column]
                plaintext[spec.name] = value

        if errors:
            return TransformResult(outcome=RecordOutcome.ERRORED, errors=errors)
        if updates:
            # search_tokens is one attribute for the whole record, so the
            # document must also carry the searchable fields encrypted earlier.
            for spec, stored in already_encrypted:
                try:
                    value = self.codec.decode(stored)
                except DecodeError:
                    logger.warning(
                        "Could not decrypt column %s for the search document", spec.name
                    )
                    continue
                hashes[spec.name] = self.hash_index.digest(value)
                plaintext[spec.name] = value
            return TransformResult(
                outcome=RecordOutcome.ENCRYPTED,
                updates=updates,
                hashes=hashes,
                plaintext=plaintext,
            )
        return TransformResult(outcome=RecordOutcome.SKIPPED)

    def on_write(
        self,
        record: Mapping[str, Any],
        fields: Sequence[FieldSpec],
        backup: bool = False,
    ) -> RecordUpdate:
        """Persistence-boundary hook: updates to apply before a row is written.

        Raises EncryptionFailure instead of silently writing plaintext.
        """
        result = self.transform(record, fields, backup=backup)
        if result.outcome is RecordOutcome.ERRORED:
            raise EncryptionFailure("; ".join(result.errors))
        return result.updates

    def on_read(
        self,
        record: Mapping[str, Any],
        fields: Sequence[FieldSpec],
    ) -> dict[str, Any]:
        """Persistence-boundary hook: plaintext view of a loaded row.

        Values that fail to decrypt are returned as stored.
        """
        view = dict(record)
        for spec in fields:
            value = view.get(spec.name)
            if _is_blank(value) or not looks_like_envelope(value):
                continue
            try:
                view[spec.name] = self.codec.decode(value)
            except DecodeError:
                logger.warning("Could not decrypt column %s; leaving it encrypted", spec.name)
        return view
