from __future__ import annotations

import os

# Settings validation requires both secrets; set them before importing fieldvault.
os.environ.setdefault("ENCRYPTION_KEY", "base64:" + "A" * 43 + "=")
os.environ.setdefault("HASH_SALT", "test-hash-salt")
os.environ.setdefault("MEILISEARCH_ENABLED", "0")

from unittest.mock import MagicMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, text

from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.envelope import EnvelopeCodec
from fieldvault.services.hashing import HashIndex
from fieldvault.services.repository import SqlRepository
from fieldvault.services.search_index import MeilisearchIndex
from fieldvault.services.transform import FieldTransformer

TEST_SALT = "test-hash-salt"

CONTACTS_DDL = (
    "CREATE TABLE contacts ("
    "  id INTEGER PRIMARY KEY,"
    "  name TEXT,"
    "  email TEXT,"
    "  email_hash VARCHAR(64),"
    "  email_backup TEXT,"
    "  phone TEXT,"
    "  phone_hash VARCHAR(64)"
    ")"
)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with an empty ``contacts`` table.

    Uses StaticPool so every connection shares the same in-memory database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        conn.execute(text(CONTACTS_DDL))
    yield engine
    engine.dispose()


@pytest.fixture(name="repository")
def repository_fixture(engine) -> SqlRepository:
    return SqlRepository(engine)


@pytest.fixture(name="insert_contacts")
def insert_contacts_fixture(engine):
    """Insert rows into ``contacts``: each row is a dict of column -> value."""

    def _insert(rows: list[dict]) -> None:
        with Session(engine) as session:
            for row in rows:
                columns = ", ".join(row)
                placeholders = ", ".join(f":{c}" for c in row)
                session.exec(
                    text(f"INSERT INTO contacts ({columns}) VALUES ({placeholders})").bindparams(**row)
                )
            session.commit()

    return _insert


@pytest.fixture(name="fetch_contacts")
def fetch_contacts_fixture(engine):
    """Return every ``contacts`` row as a dict, ordered by id."""

    def _fetch() -> list[dict]:
        with Session(engine) as session:
            result = session.exec(text("SELECT * FROM contacts ORDER BY id"))
            return [dict(row._mapping) for row in result]

    return _fetch


# ── Encryption fixtures ───────────────────────────────────────────────


@pytest.fixture(name="master_key")
def master_key_fixture() -> bytes:
    return os.urandom(32)


@pytest.fixture(name="codec")
def codec_fixture(master_key: bytes) -> EnvelopeCodec:
    return EnvelopeCodec(master_key)


@pytest.fixture(name="hash_index")
def hash_index_fixture() -> HashIndex:
    return HashIndex(TEST_SALT)


@pytest.fixture(name="transformer")
def transformer_fixture(codec: EnvelopeCodec, hash_index: HashIndex) -> FieldTransformer:
    return FieldTransformer(codec, hash_index)


@pytest.fixture(name="email_field")
def email_field_fixture() -> FieldSpec:
    return FieldSpec(name="email", searchable=True)


# ── Search index fixtures ─────────────────────────────────────────────


@pytest.fixture(name="mock_search_index")
def mock_search_index_fixture() -> MagicMock:
    """Mock MeilisearchIndex that accepts every push."""
    mock = MagicMock(spec=MeilisearchIndex)
    mock.enabled = True
    mock.index_name.side_effect = lambda model_type: f"encrypted_{model_type}"
    mock.ensure_index.return_value = True
    mock.push.return_value = True
    mock.remove.return_value = True
    mock.search.return_value = []
    return mock
