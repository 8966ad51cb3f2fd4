"""Tests for the query resolver."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fieldvault.models.backfill import BackfillRequest
from fieldvault.models.field_spec import FieldSpec
from fieldvault.services.backfill import BackfillPipeline
from fieldvault.services.hashing import HashIndex
from fieldvault.services.query import QueryResolver
from fieldvault.services.repository import SqlRepository
from fieldvault.services.search_index import IndexSyncFailure


EMAIL = FieldSpec(name="email", searchable=True)
PHONE_SEARCHABLE = FieldSpec(name="phone", searchable=True)
NAME = FieldSpec(name="name", searchable=False)


@pytest.fixture(name="encrypted_contacts")
def encrypted_contacts_fixture(repository: SqlRepository, transformer, insert_contacts) -> None:
    """Contacts whose email and phone columns have been backfilled."""
    insert_contacts([
        {"id": 1, "email": "a@gmail.com", "phone": "555-0100"},
        {"id": 2, "email": "b@yahoo.com", "phone": "555-0200"},
        {"id": 3, "email": "a@gmail.com", "phone": "555-0300"},
        {"id": 4, "email": "", "phone": "a@gmail.com"},
    ])
    BackfillPipeline(repository, transformer).run(
        BackfillRequest(table="contacts", fields=[EMAIL, PHONE_SEARCHABLE])
    )


@pytest.fixture(name="resolver")
def resolver_fixture(repository: SqlRepository, hash_index: HashIndex, encrypted_contacts) -> QueryResolver:
    return QueryResolver(repository, hash_index)


class TestFindExact:
    def test_equal_plaintext_matches(self, resolver: QueryResolver) -> None:
        assert resolver.find_exact("contacts", EMAIL, "a@gmail.com") == [1, 3]

    def test_no_match(self, resolver: QueryResolver) -> None:
        assert resolver.find_exact("contacts", EMAIL, "nobody@example.com") == []

    def test_different_salt_finds_nothing(self, repository: SqlRepository, encrypted_contacts) -> None:
        resolver = QueryResolver(repository, HashIndex("some-other-salt"))
        assert resolver.find_exact("contacts", EMAIL, "a@gmail.com") == []


class TestSearchFallback:
    def test_without_index_uses_hashes(self, resolver: QueryResolver) -> None:
        assert resolver.search("contacts", "b@yahoo.com", [EMAIL]) == [2]

    def test_fallback_across_fields_is_deduplicated(self, resolver: QueryResolver) -> None:
        assert resolver.search("contacts", "a@gmail.com", [EMAIL, PHONE_SEARCHABLE]) == [1, 3, 4]

    def test_blank_query(self, resolver: QueryResolver) -> None:
        assert resolver.search("contacts", "   ", [EMAIL]) == []

    def test_no_searchable_fields(self, resolver: QueryResolver) -> None:
        assert resolver.search("contacts", "a@gmail.com", [NAME]) == []

    def test_fallback_disabled(self, resolver: QueryResolver) -> None:
        assert resolver.search("contacts", "a@gmail.com", [EMAIL], fallback=False) == []


class TestSearchIndex:
    def test_index_hits_win(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        mock_search_index.search.return_value = ["1", "3"]
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)

        assert resolver.search("contacts", "gmail", [EMAIL]) == [1, 3]
        mock_search_index.search.assert_called_once_with("encrypted_contacts", "gmail")

    def test_model_type_selects_index(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock
    ) -> None:
        mock_search_index.search.return_value = ["7"]
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        resolver.search("contacts", "gmail", [EMAIL], model_type="User")
        mock_search_index.search.assert_called_once_with("encrypted_User", "gmail")

    def test_index_down_falls_back(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        mock_search_index.search.side_effect = IndexSyncFailure("connection refused")
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        assert resolver.search("contacts", "a@gmail.com", [EMAIL]) == [1, 3]

    def test_no_hits_falls_back(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        assert resolver.search("contacts", "b@yahoo.com", [EMAIL]) == [2]

    def test_disabled_index_not_queried(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        mock_search_index.enabled = False
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        assert resolver.search("contacts", "b@yahoo.com", [EMAIL]) == [2]
        mock_search_index.search.assert_not_called()

    def test_both_paths_return_native_keys(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        """Whether the index answers or not, keys have the primary key's type."""
        mock_search_index.search.return_value = ["2"]
        with_index = QueryResolver(repository, hash_index, search_index=mock_search_index)
        without_index = QueryResolver(repository, hash_index)

        indexed = with_index.search("contacts", "b@yahoo.com", [EMAIL])
        fallback = without_index.search("contacts", "b@yahoo.com", [EMAIL])

        assert indexed == fallback == [2]
        assert type(indexed[0]) is type(fallback[0])

    def test_stale_hits_dropped_and_order_kept(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        mock_search_index.search.return_value = ["3", "99", "1", "3"]
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        assert resolver.search("contacts", "gmail", [EMAIL]) == [3, 1]

    def test_only_stale_hits_fall_back(
        self, repository: SqlRepository, hash_index: HashIndex, mock_search_index: MagicMock, encrypted_contacts
    ) -> None:
        mock_search_index.search.return_value = ["99"]
        resolver = QueryResolver(repository, hash_index, search_index=mock_search_index)
        assert resolver.search("contacts", "b@yahoo.com", [EMAIL]) == [2]
