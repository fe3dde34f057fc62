"""Tests for local storage and the message cache."""

import json

import pytest
from conftest import make_message

from atrium_sync.storage import MESSAGES_KEY, LocalStorage, MessageCache, merge_by_id


class TestLocalStorage:
    """Tests for the key/value store."""

    def test_set_and_get(self, storage):
        """Test storing and reading a value."""
        storage.set("auth_user", '{"name": "alice"}')

        assert storage.get("auth_user") == '{"name": "alice"}'
        assert storage.get("missing") is None

    def test_set_replaces(self, storage):
        """Test the last write wins."""
        storage.set("key", "first")
        storage.set("key", "second")

        assert storage.get("key") == "second"
        assert storage.keys() == ["key"]

    def test_delete(self, storage):
        """Test deleting reports whether the key existed."""
        storage.set("key", "value")

        assert storage.delete("key") is True
        assert storage.delete("key") is False
        assert storage.get("key") is None

    def test_persists_across_connections(self, tmp_path):
        """Test values survive reopening the database file."""
        db_path = tmp_path / "nested" / "client.db"

        store = LocalStorage(db_path)
        store.connect()
        store.set("auth_password", "secret")
        store.close()

        reopened = LocalStorage(db_path)
        assert reopened.get("auth_password") == "secret"
        reopened.close()

    def test_connects_lazily(self):
        """Test operations connect on first use."""
        store = LocalStorage(":memory:")

        store.set("key", "value")

        assert store.get("key") == "value"
        store.close()


class TestMergeById:
    """Tests for id-based merging."""

    def test_sorted_and_unique(self):
        """Test the union is sorted by id without duplicates."""
        existing = [make_message(2), make_message(5)]
        incoming = [make_message(7), make_message(5), make_message(1)]

        merged = merge_by_id(existing, incoming)

        assert [m.id for m in merged] == [1, 2, 5, 7]

    def test_existing_instance_wins(self):
        """Test a known id keeps the cached message."""
        cached = make_message(3, sender="alice")
        refetched = make_message(3, sender="mallory")

        merged = merge_by_id([cached], [refetched])

        assert merged == [cached]

    def test_empty(self):
        assert merge_by_id([], []) == []


class TestMessageCache:
    """Tests for the persisted message cache."""

    @pytest.fixture
    def cache(self, storage):
        return MessageCache(storage, max_entries=5)

    def test_load_empty(self, cache):
        """Test an empty store yields no messages."""
        assert cache.load() == []

    def test_save_and_load(self, cache):
        """Test saved messages load back in id order."""
        messages = [make_message(2), make_message(1), make_message(3)]

        assert cache.save(messages) == 3

        loaded = cache.load()
        assert [m.id for m in loaded] == [1, 2, 3]
        assert loaded[0] == make_message(1)

    def test_save_keeps_newest(self, cache, storage):
        """Test only the newest entries are written."""
        written = cache.save([make_message(i) for i in range(1, 9)])

        assert written == 5
        stored = json.loads(storage.get(MESSAGES_KEY))
        assert [item["id"] for item in stored] == [4, 5, 6, 7, 8]

    def test_default_cap(self, storage):
        """Test the default cap of 1000 messages."""
        cache = MessageCache(storage)

        cache.save([make_message(i) for i in range(1, 1101)])

        loaded = cache.load()
        assert len(loaded) == 1000
        assert loaded[0].id == 101

    @pytest.mark.parametrize(
        "blob",
        [
            "not json",
            '{"id": 1}',
            '[{"id": 1}]',
            '[{"id": "x", "content": "", "sender": "a", "created_at": "2026-01-01T00:00:00"}]',
        ],
    )
    def test_corrupt_blob_is_discarded(self, cache, storage, blob):
        """Test an unreadable blob is dropped and treated as empty."""
        storage.set(MESSAGES_KEY, blob)

        assert cache.load() == []
        assert storage.get(MESSAGES_KEY) is None

    def test_clear(self, cache, storage):
        """Test clearing removes the stored blob."""
        cache.save([make_message(1)])

        cache.clear()

        assert storage.get(MESSAGES_KEY) is None
        assert cache.load() == []
