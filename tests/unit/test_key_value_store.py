# =============================================================================
# tests/unit/test_key_value_store.py
# Unit Tests for KeyValueStore
# =============================================================================

import threading

import pytest

from clinic_core.offline.key_value_store import KeyValueStore


class TestKeyValueStoreContract:
    """Test get/set/delete semantics"""

    def test_missing_key_returns_fallback(self, store):
        """Reading a missing key yields the fallback"""
        assert store.get("nope") is None
        assert store.get("nope", []) == []

    def test_set_then_get_round_trip(self, store):
        """Values come back as written"""
        value = {"patients": [{"id": "p1", "name": "X"}], "count": 1}

        assert store.set("patientsData", value)
        assert store.get("patientsData") == value

    def test_set_overwrites(self, store):
        """A second set replaces the first value"""
        store.set("k", 1)
        store.set("k", 2)

        assert store.get("k") == 2

    def test_delete_missing_key_is_not_error(self, store):
        """Deleting a key that never existed still reports success"""
        assert store.delete("ghost")

    def test_delete_removes_key(self, store):
        """Deleted keys are no longer visible"""
        store.set("k", "v")
        store.delete("k")

        assert not store.has("k")
        assert store.get("k", "fallback") == "fallback"

    def test_unreadable_value_returns_fallback(self, store):
        """Content that is not JSON reads as missing, but has() still sees it"""
        with store.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, saved_at) VALUES (?, ?, ?)",
                ["broken", "{not json", "2024-01-01"],
            )

        assert store.get("broken", "fallback") == "fallback"
        assert store.get_record("broken") is None
        assert store.has("broken")

    def test_get_record_carries_saved_at(self, store):
        """Records expose the time they were written"""
        store.set("k", [1, 2])
        record = store.get_record("k")

        assert record.value == [1, 2]
        assert record.saved_at


class TestKeyValueStoreDurability:
    """Test persistence across instances"""

    def test_values_survive_reopen(self, tmp_path):
        """A new store on the same file sees earlier writes"""
        path = tmp_path / "durable.db"
        first = KeyValueStore(path)
        first.set("sync:queue", [{"id": "op_1"}])
        first.close()

        second = KeyValueStore(path)
        try:
            assert second.get("sync:queue") == [{"id": "op_1"}]
        finally:
            second.close()

    def test_creates_parent_directory(self, tmp_path):
        """Missing directories are created on initialize"""
        path = tmp_path / "nested" / "dir" / "sync.db"
        kv = KeyValueStore(path)
        try:
            assert path.parent.exists()
            assert kv.set("k", 1)
        finally:
            kv.close()

    def test_unserializable_value_reports_failure(self, store):
        """set() returns False instead of raising"""
        class Weird:
            def __str__(self):
                raise ValueError("no")

        assert store.set("k", {"obj": Weird()}) is False


class TestKeyValueStoreKeys:
    """Test key listing"""

    def test_keys_with_prefix(self, store):
        """Prefix filtering treats '_' literally"""
        store.set("entities:patient", [])
        store.set("entities:appointment", [])
        store.set("sync_a", [])
        store.set("syncXb", [])

        assert store.keys("entities:") == ["entities:appointment", "entities:patient"]
        assert store.keys("sync_") == ["sync_a"]
        assert len(store.keys()) == 4

    def test_concurrent_writers(self, store):
        """Writes from several threads all land"""
        def writer(n):
            for i in range(10):
                store.set(f"t{n}:{i}", i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.keys("t")) == 40
