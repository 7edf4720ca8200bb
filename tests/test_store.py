"""Tests for the in-memory state store.

Tests cover:
- Raw and model persistence
- Atomic create and compare-and-set
- TTL expiry
- Secondary indexes and prefix scans
"""

from __future__ import annotations

from pydantic import BaseModel

from oms_core.execution import MemoryStore, create_store


class _Record(BaseModel):
    name: str
    value: int


class _Clock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_set_get(self) -> None:
        """Test basic set/get operations."""
        store = MemoryStore()
        store.set("key1", "value1")
        assert store.get("key1") == "value1"
        assert store.get("missing") is None

    def test_exists_and_delete(self) -> None:
        """Test exists check and deletion."""
        store = MemoryStore()
        store.set("key1", "value1")
        assert store.exists("key1") is True
        store.delete("key1")
        assert store.exists("key1") is False

    def test_save_load_model(self) -> None:
        """Test Pydantic model serialization."""
        store = MemoryStore()
        store.save("rec", _Record(name="a", value=1))
        loaded = store.load("rec", _Record)
        assert loaded == _Record(name="a", value=1)

    def test_load_invalid_model(self) -> None:
        """Test undecodable payloads load as None."""
        store = MemoryStore()
        store.set("rec", "not json")
        assert store.load("rec", _Record) is None

    def test_set_if_absent(self) -> None:
        """Test atomic create only succeeds once."""
        store = MemoryStore()
        assert store.set_if_absent("k", "first") is True
        assert store.set_if_absent("k", "second") is False
        assert store.get("k") == "first"

    def test_compare_and_set(self) -> None:
        """Test CAS swaps only on the expected value."""
        store = MemoryStore()
        store.set("k", "v1")
        assert store.compare_and_set("k", "v1", "v2") is True
        assert store.compare_and_set("k", "v1", "v3") is False
        assert store.get("k") == "v2"

    def test_compare_and_set_missing_key(self) -> None:
        """Test CAS never creates a key."""
        store = MemoryStore()
        assert store.compare_and_set("k", "v1", "v2") is False
        assert store.get("k") is None

    def test_ttl_expiry(self) -> None:
        """Test keys vanish once their TTL elapses."""
        clock = _Clock()
        store = MemoryStore(clock=clock)
        store.set("k", "v", ttl_seconds=10)
        assert store.ttl("k") == 10

        clock.now += 9
        assert store.get("k") == "v"

        clock.now += 1
        assert store.get("k") is None
        assert store.exists("k") is False

    def test_set_if_absent_after_expiry(self) -> None:
        """Test an expired key can be created again."""
        clock = _Clock()
        store = MemoryStore(clock=clock)
        store.set_if_absent("k", "first", ttl_seconds=5)
        clock.now += 5
        assert store.set_if_absent("k", "second", ttl_seconds=5) is True
        assert store.get("k") == "second"

    def test_compare_and_set_keeps_ttl(self) -> None:
        """Test CAS without a TTL keeps the remaining expiry."""
        clock = _Clock()
        store = MemoryStore(clock=clock)
        store.set("k", "v1", ttl_seconds=10)
        clock.now += 4
        assert store.compare_and_set("k", "v1", "v2") is True
        assert store.ttl("k") == 6

    def test_set_without_ttl_clears_expiry(self) -> None:
        """Test a plain set removes a previous TTL."""
        store = MemoryStore()
        store.set("k", "v", ttl_seconds=10)
        store.set("k", "v")
        assert store.ttl("k") is None

    def test_get_many(self) -> None:
        """Test batch reads keep order and report misses."""
        store = MemoryStore()
        store.set("a", "1")
        store.set("c", "3")
        assert store.get_many(["a", "b", "c"]) == ["1", None, "3"]

    def test_indexes(self) -> None:
        """Test secondary index membership."""
        store = MemoryStore()
        store.index_add("idx", "o1")
        store.index_add("idx", "o2")
        store.index_add("idx", "o1")
        assert store.index_members("idx") == {"o1", "o2"}
        store.index_remove("idx", "o1")
        store.index_remove("missing", "o1")
        assert store.index_members("idx") == {"o2"}
        assert store.index_members("missing") == set()

    def test_scan_skips_expired(self) -> None:
        """Test prefix scans only list live keys."""
        clock = _Clock()
        store = MemoryStore(clock=clock)
        store.set("oms:order:1", "a")
        store.set("oms:order:2", "b", ttl_seconds=1)
        store.set("other", "c")
        clock.now += 2
        assert store.scan("oms:order:") == ["oms:order:1"]

    def test_clear(self) -> None:
        """Test clear drops data and indexes."""
        store = MemoryStore()
        store.set("k", "v")
        store.index_add("idx", "m")
        store.clear()
        assert store.get("k") is None
        assert store.index_members("idx") == set()

    def test_health_check(self) -> None:
        """Test memory store is always healthy."""
        assert MemoryStore().health_check() is True


class TestCreateStore:
    """Tests for the store factory."""

    def test_memory_when_redis_disabled(self) -> None:
        """Test use_redis=False gives a MemoryStore."""
        assert isinstance(create_store(use_redis=False), MemoryStore)
