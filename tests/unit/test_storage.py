"""Tests for the history key/value stores."""

from pathlib import Path

from permaroam.core.history import NavigationHistory
from permaroam.protocols import KeyValueStoreProtocol
from permaroam.storage import STATE_DB_NAME, MemoryKeyValueStore, SqliteKeyValueStore
from tests.unit.fakes import make_tx


def test_sqlite_store_creates_database(tmp_path: Path) -> None:
    data_dir = tmp_path / "nested" / "state"
    store = SqliteKeyValueStore.open(data_dir)
    try:
        assert (data_dir / STATE_DB_NAME).is_file()
        assert store.get("missing") is None
    finally:
        store.close()


def test_sqlite_store_persists_across_connections(tmp_path: Path) -> None:
    store = SqliteKeyValueStore.open(tmp_path)
    store.set("greeting", "hello")
    store.close()

    reopened = SqliteKeyValueStore.open(tmp_path)
    try:
        assert reopened.get("greeting") == "hello"
        reopened.delete("greeting")
        assert reopened.get("greeting") is None
    finally:
        reopened.close()


def test_history_survives_restart(tmp_path: Path) -> None:
    store = SqliteKeyValueStore.open(tmp_path)
    history = NavigationHistory(store)
    history.add(make_tx("a", 1))
    history.add(make_tx("b", 2))
    store.close()

    store = SqliteKeyValueStore.open(tmp_path)
    try:
        restored = NavigationHistory(store)
        assert [tx.id for tx in restored.state.items] == ["a", "b"]
        assert restored.current() == make_tx("b", 2)
    finally:
        store.close()


def test_memory_store() -> None:
    store = MemoryKeyValueStore({"a": "1"})
    assert store.get("a") == "1"
    store.set("b", "2")
    store.delete("a")
    store.delete("never-set")
    assert store.data == {"b": "2"}


def test_stores_satisfy_protocol(tmp_path: Path) -> None:
    sqlite_store = SqliteKeyValueStore.open(tmp_path)
    try:
        assert isinstance(sqlite_store, KeyValueStoreProtocol)
        assert isinstance(MemoryKeyValueStore(), KeyValueStoreProtocol)
    finally:
        sqlite_store.close()
