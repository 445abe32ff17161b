"""Key/value stores for navigation history."""

import sqlite3
from pathlib import Path

from loguru import logger

from permaroam.core.database.schema import delete_value, get_value, migrate_schema, set_value

STATE_DB_NAME = "state.db"


def open_state_db(data_dir: Path) -> sqlite3.Connection:
    """Open (creating if needed) the state database in ``data_dir``."""
    data_dir.mkdir(parents=True, exist_ok=True)
    db_path = data_dir / STATE_DB_NAME
    logger.debug("Opening state database {}", db_path)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    migrate_schema(conn)
    return conn


class SqliteKeyValueStore:
    """KeyValueStoreProtocol over the ``kv`` table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    @classmethod
    def open(cls, data_dir: Path) -> "SqliteKeyValueStore":
        return cls(open_state_db(data_dir))

    def get(self, key: str) -> str | None:
        return get_value(self.conn, key)

    def set(self, key: str, value: str) -> None:
        set_value(self.conn, key, value)

    def delete(self, key: str) -> None:
        delete_value(self.conn, key)

    def close(self) -> None:
        self.conn.close()


class MemoryKeyValueStore:
    """In-process store, for tests and throwaway sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)
