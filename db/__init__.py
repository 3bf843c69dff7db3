"""SQLite helpers for the Vista dashboard backend."""
from __future__ import annotations

from contextlib import contextmanager
import os
from pathlib import Path
import sqlite3
import time
from typing import Iterator, Union

SCHEMA_VERSION = 1

_DB_PATH: Path | None = None
_SCHEMA_PATH = Path(__file__).resolve().with_name("schema.sql")


def default_path() -> Path:
    """VISTA_DB_PATH if set, else vista.db under VISTA_STATE_DIR (default ./.state)."""
    explicit = os.environ.get("VISTA_DB_PATH")
    if explicit:
        return Path(explicit).expanduser()
    base = os.environ.get("VISTA_STATE_DIR")
    state_dir = Path(base).expanduser() if base else Path.cwd() / ".state"
    return state_dir / "vista.db"


def configure(path: Union[str, Path]) -> Path:
    """Set the database location and ensure its parent directory exists."""
    resolved = Path(path).expanduser()
    if not resolved.is_absolute():
        resolved = resolved.resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    global _DB_PATH
    _DB_PATH = resolved
    return resolved


def path() -> Path:
    if _DB_PATH is None:
        raise RuntimeError("Database path not configured")
    return _DB_PATH


def connect() -> sqlite3.Connection:
    """Return a configured sqlite3 connection with dict-like rows."""
    conn = sqlite3.connect(path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.OperationalError:
        pass
    return conn


@contextmanager
def session() -> Iterator[sqlite3.Connection]:
    """Context manager that commits on success and rolls back on error."""
    conn = connect()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema() -> int:
    """Apply the bundled schema and stamp its version; returns the version."""
    sql = _SCHEMA_PATH.read_text()
    with session() as conn:
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (id, version, applied_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET version = excluded.version",
            (SCHEMA_VERSION, int(time.time())),
        )
    return SCHEMA_VERSION


__all__ = [
    "SCHEMA_VERSION",
    "configure",
    "default_path",
    "path",
    "connect",
    "session",
    "ensure_schema",
]
