"""
SQLite layout, version detection and migrations.

Current layout (schema v2)::

    "<table>"          (key TEXT PRIMARY KEY, value TEXT NOT NULL)    -- codec.dumps text
    internal_metadata  (name TEXT PRIMARY KEY, schema_version INTEGER, auto_key_count INTEGER)

Legacy layout (schema v1)::

    "<table>"          (key, path, value, PRIMARY KEY (key, path))     -- whole doc under '::NULL::'
    'internal::autonum' (josh TEXT PRIMARY KEY, lastnum INTEGER)
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable

from pydantic import BaseModel

from .. import codec
from ..errors import CodecError, MigrationError, StorageError, StoreError
from ..keypath import assign, parse_path
from ..protocol import CURRENT_SCHEMA_VERSION

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "METADATA_TABLE",
    "MIGRATIONS",
    "MetadataRecord",
    "open_db",
    "transaction",
    "storage_errors",
    "quote_ident",
    "ensure_current_layout",
    "detect_schema_version",
    "read_metadata",
    "write_metadata",
    "collapse_legacy_rows",
    "migrate_v1_to_v2",
    "run_migrations",
]

log = logging.getLogger(__name__)

METADATA_TABLE = "internal_metadata"
LEGACY_AUTONUM_TABLE = "internal::autonum"
LEGACY_ROOT_PATH = "::NULL::"


class MetadataRecord(BaseModel):
    name: str
    schema_version: int
    auto_key_count: int = 0


# ---- Connections ------------------------------------------------------------


def open_db(path: str, *, wal: bool = True) -> sqlite3.Connection:
    """
    Open a connection in autocommit mode; multi-statement work goes through
    ``transaction()``. The connection is shared with worker threads, callers
    serialize access.
    """
    with storage_errors(f"open {path}"):
        conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA journal_mode = {'WAL' if wal else 'DELETE'};")
        conn.execute("PRAGMA synchronous = NORMAL;")
    return conn


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(f"SQLite {action} failed: {e}", e) from e


@contextmanager
def transaction(
    conn: sqlite3.Connection,
    *,
    begin: str = "BEGIN IMMEDIATE",
) -> Iterator[sqlite3.Connection]:
    """
    Transaction wrapper that commits on success and rolls back on error.
    Uses BEGIN IMMEDIATE by default so read-modify-write holds the write lock.
    """

    conn.execute(begin)
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({quote_ident(table)})")]


# ---- Metadata ---------------------------------------------------------------


def _ensure_metadata_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS {METADATA_TABLE} ("
        "name TEXT PRIMARY KEY, "
        "schema_version INTEGER NOT NULL, "
        "auto_key_count INTEGER NOT NULL DEFAULT 0)"
    )


def read_metadata(conn: sqlite3.Connection, table: str) -> MetadataRecord | None:
    if not _table_exists(conn, METADATA_TABLE):
        return None
    row = conn.execute(
        f"SELECT name, schema_version, auto_key_count FROM {METADATA_TABLE} WHERE name = ?",
        (table,),
    ).fetchone()
    return MetadataRecord.model_validate(dict(row)) if row is not None else None


def write_metadata(conn: sqlite3.Connection, record: MetadataRecord) -> None:
    """Upsert the metadata row."""
    _ensure_metadata_table(conn)
    conn.execute(
        f"INSERT INTO {METADATA_TABLE} (name, schema_version, auto_key_count) VALUES (?, ?, ?) "
        "ON CONFLICT (name) DO UPDATE SET "
        "schema_version = excluded.schema_version, auto_key_count = excluded.auto_key_count",
        (record.name, record.schema_version, record.auto_key_count),
    )


def _set_schema_version(conn: sqlite3.Connection, table: str, version: int) -> None:
    conn.execute(
        f"UPDATE {METADATA_TABLE} SET schema_version = ? WHERE name = ?",
        (int(version), table),
    )


# ---- Layout -----------------------------------------------------------------


def _create_document_table(conn: sqlite3.Connection, table: str) -> None:
    conn.execute(
        f"CREATE TABLE IF NOT EXISTS {quote_ident(table)} (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
    )


def ensure_current_layout(conn: sqlite3.Connection, table: str) -> MetadataRecord:
    """Create the current tables and a fresh metadata row where missing."""
    with transaction(conn):
        _create_document_table(conn, table)
        record = read_metadata(conn, table)
        if record is None:
            record = MetadataRecord(name=table, schema_version=CURRENT_SCHEMA_VERSION, auto_key_count=0)
            write_metadata(conn, record)
    return record


def detect_schema_version(conn: sqlite3.Connection, table: str) -> int | None:
    """Version of what is on disk for ``table``, or None for a brand-new store."""
    record = read_metadata(conn, table)
    if record is not None:
        return record.schema_version
    if _table_exists(conn, table) and "path" in _table_columns(conn, table):
        return 1
    if _table_exists(conn, LEGACY_AUTONUM_TABLE):
        row = conn.execute(
            f"SELECT 1 FROM {quote_ident(LEGACY_AUTONUM_TABLE)} WHERE josh = ?",
            (table,),
        ).fetchone()
        if row is not None:
            return 1
    return None


# ---- Migrations -------------------------------------------------------------


def _legacy_value(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise CodecError(f"Legacy value is not valid JSON: {text!r}") from e


def collapse_legacy_rows(rows: list[sqlite3.Row] | list[dict[str, Any]]) -> dict[str, Any]:
    """
    Fold v1 ``(key, path, value)`` rows into one document per key.

    The ``::NULL::`` row holds the whole document and wins when present;
    otherwise the document is rebuilt from its path rows, shallowest first.
    """
    by_key: dict[str, dict[str, Any]] = {}
    for row in rows:
        by_key.setdefault(row["key"], {})[row["path"]] = _legacy_value(row["value"])

    documents: dict[str, Any] = {}
    for key, by_path in by_key.items():
        if LEGACY_ROOT_PATH in by_path:
            documents[key] = by_path[LEGACY_ROOT_PATH]
            continue
        document: Any = None
        for path in sorted(by_path, key=lambda p: len(parse_path(p))):
            document = assign(document, path, by_path[path])
        documents[key] = document
    return documents


def migrate_v1_to_v2(conn: sqlite3.Connection, table: str) -> None:
    """One row per (key, path) -> one row per key; legacy counter -> metadata."""
    documents: dict[str, Any] = {}
    if _table_exists(conn, table) and "path" in _table_columns(conn, table):
        rows = conn.execute(f"SELECT key, path, value FROM {quote_ident(table)} ORDER BY rowid").fetchall()
        documents = collapse_legacy_rows(rows)
        conn.execute(f"DROP TABLE {quote_ident(table)}")
    _create_document_table(conn, table)
    conn.executemany(
        f"INSERT INTO {quote_ident(table)} (key, value) VALUES (?, ?)",
        [(key, codec.dumps(document)) for key, document in documents.items()],
    )

    counter = 0
    if _table_exists(conn, LEGACY_AUTONUM_TABLE):
        row = conn.execute(
            f"SELECT lastnum FROM {quote_ident(LEGACY_AUTONUM_TABLE)} WHERE josh = ?",
            (table,),
        ).fetchone()
        if row is not None and row["lastnum"] is not None:
            counter = int(row["lastnum"])
        conn.execute(f"DELETE FROM {quote_ident(LEGACY_AUTONUM_TABLE)} WHERE josh = ?", (table,))

    write_metadata(conn, MetadataRecord(name=table, schema_version=1, auto_key_count=counter))
    log.info("Collapsed %d legacy documents for %r (auto key counter %d)", len(documents), table, counter)


MigrationStep = Callable[[sqlite3.Connection, str], None]

# from_version -> step producing from_version + 1
MIGRATIONS: dict[int, MigrationStep] = {
    1: migrate_v1_to_v2,
}


def run_migrations(
    conn: sqlite3.Connection,
    table: str,
    start: int,
    target: int = CURRENT_SCHEMA_VERSION,
    *,
    migrations: dict[int, MigrationStep] | None = None,
) -> int:
    """
    Execute schema migrations between ``start`` and ``target`` versions.

    All steps and every version bump share one transaction: on any failure
    nothing is committed and the store keeps its pre-migration layout.
    """
    steps = MIGRATIONS if migrations is None else migrations
    version = start
    try:
        with transaction(conn):
            while version < target:
                step = steps.get(version)
                if step is None:
                    raise MigrationError(f"Unknown schema version {version}. Cannot migrate.")
                log.info("Migrating %r from schema v%s to v%s", table, version, version + 1)
                step(conn, table)
                version += 1
                _set_schema_version(conn, table, version)
    except MigrationError:
        raise
    except (StoreError, sqlite3.Error) as e:
        raise MigrationError(f"Migration of {table!r} from v{start} failed: {e}") from e
    return version
