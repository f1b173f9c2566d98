"""
Record store using SQLite.

Generic keyed collections with secondary indexes, the only layer that talks
to the storage engine. Every record is a JSON object; indexed fields are
mirrored into their own columns so lookups by index use a real SQL index.

Writes are whole-record upserts: the last writer wins, whole object. There is
no field-level merge and no multi-record transaction. A cascade built from
several puts can be observed half-applied.

All public operations are coroutines. The SQLite call itself runs in a worker
thread, serialized by a lock, so the event loop never blocks on disk I/O and
the single connection is never used from two threads at once.
"""

import asyncio
import base64
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import StoreUnavailable, TransactionFailed, ValidationFailed

logger = logging.getLogger(__name__)

DB_FILENAME = "echo.db"

# Bumped whenever a collection or index is added. _migrate() upgrades older
# databases in place; databases from a newer release are refused.
SCHEMA_VERSION = 2

# Collection names
NOTES = "notes"
FOLDERS = "folders"
INSIGHTS = "insights"
IMAGES = "insight_images"
SETTINGS = "settings"

_BYTES_TAG = "$bytes"


@dataclass(frozen=True)
class Collection:
    """Declaration of one keyed collection and its secondary indexes."""
    name: str
    key: str = "id"
    indexes: tuple[str, ...] = ()


SCHEMA: tuple[Collection, ...] = (
    Collection(NOTES, indexes=("createdAt", "folderId", "status")),
    Collection(FOLDERS, indexes=("name",)),
    Collection(INSIGHTS, indexes=("updatedAt",)),
    Collection(IMAGES, indexes=("insightId",)),
    Collection(SETTINGS, key="key"),
)


def _encode_value(value: Any) -> Any:
    """json.dumps fallback: binary payloads become tagged base64 objects."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def _decode_object(obj: dict) -> Any:
    if len(obj) == 1 and _BYTES_TAG in obj:
        return base64.b64decode(obj[_BYTES_TAG])
    return obj


def encode_record(record: dict[str, Any]) -> str:
    return json.dumps(record, default=_encode_value, ensure_ascii=False)


def decode_record(body: str) -> dict[str, Any]:
    return json.loads(body, object_hook=_decode_object)


def _index_column(field: str) -> str:
    return f'"idx_{field}"'


def _index_value(value: Any) -> Any:
    """Value stored in an index column. Non-scalars and null are not indexed."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (str, int, float)):
        return value
    return None


class RecordStore:
    """
    SQLite-backed store of named collections.

    One instance is the process-wide handle: create it once and inject it into
    the repositories. ``open()`` is idempotent and concurrent callers share the
    same initialization. ``destroy()`` closes the handle and erases everything;
    any later operation transparently re-opens a fresh, empty store.
    """

    def __init__(self, store_path: Path, schema: tuple[Collection, ...] = SCHEMA):
        """
        Args:
            store_path: Store directory; the database file lives inside it
            schema: Collections and indexes to declare on open
        """
        self._db_path = Path(store_path) / DB_FILENAME
        self._collections = {c.name: c for c in schema}
        self._conn: Optional[sqlite3.Connection] = None
        self._opening: Optional[asyncio.Task] = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def collections(self) -> list[str]:
        return list(self._collections)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> "RecordStore":
        """
        Open the database, declaring collections and indexes on first use.

        Raises:
            StoreUnavailable: If the database cannot be created or opened
        """
        if self._conn is not None:
            return self
        if self._opening is None:
            self._opening = asyncio.get_running_loop().create_task(self._initialize())
        # Shielded so a cancelled caller does not abort the shared initialization
        await asyncio.shield(self._opening)
        return self

    async def _initialize(self) -> None:
        try:
            self._conn = await asyncio.to_thread(self._init_db)
        finally:
            self._opening = None

    def _init_db(self) -> sqlite3.Connection:
        """Create the database file and schema. Runs in a worker thread."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailable(f"Cannot open store at {self._db_path}: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            # WAL lets a reader in another process see committed writes
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")

            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise StoreUnavailable(
                    f"Store schema version {version} is newer than supported ({SCHEMA_VERSION})"
                )
            self._migrate(conn, version)
        except sqlite3.Error as e:
            conn.close()
            raise StoreUnavailable(f"Cannot initialize store at {self._db_path}: {e}") from e
        except StoreUnavailable:
            conn.close()
            raise

        logger.debug("Opened record store at %s", self._db_path)
        return conn

    def _migrate(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Declare missing collections and index columns, backfilling indexes."""
        for coll in self._collections.values():
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS "{coll.name}" (
                    pk TEXT PRIMARY KEY,
                    body TEXT NOT NULL
                )
            """)
            columns = {
                row[1] for row in conn.execute(f'PRAGMA table_info("{coll.name}")')
            }
            for field in coll.indexes:
                if f"idx_{field}" not in columns:
                    conn.execute(
                        f'ALTER TABLE "{coll.name}" ADD COLUMN {_index_column(field)}'
                    )
                    # Existing rows predate this index
                    conn.execute(
                        f'UPDATE "{coll.name}" SET {_index_column(field)} = '
                        f"json_extract(body, ?)",
                        (f"$.{field}",),
                    )
                    if from_version:
                        logger.info("Added index %s.%s", coll.name, field)
                conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS "ix_{coll.name}_{field}"
                    ON "{coll.name}"({_index_column(field)})
                """)

        if from_version != SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
            if from_version:
                logger.info("Migrated store schema %d -> %d", from_version, SCHEMA_VERSION)
        conn.commit()

    def close(self) -> None:
        """Close the database connection. A later operation re-opens it."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    async def destroy(self) -> None:
        """
        Close the handle and irrecoverably erase all collections.

        Used only for the explicit "erase all data" action.
        """
        opening = self._opening
        if opening is not None:
            try:
                await asyncio.shield(opening)
            except StoreUnavailable as e:
                logger.debug("Destroying store that failed to open: %s", e)
        await asyncio.to_thread(self._destroy_files)
        logger.info("Erased record store at %s", self._db_path)

    def _destroy_files(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            try:
                for suffix in ("", "-wal", "-shm", "-journal"):
                    Path(f"{self._db_path}{suffix}").unlink(missing_ok=True)
            except OSError as e:
                raise TransactionFailed(f"Cannot erase store at {self._db_path}: {e}") from e

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _collection(self, name: str) -> Collection:
        coll = self._collections.get(name)
        if coll is None:
            raise ValidationFailed(f"Unknown collection: {name!r}")
        return coll

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a sync operation against the open connection in a worker thread."""
        await self.open()
        return await asyncio.to_thread(self._locked, func, *args)

    def _locked(self, func: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            if self._conn is None:
                # Closed or destroyed between open() and this call
                raise TransactionFailed("Store was closed during the operation")
            return func(self._conn, *args)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    async def get_all(self, collection: str) -> list[dict[str, Any]]:
        """Full contents of a collection. Order is unspecified."""
        coll = self._collection(collection)

        def read(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            try:
                rows = conn.execute(f'SELECT body FROM "{coll.name}"').fetchall()
            except sqlite3.Error as e:
                raise TransactionFailed(f"Read of {coll.name} failed: {e}") from e
            return [decode_record(row["body"]) for row in rows]

        return await self._run(read)

    async def get_by_id(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        """
        Get one record by primary key.

        Returns:
            The record, or None if absent (not an error)
        """
        coll = self._collection(collection)

        def read(conn: sqlite3.Connection) -> Optional[dict[str, Any]]:
            try:
                row = conn.execute(
                    f'SELECT body FROM "{coll.name}" WHERE pk = ?', (id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise TransactionFailed(f"Read of {coll.name}/{id} failed: {e}") from e
            return decode_record(row["body"]) if row else None

        return await self._run(read)

    async def get_all_by_index(
        self, collection: str, index: str, value: Any
    ) -> list[dict[str, Any]]:
        """Records whose indexed field equals ``value``."""
        coll = self._collection(collection)
        if index not in coll.indexes:
            raise ValidationFailed(f"Collection {collection!r} has no index {index!r}")
        key = _index_value(value)
        if key is None:
            # null is never indexed
            return []

        def read(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            try:
                rows = conn.execute(
                    f'SELECT body FROM "{coll.name}" WHERE {_index_column(index)} = ?',
                    (key,),
                ).fetchall()
            except sqlite3.Error as e:
                raise TransactionFailed(f"Index read of {coll.name}.{index} failed: {e}") from e
            return [decode_record(row["body"]) for row in rows]

        return await self._run(read)

    async def count(self, collection: str) -> int:
        """Count records in a collection."""
        coll = self._collection(collection)

        def read(conn: sqlite3.Connection) -> int:
            try:
                return conn.execute(f'SELECT COUNT(*) FROM "{coll.name}"').fetchone()[0]
            except sqlite3.Error as e:
                raise TransactionFailed(f"Count of {coll.name} failed: {e}") from e

        return await self._run(read)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    async def put(self, collection: str, record: dict[str, Any]) -> None:
        """
        Insert or replace a whole record, keyed by its primary key.

        Any existing record with the same key is replaced entirely.

        Raises:
            ValidationFailed: If the record has no string key
            TransactionFailed: If the write did not commit
        """
        coll = self._collection(collection)
        pk = record.get(coll.key)
        if not isinstance(pk, str) or not pk:
            raise ValidationFailed(f"{collection} record needs a non-empty {coll.key!r}")
        try:
            body = encode_record(record)
        except (TypeError, ValueError) as e:
            raise ValidationFailed(f"{collection}/{pk} is not storable: {e}") from e

        columns = ["pk", "body"] + [_index_column(f) for f in coll.indexes]
        values = [pk, body] + [_index_value(record.get(f)) for f in coll.indexes]
        placeholders = ", ".join("?" * len(columns))

        def write(conn: sqlite3.Connection) -> None:
            try:
                conn.execute(
                    f'INSERT OR REPLACE INTO "{coll.name}" ({", ".join(columns)}) '
                    f"VALUES ({placeholders})",
                    values,
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise TransactionFailed(f"Write of {coll.name}/{pk} failed: {e}") from e

        await self._run(write)

    async def delete(self, collection: str, id: str) -> None:
        """Remove a record. Deleting an absent id is a no-op."""
        coll = self._collection(collection)

        def write(conn: sqlite3.Connection) -> None:
            try:
                conn.execute(f'DELETE FROM "{coll.name}" WHERE pk = ?', (id,))
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise TransactionFailed(f"Delete of {coll.name}/{id} failed: {e}") from e

        await self._run(write)

    async def clear(self, collection: str) -> int:
        """
        Delete all records in a collection.

        Returns:
            Number of records deleted
        """
        coll = self._collection(collection)

        def write(conn: sqlite3.Connection) -> int:
            try:
                cursor = conn.execute(f'DELETE FROM "{coll.name}"')
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise TransactionFailed(f"Clear of {coll.name} failed: {e}") from e
            return cursor.rowcount

        return await self._run(write)
