"""
Durable local queue of sales captured while offline.

The queue lives in a small SQLite key space. One slot (QUEUE_KEY) holds the
JSON list of {sequence_number, sale} records in ascending order; a second slot
holds the last issued sequence number so numbers stay monotonic across clear()
and restarts. Every read-modify-write happens inside BEGIN IMMEDIATE under a
process lock, so the till server and a sync worker can share the file.
"""
import json
import logging
import sqlite3
import threading
from typing import Callable, List

from till_config import QUEUE_DB_PATH, QUEUE_KEY
from till_errors import PersistenceError
from till_models import PendingSaleRecord, Sale, iso_now

logger = logging.getLogger(__name__)


class LocalDurableQueue:
    def __init__(self, db_path: str = QUEUE_DB_PATH, key: str = QUEUE_KEY):
        self.db_path = db_path
        self.key = key
        self._seq_key = f"{key}.last_sequence"
        self._lock = threading.RLock()
        self._listeners: List[Callable[[], None]] = []
        try:
            conn = self._connect()
            try:
                self._init_schema(conn)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open offline queue at {db_path}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL;")
        return conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS local_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_utc TEXT NOT NULL
            )
        """)

    def _get(self, conn: sqlite3.Connection, key: str):
        row = conn.execute("SELECT value FROM local_store WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def _put(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute("""
            INSERT INTO local_store (key, value, updated_utc) VALUES (?,?,?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
        """, (key, value, iso_now()))

    def _load_records(self, conn: sqlite3.Connection) -> List[PendingSaleRecord]:
        raw = self._get(conn, self.key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
            records = [PendingSaleRecord.from_dict(item) for item in data]
        except (ValueError, KeyError, TypeError) as exc:
            # never discard unreadable sales; make the caller deal with it
            raise PersistenceError(f"Offline queue slot {self.key!r} is unreadable: {exc}") from exc
        records.sort(key=lambda r: r.sequence_number)
        return records

    def _store_records(self, conn: sqlite3.Connection, records: List[PendingSaleRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], separators=(",", ":"), ensure_ascii=False)
        self._put(conn, self.key, payload)

    def _mutate(self, func):
        """Run func(conn) inside one immediate transaction and notify listeners."""
        with self._lock:
            conn = None
            try:
                conn = self._connect()
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = func(conn)
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as exc:
                raise PersistenceError(f"Offline queue write failed: {exc}") from exc
            finally:
                if conn is not None:
                    conn.close()
        self._notify()
        return result

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:
                logger.exception("Offline queue listener failed")

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def enqueue(self, sale: Sale) -> int:
        """Append a sale and return its sequence number."""
        def _op(conn):
            records = self._load_records(conn)
            last = int(self._get(conn, self._seq_key) or 0)
            if records:
                last = max(last, records[-1].sequence_number)
            seq = last + 1
            records.append(PendingSaleRecord(sequence_number=seq, sale=sale))
            self._store_records(conn, records)
            self._put(conn, self._seq_key, str(seq))
            return seq

        seq = self._mutate(_op)
        logger.info("Queued sale %s offline as #%d (%d line(s))", sale.sale_id, seq, len(sale.lines))
        return seq

    def peek_all(self) -> List[PendingSaleRecord]:
        with self._lock:
            conn = None
            try:
                conn = self._connect()
                return self._load_records(conn)
            except sqlite3.Error as exc:
                raise PersistenceError(f"Offline queue read failed: {exc}") from exc
            finally:
                if conn is not None:
                    conn.close()

    def remove(self, sequence_number: int) -> bool:
        def _op(conn):
            records = self._load_records(conn)
            kept = [r for r in records if r.sequence_number != sequence_number]
            if len(kept) == len(records):
                return False
            self._store_records(conn, kept)
            return True

        removed = self._mutate(_op)
        if removed:
            logger.debug("Removed offline sale #%d", sequence_number)
        return removed

    def clear(self) -> int:
        def _op(conn):
            records = self._load_records(conn)
            self._store_records(conn, [])
            return len(records)

        count = self._mutate(_op)
        if count:
            logger.info("Cleared %d offline sale(s)", count)
        return count

    def count(self) -> int:
        return len(self.peek_all())

    def has_pending(self) -> bool:
        return self.count() > 0
