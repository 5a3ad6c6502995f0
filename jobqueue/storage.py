import json
import sqlite3
import threading
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

from loguru import logger

from .errors import QueueError, StorageError, UnknownJobError
from .models import CORE_FIELDS, EXTRAS_COLUMN, Job, Progress, coerce_core_fields, reconcile
from .utils import clean, now_str, one_line

T = TypeVar("T")

TABLE = "jobs"
SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE}(
  id TEXT PRIMARY KEY,
  processed INTEGER NOT NULL DEFAULT 0,
  in_progress INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'queued',
  result INTEGER,
  updated_at TEXT,
  last_error TEXT,
  extras TEXT
);
CREATE INDEX IF NOT EXISTS idx_{TABLE}_scan ON {TABLE}(processed, in_progress, status);
"""

ELIGIBLE = "processed=0 AND in_progress=0 AND status IN ('', 'queued')"


def locked(fn):
    """Serialize a public call on the shared connection; database errors become StorageError."""

    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            try:
                return fn(self, *args, **kwargs)
            except sqlite3.Error as e:
                raise StorageError(f"{fn.__name__} failed ({e})", self.path) from e

    return wrapper


def _load_extras(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable extras blob: {}", raw[:80])
        return {}
    return data if isinstance(data, dict) else {}


def _dump_extras(extras: Dict[str, Any]) -> Optional[str]:
    return json.dumps(extras, ensure_ascii=False) if extras else None


def _job(row: sqlite3.Row) -> Job:
    data = dict(row)
    data["extras"] = _load_extras(data.pop(EXTRAS_COLUMN, None))
    return Job(**data)


class SqliteQueue:
    """
    Transactional queue engine on a single SQLite file.
    Tuned for one writer process: WAL journal, synchronous=NORMAL, temp tables in memory.
    Unknown ids passed to mark_success/mark_failure/update_by_id raise UnknownJobError.
    """

    def __init__(self, conn: sqlite3.Connection, path: Union[str, Path]):
        self._conn = conn
        self.path = str(path)
        self._lock = threading.RLock()

    @classmethod
    def open(cls, db_path: Union[str, Path], timeout: float = 30.0) -> "SqliteQueue":
        """Open or create the database, then sweep rows left in_progress by a dead run."""
        try:
            conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open queue database ({e})", db_path) from e
        q = cls(conn, db_path)
        q.clear_in_progress()
        return q

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SqliteQueue":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------------------
    # Transactions
    # -----------------------------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT; a nested call joins the open transaction."""
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot start transaction ({e})", self.path) from e
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(f"Transaction failed ({e})", self.path) from e
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")
            logger.debug("Rolled back transaction on {}", self.path)

    @contextmanager
    def batch(self) -> Iterator["SqliteQueue"]:
        with self.transaction():
            yield self

    def perform_batch(self, fn: Callable[["SqliteQueue"], T]) -> T:
        with self.batch() as q:
            return fn(q)

    # -----------------------------
    # Claim / complete
    # -----------------------------
    @locked
    def fetch_next(self) -> Optional[Job]:
        """Claim the oldest eligible row. None when nothing is eligible or the claim lost a race."""
        with self.transaction() as conn:
            row = conn.execute(f"SELECT id FROM {TABLE} WHERE {ELIGIBLE} ORDER BY rowid LIMIT 1").fetchone()
            if row is None:
                return None
            job_id = row["id"]
            cur = conn.execute(
                f"UPDATE {TABLE} SET in_progress=1, status='in_progress', updated_at=? WHERE id=? AND {ELIGIBLE}",
                (now_str(), job_id),
            )
            if cur.rowcount != 1:
                logger.debug("Lost claim race for {}", job_id)
                return None
            job = conn.execute(f"SELECT * FROM {TABLE} WHERE id=?", (job_id,)).fetchone()
        logger.debug("Claimed {}", job_id)
        return _job(job)

    @locked
    def mark_success(self, job_id: str) -> None:
        job_id = clean(job_id)
        cur = self._conn.execute(
            f"""UPDATE {TABLE}
                   SET processed=1, in_progress=0, status='ok', result=1, updated_at=?, last_error=NULL
                 WHERE id=?""",
            (now_str(), job_id),
        )
        if cur.rowcount == 0:
            raise UnknownJobError(job_id)

    @locked
    def mark_failure(self, job_id: str, error: str) -> None:
        job_id = clean(job_id)
        cur = self._conn.execute(
            f"""UPDATE {TABLE}
                   SET processed=0, in_progress=0, status='error', result=0, updated_at=?, last_error=?
                 WHERE id=?""",
            (now_str(), one_line(error), job_id),
        )
        if cur.rowcount == 0:
            raise UnknownJobError(job_id)

    # -----------------------------
    # Writes
    # -----------------------------
    @locked
    def upsert(self, job_id: str, core: Dict[str, Any], extras: Dict[str, Any], update_core: bool) -> None:
        """
        Insert if absent, always merge extras. Core fields overwrite existing
        columns only with update_core; a fresh row takes them either way.
        """
        job_id = clean(job_id)
        if not job_id:
            raise ValueError("job id must not be empty")
        supplied = coerce_core_fields(core)
        with self.transaction() as conn:
            created = conn.execute(f"INSERT OR IGNORE INTO {TABLE}(id) VALUES(?)", (job_id,)).rowcount == 1
            row = dict(conn.execute(f"SELECT * FROM {TABLE} WHERE id=?", (job_id,)).fetchone())
            merged_extras = {**_load_extras(row.pop(EXTRAS_COLUMN)), **extras}
            state = reconcile(row, supplied) if (created or update_core) and supplied else row
            self._write_row(conn, job_id, state, merged_extras)

    @locked
    def update_by_id(self, job_id: str, fields: Dict[str, Any]) -> None:
        """
        Set core columns directly and merge every other key into extras.
        An "extras" mapping in fields replaces the stored extras before the merge.
        """
        job_id = clean(job_id)
        core = {k: v for k, v in fields.items() if k in CORE_FIELDS}
        delta = {k: v for k, v in fields.items() if k not in CORE_FIELDS and k not in ("id", EXTRAS_COLUMN)}
        with self.transaction() as conn:
            found = conn.execute(f"SELECT * FROM {TABLE} WHERE id=?", (job_id,)).fetchone()
            if found is None:
                raise UnknownJobError(job_id)
            row = dict(found)
            extras = _load_extras(row.pop(EXTRAS_COLUMN))
            if EXTRAS_COLUMN in fields:
                base = fields[EXTRAS_COLUMN]
                extras = dict(base) if isinstance(base, dict) else _load_extras(base)
            extras.update(delta)
            supplied = coerce_core_fields(core)
            self._write_row(conn, job_id, reconcile(row, supplied) if supplied else row, extras)

    def _write_row(self, conn: sqlite3.Connection, job_id: str, state: Dict[str, Any], extras: Dict[str, Any]) -> None:
        conn.execute(
            f"""UPDATE {TABLE}
                   SET processed=?, in_progress=?, status=?, result=?, updated_at=?, last_error=?, extras=?
                 WHERE id=?""",
            (
                state["processed"],
                state["in_progress"],
                state["status"],
                state["result"],
                state["updated_at"],
                state["last_error"],
                _dump_extras(extras),
                job_id,
            ),
        )

    @locked
    def set_extras(self, job_id: str, extras: Dict[str, Any]) -> None:
        self.update_by_id(job_id, {EXTRAS_COLUMN: extras})

    @locked
    def get_extras(self, job_id: str) -> Dict[str, Any]:
        job_id = clean(job_id)
        row = self._conn.execute(f"SELECT extras FROM {TABLE} WHERE id=?", (job_id,)).fetchone()
        return _load_extras(row["extras"]) if row else {}

    @locked
    def get(self, job_id: str) -> Optional[Job]:
        job_id = clean(job_id)
        row = self._conn.execute(f"SELECT * FROM {TABLE} WHERE id=?", (job_id,)).fetchone()
        return _job(row) if row else None

    # -----------------------------
    # Bulk state changes
    # -----------------------------
    @locked
    def clear_in_progress(self) -> int:
        """Rows claimed by a run that never finished go back to queued."""
        cur = self._conn.execute(
            f"""UPDATE {TABLE}
                   SET in_progress=0,
                       status=CASE WHEN status='in_progress' THEN 'queued' ELSE status END
                 WHERE in_progress=1"""
        )
        if cur.rowcount:
            logger.info("Recovered {} stuck in_progress job(s) in {}", cur.rowcount, self.path)
        return cur.rowcount

    @locked
    def reset_all(self) -> None:
        self._conn.execute(
            f"""UPDATE {TABLE}
                   SET processed=0, in_progress=0, status='queued', result=NULL, updated_at=NULL, last_error=NULL"""
        )

    @locked
    def retry_errors(self) -> int:
        """Put every failed job back in the queue. Returns how many."""
        cur = self._conn.execute(
            f"""UPDATE {TABLE}
                   SET status='queued', result=NULL, last_error=NULL, updated_at=?
                 WHERE processed=0 AND status='error'""",
            (now_str(),),
        )
        return cur.rowcount

    # -----------------------------
    # Reads
    # -----------------------------
    @locked
    def counts(self) -> Dict[str, int]:
        row = self._conn.execute(
            f"""SELECT
                  COALESCE(SUM(CASE WHEN processed=1 THEN 1 ELSE 0 END), 0) AS done,
                  COALESCE(SUM(CASE WHEN {ELIGIBLE} THEN 1 ELSE 0 END), 0) AS queued,
                  COALESCE(SUM(CASE WHEN status='error' THEN 1 ELSE 0 END), 0) AS errors,
                  COALESCE(SUM(CASE WHEN in_progress=1 THEN 1 ELSE 0 END), 0) AS in_progress
                FROM {TABLE}"""
        ).fetchone()
        return {k: int(row[k]) for k in ("done", "queued", "errors", "in_progress")}

    @locked
    def progress(self) -> Progress:
        row = self._conn.execute(
            f"""SELECT
                  COUNT(*) AS total,
                  COALESCE(SUM(CASE WHEN processed=1 THEN 1 ELSE 0 END), 0) AS done,
                  COALESCE(SUM(CASE WHEN status='error' THEN 1 ELSE 0 END), 0) AS errors,
                  COALESCE(SUM(CASE WHEN in_progress=1 THEN 1 ELSE 0 END), 0) AS in_progress
                FROM {TABLE}"""
        ).fetchone()
        return Progress.build(int(row["total"]), int(row["done"]), int(row["errors"]), int(row["in_progress"]))

    @locked
    def total_items(self) -> int:
        return int(self._conn.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0])

    @locked
    def _page(self, after_rowid: int, size: int) -> List[sqlite3.Row]:
        return self._conn.execute(
            f"SELECT rowid AS _rowid, * FROM {TABLE} WHERE rowid > ? ORDER BY rowid LIMIT ?",
            (after_rowid, size),
        ).fetchall()

    def fetch_all_for_export(self, page_size: int = 500) -> Iterator[Dict[str, Any]]:
        """Merged core + extras view of every row, in insertion order, read page by page."""
        last = 0
        while True:
            rows = self._page(last, page_size)
            if not rows:
                return
            for row in rows:
                last = row["_rowid"]
                data = dict(row)
                del data["_rowid"]
                data["extras"] = _load_extras(data.pop(EXTRAS_COLUMN, None))
                yield Job(**data).as_record()

    # -----------------------------
    # Maintenance (never inside a batch)
    # -----------------------------
    def _require_idle(self, what: str) -> None:
        if self._conn.in_transaction:
            raise QueueError(f"Cannot {what} while a transaction is open", self.path)

    @locked
    def vacuum(self, truncate_wal: bool = True) -> None:
        self._require_idle("vacuum")
        mode = str(self._conn.execute("PRAGMA journal_mode").fetchone()[0]).lower()
        if mode == "wal":
            self._conn.execute(f"PRAGMA wal_checkpoint({'TRUNCATE' if truncate_wal else 'FULL'})")
        self._conn.execute("VACUUM")
        self._conn.execute("ANALYZE")

    @locked
    def drop_and_recreate(self) -> None:
        """Drop the queue table and rebuild an empty one."""
        self._require_idle("drop the queue")
        self._conn.execute(f"DROP TABLE IF EXISTS {TABLE}")
        self._conn.executescript(SCHEMA)
        self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        self._conn.execute("VACUUM")
        self._conn.execute("ANALYZE")
        logger.info("Recreated empty queue in {}", self.path)

    @locked
    def delete_database(self) -> None:
        """
        Close the connection and remove the database file with its -wal/-shm files.
        The instance is unusable afterwards; open a new one to start over.
        """
        self._require_idle("delete the database")
        row = self._conn.execute("PRAGMA database_list").fetchone()
        file = row["file"] if row else ""
        if not file or not Path(file).is_file():
            raise StorageError("SQLite database file not found or already deleted", self.path)
        self._conn.close()
        for side in (file + "-wal", file + "-shm", file):
            Path(side).unlink(missing_ok=True)
        logger.info("Deleted queue database {}", file)
