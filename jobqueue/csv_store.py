import json
import os
import threading
from contextlib import contextmanager, suppress
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar, Union

from loguru import logger

from .errors import ConfigurationError, StorageError, UnknownJobError
from .models import (
    CORE_FIELDS,
    EXTRAS_COLUMN,
    FALSY,
    REQUIRED_COLUMNS,
    Job,
    JobStatus,
    Progress,
    coerce_core,
    coerce_core_fields,
    reconcile,
)
from .utils import DEFAULT_DELIMITER, clean, clean_header, csv_reader, csv_writer, now_str, parse_ts, to_text, utcnow

T = TypeVar("T")
Row = Dict[str, str]


class _Snapshot:
    """Copy of the table taken before a write or batch; dirty marks batch changes."""

    def __init__(self, header: List[str], rows: List[Row], index: Dict[str, int]):
        self.header = list(header)
        self.rows = [dict(r) for r in rows]
        self.index = dict(index)
        self.dirty = False


def _is_clear(cell: str) -> bool:
    return cell.strip().lower() in FALSY


def _eligible(row: Row) -> bool:
    return (
        _is_clear(row.get("processed", ""))
        and _is_clear(row.get("in_progress", ""))
        and row.get("status", "").strip().lower() in ("", JobStatus.QUEUED.value)
    )


class CsvQueue:
    """
    Flat-file queue engine: the delimited file is the store.
    Rows live in memory in file order with an id -> position index; every mutation
    rewrites the whole file atomically (once per batch inside perform_batch).
    Unknown ids passed to mark_success/mark_failure/update_by_id raise UnknownJobError.
    """

    def __init__(self, path: Union[str, Path], delimiter: str = DEFAULT_DELIMITER):
        self.path = Path(path)
        self.delimiter = delimiter
        self.header: List[str] = []
        self.rows: List[Row] = []
        self._index: Dict[str, int] = {}
        self._batch: Optional[_Snapshot] = None
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path: Union[str, Path], delimiter: str = DEFAULT_DELIMITER) -> "CsvQueue":
        """Load the queue file, creating it with just the required header if missing."""
        path = Path(path)
        if not path.is_file():
            try:
                with path.open("w", newline="", encoding="utf-8") as fh:
                    csv_writer(fh, delimiter).writerow(list(REQUIRED_COLUMNS) + [EXTRAS_COLUMN])
            except OSError as e:
                raise StorageError(f"Cannot create queue file ({e})", path) from e
            logger.info("Created queue file {}", path)
        return cls.load(path, delimiter)

    @classmethod
    def load(cls, path: Union[str, Path], delimiter: str = DEFAULT_DELIMITER) -> "CsvQueue":
        """Load an existing queue file. Stuck in_progress rows are swept and saved at once."""
        path = Path(path)
        if not path.is_file() or not os.access(path, os.R_OK):
            raise ConfigurationError("Queue file not found or is not readable", path)
        q = cls(path, delimiter)
        q._read_all()
        q._ensure_columns(list(REQUIRED_COLUMNS) + [EXTRAS_COLUMN])
        q._rebuild_index()
        if q._reset_in_progress() > 0:
            q.save()
        return q

    def close(self) -> None:
        """Rows are already on disk; nothing to release."""

    def __enter__(self) -> "CsvQueue":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------------------
    # Claim / complete
    # -----------------------------
    def fetch_next(self) -> Optional[Job]:
        """FIFO: first eligible row is marked in_progress and persisted."""
        with self._lock:
            for i, row in enumerate(self.rows):
                if not _eligible(row) or self._index.get(row["id"]) != i:
                    continue
                with self._write():
                    row.update(processed="0", in_progress="1", status=JobStatus.IN_PROGRESS.value, updated_at=now_str())
                logger.debug("Claimed {}", row["id"])
                return self._job(row)
        return None

    def mark_success(self, job_id: str) -> None:
        self.update_by_id(
            job_id,
            {
                "processed": 1,
                "in_progress": 0,
                "status": JobStatus.OK.value,
                "result": 1,
                "updated_at": now_str(),
                "last_error": "",
            },
        )

    def mark_failure(self, job_id: str, error: str) -> None:
        self.update_by_id(
            job_id,
            {
                "processed": 0,
                "in_progress": 0,
                "status": JobStatus.ERROR.value,
                "result": 0,
                "updated_at": now_str(),
                "last_error": coerce_core("last_error", error) or "",
            },
        )

    # -----------------------------
    # Writes
    # -----------------------------
    def update_by_id(self, job_id: str, fields: Dict[str, Any]) -> None:
        """Write fields onto the row. Keys outside the header become new columns."""
        with self._lock, self._write():
            idx = self._index.get(clean(job_id))
            if idx is None:
                raise UnknownJobError(job_id)
            row = self.rows[idx]
            plain = {k: v for k, v in fields.items() if k not in CORE_FIELDS and k != "id"}
            if EXTRAS_COLUMN in plain and not isinstance(plain[EXTRAS_COLUMN], str):
                plain[EXTRAS_COLUMN] = json.dumps(plain[EXTRAS_COLUMN], ensure_ascii=False)
            self._ensure_columns(plain.keys())
            for k, v in plain.items():
                row[k] = to_text(v)
            self._apply_core(row, coerce_core_fields(fields))

    def upsert(self, job_id: str, core: Dict[str, Any], extras: Dict[str, Any], update_core: bool) -> None:
        """
        Insert if absent, always merge extras into the JSON extras cell.
        Core fields overwrite an existing row only with update_core.
        """
        job_id = clean(job_id)
        if not job_id:
            raise ValueError("job id must not be empty")
        supplied = coerce_core_fields(core)
        with self._lock, self._write():
            idx = self._index.get(job_id)
            if idx is None:
                row = {col: "" for col in self.header}
                row.update(id=job_id, processed="0", in_progress="0", status=JobStatus.QUEUED.value)
                row[EXTRAS_COLUMN] = self._dump_extras(dict(extras))
                self._apply_core(row, supplied)
                self.rows.append(row)
                self._index[job_id] = len(self.rows) - 1
            else:
                row = self.rows[idx]
                row[EXTRAS_COLUMN] = self._dump_extras({**self._extras(row), **extras})
                if update_core:
                    self._apply_core(row, supplied)

    def _apply_core(self, row: Row, supplied: Dict[str, Any]) -> None:
        """Write already coerced core values and reconcile the status flags."""
        if not supplied:
            return
        current = self._job(row).core()
        for k, v in reconcile(current, supplied).items():
            if k in CORE_FIELDS:
                row[k] = to_text(v)

    def get_extras(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            idx = self._index.get(clean(job_id))
            return self._extras(self.rows[idx]) if idx is not None else {}

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            idx = self._index.get(clean(job_id))
            return self._job(self.rows[idx]) if idx is not None else None

    # -----------------------------
    # Batches
    # -----------------------------
    @contextmanager
    def batch(self) -> Iterator["CsvQueue"]:
        """
        One file rewrite for everything inside. A nested batch joins the outer one.
        If the body raises, the in-memory table goes back to its pre-batch state
        and the file is not touched.
        """
        with self._lock:
            if self._batch is not None:
                yield self
                return
            session = self._batch = _Snapshot(self.header, self.rows, self._index)
            try:
                yield self
                if session.dirty:
                    self.save()
            except BaseException:
                self._restore(session)
                logger.debug("Discarded batch changes on {}", self.path)
                raise
            finally:
                self._batch = None

    def perform_batch(self, fn: Callable[["CsvQueue"], T]) -> T:
        with self.batch() as q:
            return fn(q)

    # -----------------------------
    # Bulk state changes
    # -----------------------------
    def reset_all(self) -> None:
        with self._lock, self._write():
            for row in self.rows:
                row.update(
                    processed="0",
                    in_progress="0",
                    status=JobStatus.QUEUED.value,
                    result="",
                    updated_at="",
                    last_error="",
                )

    def recover_stale_in_progress(self, minutes: int = 60) -> int:
        """Release rows claimed more than `minutes` ago. Unparseable timestamps count as stale."""
        cutoff = utcnow() - timedelta(minutes=minutes)
        with self._lock:
            stale = [
                row
                for row in self.rows
                if not _is_clear(row.get("in_progress", ""))
                and (parse_ts(row.get("updated_at")) or cutoff) <= cutoff
            ]
            if stale:
                with self._write():
                    for row in stale:
                        self._release(row)
                logger.info("Released {} stale in_progress job(s) in {}", len(stale), self.path)
        return len(stale)

    # -----------------------------
    # Reads
    # -----------------------------
    def fetch_all_for_export(self) -> Iterator[Dict[str, Any]]:
        """Merged view per row: extras, then the row's own columns on top."""
        with self._lock:
            rows = [dict(r) for r in self.rows]
        for row in rows:
            plain = {k: v for k, v in row.items() if k != EXTRAS_COLUMN}
            yield {**self._extras(row), **plain}

    def total_items(self) -> int:
        with self._lock:
            return len(self.rows)

    def progress(self) -> Progress:
        done = errors = in_progress = 0
        with self._lock:
            for row in self.rows:
                if not _is_clear(row.get("processed", "")):
                    done += 1
                if row.get("status", "").strip().lower() == JobStatus.ERROR.value:
                    errors += 1
                if not _is_clear(row.get("in_progress", "")):
                    in_progress += 1
            total = len(self.rows)
        return Progress.build(total, done, errors, in_progress)

    def debug_state(self) -> List[Dict[str, str]]:
        """Compact per-row state snapshot for logging."""
        with self._lock:
            return [
                {"id": r["id"], "p": r["processed"], "ip": r["in_progress"], "st": r["status"], "res": r["result"]}
                for r in self.rows
            ]

    # -----------------------------
    # Persistence
    # -----------------------------
    @contextmanager
    def _write(self) -> Iterator[None]:
        """Wrap one mutation: saved on exit, or only marked dirty inside a batch. Undone if it fails."""
        if self._batch is not None:
            yield
            self._batch.dirty = True
            return
        snapshot = _Snapshot(self.header, self.rows, self._index)
        try:
            yield
            self.save()
        except BaseException:
            self._restore(snapshot)
            raise

    def _restore(self, snapshot: _Snapshot) -> None:
        self.header, self.rows, self._index = snapshot.header, snapshot.rows, snapshot.index

    def save(self) -> None:
        """
        Atomic rewrite: temp sibling, flush, fsync, rename over the original.
        A failure leaves the previous file intact.
        """
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        try:
            with tmp.open("w", newline="", encoding="utf-8") as fh:
                writer = csv_writer(fh, self.delimiter)
                writer.writerow(self.header)
                for row in self.rows:
                    writer.writerow([row.get(col, "") for col in self.header])
                fh.flush()
                with suppress(OSError):
                    os.fsync(fh.fileno())
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Cannot write temp file ({e})", tmp) from e
        try:
            os.replace(tmp, self.path)
        except OSError:
            try:
                self.path.unlink(missing_ok=True)
                os.rename(tmp, self.path)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise StorageError(f"Cannot replace queue file ({e})", self.path) from e

    # ---------- internals ----------

    def _read_all(self) -> None:
        try:
            fh = self.path.open("r", newline="", encoding="utf-8-sig")
        except OSError as e:
            raise ConfigurationError(f"Cannot read queue file ({e})", self.path) from e
        with fh:
            reader = csv_reader(fh, self.delimiter)
            raw_header = next(reader, None)
            if raw_header is None:
                raise ConfigurationError("Missing header in queue file", self.path)
            self.header = [clean_header(h) for h in raw_header]
            self.rows = []
            for cells in reader:
                if not cells or all(clean(c) == "" for c in cells):
                    continue
                row: Row = {}
                for i in range(max(len(self.header), len(cells))):
                    key = self.header[i] if i < len(self.header) else f"col_{i}"
                    row[key] = clean(cells[i]) if i < len(cells) else ""
                # accidental header duplicates
                if row.get("id", "") in ("", "id"):
                    continue
                for col in REQUIRED_COLUMNS:
                    row.setdefault(col, "")
                row["processed"] = row["processed"] or "0"
                row["in_progress"] = row["in_progress"] or "0"
                row["status"] = row["status"] or JobStatus.QUEUED.value
                self.rows.append(row)
        # columns only present in over-long rows
        self._ensure_columns([k for row in self.rows for k in row])

    def _ensure_columns(self, cols: Iterable[str]) -> None:
        added = [c for c in dict.fromkeys(cols) if c and c not in self.header]
        if not added:
            return
        self.header.extend(added)
        for row in self.rows:
            for c in added:
                row.setdefault(c, "")

    def _rebuild_index(self) -> None:
        self._index = {}
        for i, row in enumerate(self.rows):
            job_id = row["id"]
            if job_id in self._index:
                logger.warning("Duplicate id {} at row {} in {}; only the first is queued", job_id, i + 2, self.path)
                continue
            self._index[job_id] = i

    def _reset_in_progress(self) -> int:
        n = 0
        for row in self.rows:
            if not _is_clear(row.get("in_progress", "")):
                self._release(row)
                n += 1
        if n:
            logger.info("Recovered {} stuck in_progress job(s) in {}", n, self.path)
        return n

    @staticmethod
    def _release(row: Row) -> None:
        row["in_progress"] = "0"
        if row.get("status", "").strip().lower() == JobStatus.IN_PROGRESS.value:
            row["status"] = JobStatus.QUEUED.value

    def _extras(self, row: Row) -> Dict[str, Any]:
        raw = row.get(EXTRAS_COLUMN, "")
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable extras for {} in {}", row.get("id"), self.path)
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _dump_extras(extras: Dict[str, Any]) -> str:
        return json.dumps(extras, ensure_ascii=False) if extras else ""

    def _job(self, row: Row) -> Job:
        """Typed view of a row; unreadable core cells fall back to their defaults."""
        data: Dict[str, Any] = {"id": row["id"], "extras": self._extras(row)}
        for k in CORE_FIELDS:
            try:
                data[k] = coerce_core(k, row.get(k, ""))
            except ValueError:
                continue
        return Job(**data)
