"""Queue engine contract shared by the SQLite and flat-file engines."""

from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, TypeVar, Union, runtime_checkable

from .csv_store import CsvQueue
from .models import Job, Progress
from .storage import SqliteQueue
from .utils import DEFAULT_DELIMITER

T = TypeVar("T")

FLAT_FILE_SUFFIXES = {".csv", ".txt", ".tsv"}


@runtime_checkable
class QueueEngine(Protocol):
    """Claim/update/reset/export operations both engines provide."""

    def fetch_next(self) -> Optional[Job]:
        """Claim the first eligible job in insertion order, or None."""
        raise NotImplementedError

    def mark_success(self, job_id: str) -> None:
        raise NotImplementedError

    def mark_failure(self, job_id: str, error: str) -> None:
        raise NotImplementedError

    def upsert(self, job_id: str, core: Dict[str, Any], extras: Dict[str, Any], update_core: bool) -> None:
        """Insert if absent, merge extras, overwrite non-null core fields when update_core."""
        raise NotImplementedError

    def update_by_id(self, job_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def batch(self) -> AbstractContextManager:
        """Context manager making the enclosed operations durable as one unit."""
        raise NotImplementedError

    def perform_batch(self, fn: Callable[[Any], T]) -> T:
        raise NotImplementedError

    def fetch_all_for_export(self) -> Iterator[Dict[str, Any]]:
        raise NotImplementedError

    def total_items(self) -> int:
        raise NotImplementedError

    def progress(self) -> Progress:
        raise NotImplementedError

    def reset_all(self) -> None:
        raise NotImplementedError

    def get_extras(self, job_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def open_queue(path: Union[str, Path], delimiter: str = DEFAULT_DELIMITER) -> QueueEngine:
    """Flat-file engine for .csv/.txt/.tsv paths, SQLite for anything else."""
    path = Path(path)
    if path.suffix.lower() in FLAT_FILE_SUFFIXES:
        return CsvQueue.open(path, delimiter)
    return SqliteQueue.open(path)
