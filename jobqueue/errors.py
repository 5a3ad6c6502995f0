from pathlib import Path
from typing import Optional, Union


class QueueError(Exception):
    """Base error for queue engines, import and export."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        self.message = message
        self.path = str(path) if path is not None else None
        super().__init__(message)

    def __str__(self) -> str:
        if self.path and self.path not in self.message:
            return f"{self.message}: {self.path}"
        return self.message


class ConfigurationError(QueueError):
    """Missing or unreadable source, missing header, profile without an id alias."""


class StorageError(QueueError):
    """Write, rename or database failure. The previous on-disk state is intact."""


class UnknownJobError(QueueError, LookupError):
    """Mutation of an id the queue does not hold."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Unknown id: {job_id}")
