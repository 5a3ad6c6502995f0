from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .utils import one_line


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    OK = "ok"
    ERROR = "error"


CORE_FIELDS = ("processed", "in_progress", "status", "result", "updated_at", "last_error")
REQUIRED_COLUMNS = ("id",) + CORE_FIELDS
EXTRAS_COLUMN = "extras"

TRUTHY = {"1", "true", "yes", "y", "on", "ok"}
FALSY = {"", "0", "false", "no", "n", "off"}


class Job(BaseModel):
    id: str = Field(min_length=1)
    processed: bool = False
    in_progress: bool = False
    status: JobStatus = JobStatus.QUEUED
    result: Optional[int] = None  # None = never attempted, 1 = ok, 0 = failed
    updated_at: Optional[str] = None
    last_error: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return coerce_status(v)

    def core(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "processed": int(self.processed),
            "in_progress": int(self.in_progress),
            "status": self.status.value,
            "result": self.result,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
        }

    def as_record(self) -> Dict[str, Any]:
        """Flat export view: extras first, core fields win on a name clash."""
        return {**self.extras, **self.core()}


class Progress(BaseModel):
    total: int = 0
    done: int = 0
    errors: int = 0
    in_progress: int = 0
    remaining: int = 0

    @classmethod
    def build(cls, total: int, done: int, errors: int, in_progress: int) -> "Progress":
        remaining = max(0, total - done - errors - in_progress)
        return cls(total=total, done=done, errors=errors, in_progress=in_progress, remaining=remaining)


# -----------------------------
# Core value coercion
# -----------------------------
def coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower() if value is not None else ""
    if text in TRUTHY:
        return True
    if text in FALSY:
        return False
    raise ValueError(f"not a flag value: {value!r}")


def coerce_status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    text = str(value).strip().lower() if value is not None else ""
    if text == "":
        return JobStatus.QUEUED
    try:
        return JobStatus(text)
    except ValueError:
        raise ValueError(f"unknown status: {value!r}") from None


def coerce_core(field: str, value: Any) -> Any:
    """Typed value of a core field as both engines store it."""
    if field in ("processed", "in_progress"):
        return int(coerce_flag(value))
    if field == "status":
        return coerce_status(value).value
    if field == "result":
        if value is None or (isinstance(value, str) and value.strip() == ""):
            return None
        return int(coerce_flag(value))
    if field in ("updated_at", "last_error"):
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        return one_line(text) if field == "last_error" else text
    raise KeyError(field)


def coerce_core_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce every non-null core entry; None means "absent from source" and is dropped."""
    return {k: coerce_core(k, v) for k, v in fields.items() if k in CORE_FIELDS and v is not None}


def reconcile(current: Dict[str, Any], supplied: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply coerced core fields over the current state and keep
    (processed, in_progress, status) consistent.
    A supplied status drives the flags, except a plain "queued" status
    supplied together with flags, where the flags drive the status.
    """
    merged = {**current, **supplied}
    status = coerce_status(merged.get("status"))
    processed = bool(merged.get("processed"))
    in_progress = bool(merged.get("in_progress"))
    flags_supplied = "processed" in supplied or "in_progress" in supplied

    if "status" in supplied and (status is not JobStatus.QUEUED or not flags_supplied):
        processed = status is JobStatus.OK
        in_progress = status is JobStatus.IN_PROGRESS
    elif processed:
        status, in_progress = JobStatus.OK, False
    elif in_progress:
        status = JobStatus.IN_PROGRESS
    elif status in (JobStatus.OK, JobStatus.IN_PROGRESS):
        status = JobStatus.QUEUED

    merged.update(processed=int(processed), in_progress=int(in_progress), status=status.value)
    return merged
