import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .models import REQUIRED_COLUMNS, TRUTHY, JobStatus

Transform = Callable[[Any], Any]


def _blank(v: Any) -> bool:
    return v is None or (isinstance(v, str) and v.strip() == "")


def flag(v: Any) -> Optional[int]:
    """1/true/yes/ok (and y/on) -> 1, any other text -> 0, blank -> None."""
    if _blank(v):
        return None
    return int(str(v).strip().lower() in TRUTHY)


def flag_strict(v: Any) -> Optional[int]:
    """Like flag but "ok" does not count as true."""
    if _blank(v):
        return None
    return int(str(v).strip().lower() in {"1", "true", "yes"})


def status(v: Any) -> str:
    return JobStatus.QUEUED.value if v is None else str(v).strip().lower()


def blank_to_none(v: Any) -> Any:
    return None if _blank(v) else v


def to_int(v: Any) -> Optional[int]:
    return None if _blank(v) else int(str(v).strip())


TRANSFORMS: Dict[str, Transform] = {
    "flag": flag,
    "flag_strict": flag_strict,
    "status": status,
    "lower": lambda v: v if v is None else str(v).lower(),
    "upper": lambda v: v if v is None else str(v).upper(),
    "strip": lambda v: v if v is None else str(v).strip(),
    "int": to_int,
    "blank_to_none": blank_to_none,
}


class MappingProfile(BaseModel):
    """
    Declarative import/export schema.

    aliases: logical field -> accepted header texts (matched case/whitespace-insensitively).
    defaults: value for a logical field left blank (core fields only with update_core).
    transforms: logical field -> registered transform name or a callable value -> value.
    passthrough_unknown: header columns without an alias become extras.
    export_columns / labels: projection and header labels for export.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    aliases: Dict[str, List[str]] = Field(default_factory=dict)
    defaults: Dict[str, Any] = Field(default_factory=lambda: {"status": JobStatus.QUEUED.value})
    transforms: Dict[str, Union[str, Transform]] = Field(default_factory=dict)
    passthrough_unknown: bool = True
    export_columns: List[str] = Field(default_factory=lambda: list(REQUIRED_COLUMNS))
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("transforms")
    @classmethod
    def _known_transforms(cls, v: Dict[str, Union[str, Transform]]):
        for field, t in v.items():
            if isinstance(t, str) and t not in TRANSFORMS:
                raise ValueError(f"unknown transform {t!r} for {field!r}; known: {', '.join(sorted(TRANSFORMS))}")
        return v

    def transform(self, field: str, value: Any) -> Any:
        t = self.transforms.get(field)
        if t is None:
            return value
        fn = TRANSFORMS[t] if isinstance(t, str) else t
        return fn(value)

    def label(self, column: str) -> str:
        return self.labels.get(column, column)

    @classmethod
    def identity(cls, **overrides: Any) -> "MappingProfile":
        """Every core field accepted under its own name."""
        return cls(aliases={f: [f] for f in REQUIRED_COLUMNS}, **overrides)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MappingProfile":
        """Load a JSON profile; transforms are given by registered name."""
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls.model_validate(data)
        except OSError as e:
            raise ConfigurationError(f"Cannot read profile ({e})", path) from e
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid profile ({e})", path) from e
