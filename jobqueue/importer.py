from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger

from .engine import QueueEngine
from .errors import ConfigurationError
from .models import CORE_FIELDS, coerce_core_fields
from .profile import MappingProfile
from .utils import DEFAULT_DELIMITER, clean, clean_header, csv_reader


def _norm(text: Any) -> str:
    return clean_header(text).lower()


def _blank(v: Any) -> bool:
    return v is None or v == ""


class CsvImporter:
    """Streams a delimited file through a MappingProfile into queue upserts, in one batch."""

    def __init__(self, queue: QueueEngine):
        self.queue = queue

    def import_file(
        self,
        csv_path: Union[str, Path],
        profile: MappingProfile,
        delimiter: str = DEFAULT_DELIMITER,
        update_core: bool = False,
    ) -> int:
        """
        Upsert every data row and return how many were upserted.

        Header cells are matched against every alias of every logical field.
        Columns mapped to a core field feed the core update, all others become
        extras (under the logical name when aliased, the header text otherwise).
        Rows with a blank id, a repeated header, or values that cannot be read
        are skipped and not counted.
        """
        path = Path(csv_path)
        if not path.is_file():
            raise ConfigurationError("Import file not found", path)
        try:
            fh = path.open("r", newline="", encoding="utf-8-sig")
        except OSError as e:
            raise ConfigurationError(f"Cannot open import file ({e})", path) from e

        with fh:
            reader = csv_reader(fh, delimiter)
            raw_header = next(reader, None)
            if raw_header is None:
                raise ConfigurationError("Missing header", path)
            columns = self._map_header(raw_header, profile)
            if not any(logical == "id" for _, logical in columns):
                raise ConfigurationError("CSV lacks an 'id' alias", path)
            present = {logical for _, logical in columns if logical is not None}

            def consume(q: QueueEngine) -> int:
                count = 0
                for cells in reader:
                    parsed = self._parse_row(cells, columns, present, profile, update_core, reader.line_num)
                    if parsed is None:
                        continue
                    job_id, core, extras = parsed
                    q.upsert(job_id, core, extras, update_core)
                    count += 1
                return count

            count = self.queue.perform_batch(consume)

        logger.info("Imported {} row(s) from {}", count, path)
        return count

    @staticmethod
    def _map_header(raw_header: List[str], profile: MappingProfile) -> List[Tuple[str, Optional[str]]]:
        """(header text, logical field or None) per column position."""
        columns: List[Tuple[str, Optional[str]]] = []
        for cell in raw_header:
            name = clean_header(cell)
            logical = None
            for field, aliases in profile.aliases.items():
                if any(_norm(a) == name.lower() for a in aliases):
                    logical = field
            columns.append((name, logical))
        return columns

    def _parse_row(
        self,
        cells: List[str],
        columns: List[Tuple[str, Optional[str]]],
        present: set,
        profile: MappingProfile,
        update_core: bool,
        line_no: int,
    ) -> Optional[Tuple[str, Dict[str, Any], Dict[str, Any]]]:
        if not cells:
            return None

        logical: Dict[str, Any] = {}
        extras: Dict[str, Any] = {}
        for i, (name, field) in enumerate(columns):
            # cells past the end of a short row are absent, not blank
            v = clean(cells[i]) if i < len(cells) else None
            if field == "id" or field in CORE_FIELDS:
                logical[field] = v
            elif field is not None or (profile.passthrough_unknown and name):
                if not _blank(v):
                    extras[field or name] = v

        job_id = logical.pop("id", None) or ""
        if job_id == "" or job_id.lower() == "id":
            return None

        for key, default in profile.defaults.items():
            if key in CORE_FIELDS:
                if update_core and key in present and _blank(logical.get(key)):
                    logical[key] = default
            elif _blank(extras.get(key)):
                extras[key] = default

        try:
            core = {k: profile.transform(k, v) for k, v in logical.items()}
            extras = {k: profile.transform(k, v) for k, v in extras.items()}
            coerce_core_fields(core)
        except (ValueError, TypeError) as e:
            logger.warning("Skipping row {} ({}): {}", line_no, job_id, e)
            return None
        return job_id, core, extras
