from pathlib import Path
from typing import Union

from loguru import logger

from .engine import QueueEngine
from .errors import StorageError
from .profile import MappingProfile
from .utils import DEFAULT_DELIMITER, csv_writer, to_text


class CsvExporter:
    """Projects the merged core + extras view of every job onto the profile's export columns."""

    def __init__(self, queue: QueueEngine):
        self.queue = queue

    def export(self, csv_path: Union[str, Path], profile: MappingProfile, delimiter: str = DEFAULT_DELIMITER) -> int:
        """Write one header row and one row per job. Returns the number of jobs written."""
        path = Path(csv_path)
        count = 0
        try:
            with path.open("w", newline="", encoding="utf-8") as fh:
                writer = csv_writer(fh, delimiter)
                writer.writerow([profile.label(col) for col in profile.export_columns])
                for job in self.queue.fetch_all_for_export():
                    writer.writerow([to_text(job.get(col)) for col in profile.export_columns])
                    count += 1
        except OSError as e:
            raise StorageError(f"Cannot write export ({e})", path) from e
        logger.info("Exported {} row(s) to {}", count, path)
        return count
