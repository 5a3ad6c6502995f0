import csv
from datetime import datetime, timezone
from typing import Any, Optional

DEFAULT_DELIMITER = ";"

# characters trimmed from every cell besides plain whitespace
_TRIM = " \t\n\x0b\x0c\x00\xa0"
_BOM = "\ufeff"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_str() -> str:
    return utcnow().isoformat(timespec="seconds")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are taken as UTC. None if unparseable."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def clean(value: Any) -> str:
    """Normalize cell text: drop carriage returns, trim whitespace and control chars."""
    if value is None:
        return ""
    return str(value).replace("\r", "").strip(_TRIM)


def clean_header(value: Any) -> str:
    return clean(clean(value).lstrip(_BOM))


def one_line(message: str) -> str:
    return message.replace("\r\n", " ").replace("\r", " ").replace("\n", " ").strip()


def to_text(value: Any) -> str:
    """Text form used for CSV cells: None is blank, booleans are 1/0."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


# Quotes are doubled inside quoted cells; a backslash is ordinary text.
def csv_reader(fh, delimiter: str = DEFAULT_DELIMITER):
    return csv.reader(fh, delimiter=delimiter, quotechar='"', doublequote=True)


def csv_writer(fh, delimiter: str = DEFAULT_DELIMITER):
    return csv.writer(
        fh,
        delimiter=delimiter,
        quotechar='"',
        doublequote=True,
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
