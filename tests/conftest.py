"""Shared test fixtures."""

import pytest

from jobqueue.csv_store import CsvQueue
from jobqueue.storage import SqliteQueue


@pytest.fixture()
def write_csv(tmp_path):
    """Write a delimited file from text lines and return its path."""

    def _write(name, lines, encoding="utf-8"):
        path = tmp_path / name
        path.write_text("\n".join(lines) + "\n", encoding=encoding)
        return path

    return _write


@pytest.fixture(params=["sqlite", "csv"])
def queue(request, tmp_path):
    """Each contract test runs once per engine."""
    if request.param == "sqlite":
        q = SqliteQueue.open(tmp_path / "queue.sqlite")
    else:
        q = CsvQueue.open(tmp_path / "queue.csv")
    yield q
    q.close()


def reopen(q):
    """A fresh instance of the same engine on the same file."""
    return type(q).open(q.path)


def record(q, job_id):
    for rec in q.fetch_all_for_export():
        if str(rec["id"]) == job_id:
            return rec
    raise AssertionError(f"{job_id} not in queue")


def text(value):
    return "" if value is None else str(value)
