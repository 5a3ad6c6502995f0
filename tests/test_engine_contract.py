"""Behaviour both engines must share."""

import threading

import pytest

from conftest import record, reopen, text
from jobqueue.engine import QueueEngine, open_queue
from jobqueue.csv_store import CsvQueue
from jobqueue.errors import UnknownJobError
from jobqueue.models import JobStatus
from jobqueue.storage import SqliteQueue


def _seed(q, *ids):
    with q.batch():
        for job_id in ids:
            q.upsert(job_id, {}, {}, False)


def test_engines_satisfy_protocol(queue):
    assert isinstance(queue, QueueEngine)


def test_open_queue_picks_engine_by_suffix(tmp_path):
    csv_q = open_queue(tmp_path / "jobs.csv")
    db_q = open_queue(tmp_path / "jobs.sqlite")
    try:
        assert isinstance(csv_q, CsvQueue)
        assert isinstance(db_q, SqliteQueue)
    finally:
        csv_q.close()
        db_q.close()


def test_fetch_next_is_fifo_and_claims(queue):
    _seed(queue, "a", "b", "c")

    job = queue.fetch_next()

    assert job.id == "a"
    assert job.in_progress is True
    assert job.processed is False
    assert job.status == JobStatus.IN_PROGRESS
    assert job.updated_at
    assert queue.fetch_next().id == "b"


def test_fetch_next_on_empty_queue_returns_none(queue):
    assert queue.fetch_next() is None
    assert queue.total_items() == 0


def test_mark_success(queue):
    _seed(queue, "a")
    queue.fetch_next()
    queue.mark_failure("a", "first try")

    queue.mark_success("a")

    rec = record(queue, "a")
    assert text(rec["processed"]) == "1"
    assert text(rec["in_progress"]) == "0"
    assert rec["status"] == "ok"
    assert text(rec["result"]) == "1"
    assert text(rec["last_error"]) == ""
    assert queue.progress().done == 1


def test_mark_failure_strips_newlines(queue):
    _seed(queue, "1001", "1002", "1003", "1004")

    queue.mark_failure("1004", "api timeout\r\n")

    p = queue.progress()
    rec = record(queue, "1004")
    assert p.errors == 1
    assert rec["last_error"] == "api timeout"
    assert rec["status"] == "error"
    assert text(rec["result"]) == "0"


def test_mark_failure_flattens_multiline_message(queue):
    _seed(queue, "a")
    queue.mark_failure("a", "line one\nline two")
    assert record(queue, "a")["last_error"] == "line one line two"


@pytest.mark.parametrize("op", ["success", "failure", "update"])
def test_unknown_id_raises(queue, op):
    _seed(queue, "a")
    with pytest.raises(UnknownJobError):
        if op == "success":
            queue.mark_success("nope")
        elif op == "failure":
            queue.mark_failure("nope", "x")
        else:
            queue.update_by_id("nope", {"note": "x"})


def test_failed_jobs_are_not_claimed_again(queue):
    _seed(queue, "a", "b")
    queue.mark_failure(queue.fetch_next().id, "boom")
    assert queue.fetch_next().id == "b"
    assert queue.fetch_next() is None


def test_upsert_merges_extras_without_clobbering(queue):
    queue.upsert("1", {}, {"extra_a": "x"}, False)
    queue.upsert("1", {}, {"extra_b": "y"}, False)
    queue.upsert("1", {}, {"extra_a": "z"}, False)

    assert queue.get_extras("1") == {"extra_a": "z", "extra_b": "y"}
    assert queue.total_items() == 1


def test_update_core_gates_core_overwrites(queue):
    queue.upsert("1", {}, {}, False)
    queue.fetch_next()
    queue.mark_success("1")

    queue.upsert("1", {"status": "error"}, {}, False)
    assert record(queue, "1")["status"] == "ok"

    queue.upsert("1", {"status": "error"}, {}, True)
    rec = record(queue, "1")
    assert rec["status"] == "error"
    assert text(rec["processed"]) == "0"


def test_core_fields_apply_on_first_insert_without_update_core(queue):
    queue.upsert("done", {"processed": 1}, {}, False)
    queue.upsert("todo", {"processed": 0}, {}, False)

    assert record(queue, "done")["status"] == "ok"
    assert queue.fetch_next().id == "todo"


def test_null_core_values_are_skipped(queue):
    queue.upsert("1", {"status": "error", "last_error": "boom"}, {}, True)

    queue.upsert("1", {"status": None, "last_error": None}, {}, True)

    rec = record(queue, "1")
    assert rec["status"] == "error"
    assert rec["last_error"] == "boom"


def test_upsert_rejects_bad_core_value(queue):
    with pytest.raises(ValueError):
        queue.upsert("1", {"status": "sideways"}, {}, True)
    assert queue.total_items() == 0


def test_upsert_rejects_empty_id(queue):
    with pytest.raises(ValueError):
        queue.upsert("  ", {}, {}, False)


def test_export_view_prefers_core_over_extras(queue):
    queue.upsert("1", {}, {"status": "bogus", "note": "n"}, False)

    rec = record(queue, "1")

    assert rec["status"] == "queued"
    assert rec["note"] == "n"
    assert "extras" not in rec


def test_fetch_all_for_export_can_be_iterated_again(queue):
    _seed(queue, "a", "b")
    first = [r["id"] for r in queue.fetch_all_for_export()]
    second = [r["id"] for r in queue.fetch_all_for_export()]
    assert first == second == ["a", "b"]


def test_progress_arithmetic(queue):
    _seed(queue, "a", "b", "c", "d", "e")
    queue.mark_success(queue.fetch_next().id)
    queue.mark_failure(queue.fetch_next().id, "x")
    queue.fetch_next()

    p = queue.progress()

    assert (p.total, p.done, p.errors, p.in_progress, p.remaining) == (5, 1, 1, 1, 2)
    assert p.done + p.errors + p.in_progress + p.remaining == p.total


def test_reset_all(queue):
    _seed(queue, "a", "b")
    queue.mark_success(queue.fetch_next().id)
    queue.mark_failure(queue.fetch_next().id, "boom")

    queue.reset_all()

    for rec in queue.fetch_all_for_export():
        assert rec["status"] == "queued"
        assert text(rec["result"]) == ""
        assert text(rec["last_error"]) == ""
    assert queue.progress().remaining == 2
    assert queue.fetch_next().id == "a"


def test_reopen_recovers_stuck_claims(queue):
    _seed(queue, "a", "b")
    queue.fetch_next()

    first = reopen(queue)
    second = reopen(queue)
    try:
        rec = record(second, "a")
        assert rec["status"] == "queued"
        assert text(rec["in_progress"]) == "0"
        assert list(first.fetch_all_for_export()) == list(second.fetch_all_for_export())
        assert second.fetch_next().id == "a"
    finally:
        first.close()
        second.close()


def test_reopen_keeps_finished_state(queue):
    _seed(queue, "a", "b")
    queue.mark_success(queue.fetch_next().id)
    queue.mark_failure(queue.fetch_next().id, "boom")

    again = reopen(queue)
    try:
        assert record(again, "a")["status"] == "ok"
        assert record(again, "b")["status"] == "error"
        assert again.fetch_next() is None
    finally:
        again.close()


def test_batch_is_persisted_as_a_unit(queue):
    def body(q):
        for job_id in ("a", "b"):
            q.upsert(job_id, {}, {"n": job_id}, False)
        return "done"

    assert queue.perform_batch(body) == "done"
    again = reopen(queue)
    try:
        assert again.total_items() == 2
        assert again.get_extras("b") == {"n": "b"}
    finally:
        again.close()


def test_failed_batch_persists_nothing(queue):
    _seed(queue, "a")

    def body(q):
        q.upsert("b", {}, {}, False)
        q.upsert("a", {}, {"note": "changed"}, False)
        raise RuntimeError("bail out")

    with pytest.raises(RuntimeError):
        queue.perform_batch(body)

    assert queue.total_items() == 1
    assert queue.get_extras("a") == {}
    again = reopen(queue)
    try:
        assert again.total_items() == 1
    finally:
        again.close()


def test_nested_batches_join_the_outer_one(queue):
    with queue.batch() as outer:
        outer.upsert("a", {}, {}, False)
        with outer.batch() as inner:
            inner.upsert("b", {}, {}, False)
        assert outer.total_items() == 2
    assert queue.total_items() == 2


def test_concurrent_claims_never_share_a_job(queue):
    ids = [f"job-{i:02d}" for i in range(24)]
    _seed(queue, *ids)
    claimed = []
    lock = threading.Lock()

    def claim():
        while True:
            job = queue.fetch_next()
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=claim) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(claimed) == len(set(claimed)) == len(ids)
    assert queue.progress().in_progress == len(ids)


def test_ids_are_trimmed(queue):
    queue.upsert(" 7 ", {}, {"n": 1}, False)
    queue.upsert("7", {}, {"m": 2}, False)

    queue.mark_success(" 7 ")

    assert [r["id"] for r in queue.fetch_all_for_export()] == ["7"]
    assert queue.get_extras(" 7") == {"n": 1, "m": 2}
    assert record(queue, "7")["status"] == "ok"
