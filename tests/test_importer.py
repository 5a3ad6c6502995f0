from pathlib import Path

import pytest

from conftest import record, text
from jobqueue.errors import ConfigurationError
from jobqueue.exporter import CsvExporter
from jobqueue.importer import CsvImporter
from jobqueue.profile import MappingProfile

COMPLEX = [
    "msisdn;done;working;state;message;crm_id;batch",
    "1001;1;;;;C1;A",
    "1002;true;;;;C2;A",
    "1003;;yes;;;C3;A",
    "1004;;;error;boom;C4;B",
    "1005;yes;;;;C5;B",
    "1006;;;;;C6;B",
]


@pytest.fixture()
def complex_profile():
    return MappingProfile(
        aliases={
            "id": ["id", "msisdn", "number"],
            "processed": ["processed", "done"],
            "in_progress": ["in_progress", "working"],
            "status": ["status", "state"],
            "result": ["result", "ok"],
            "updated_at": ["updated_at", "timestamp", "last_update"],
            "last_error": ["last_error", "error", "message"],
        },
        transforms={
            "processed": "flag",
            "in_progress": "flag_strict",
            "result": "flag",
            "status": "status",
        },
    )


def test_complex_import_then_work(queue, write_csv, complex_profile):
    src = write_csv("complex.csv", COMPLEX)

    count = CsvImporter(queue).import_file(src, complex_profile, update_core=True)

    assert count == 6
    job = queue.fetch_next()
    assert job.id == "1006"
    assert queue.fetch_next() is None
    queue.mark_success(job.id)
    p = queue.progress()
    assert (p.done, p.total, p.errors, p.in_progress) == (4, 6, 1, 1)
    assert record(queue, "1004")["last_error"] == "boom"
    assert record(queue, "1003")["status"] == "in_progress"
    assert record(queue, "1001")["status"] == "ok"


def test_unmapped_columns_become_extras(queue, write_csv, complex_profile):
    src = write_csv("complex.csv", COMPLEX)

    CsvImporter(queue).import_file(src, complex_profile, update_core=True)

    assert queue.get_extras("1001") == {"crm_id": "C1", "batch": "A"}


def test_missing_id_alias_fails_before_touching_queue(queue, write_csv):
    queue.upsert("keep", {}, {}, False)
    src = write_csv("no_id.csv", ["name;phone", "Ana;555"])

    with pytest.raises(ConfigurationError):
        CsvImporter(queue).import_file(src, MappingProfile(aliases={"id": ["msisdn"]}))

    assert queue.total_items() == 1


def test_missing_file_is_a_configuration_error(queue, tmp_path):
    with pytest.raises(ConfigurationError) as exc:
        CsvImporter(queue).import_file(tmp_path / "nope.csv", MappingProfile.identity())
    assert "nope.csv" in str(exc.value)


def test_empty_file_is_a_configuration_error(queue, tmp_path):
    src = tmp_path / "empty.csv"
    src.write_text("", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        CsvImporter(queue).import_file(src, MappingProfile.identity())


def test_blank_and_repeated_header_rows_are_skipped(queue, write_csv):
    src = write_csv("rows.csv", ["ID;name", "1;Ana", ";ghost", "", "id;name", "2;Bo"])

    count = CsvImporter(queue).import_file(src, MappingProfile.identity())

    assert count == 2
    assert [r["id"] for r in queue.fetch_all_for_export()] == ["1", "2"]


def test_malformed_rows_are_skipped(queue, write_csv):
    src = write_csv("rows.csv", ["id;status", "1;queued", "2;sideways", "3;"])

    count = CsvImporter(queue).import_file(src, MappingProfile.identity())

    assert count == 2
    assert queue.total_items() == 2


def test_header_matching_ignores_case_whitespace_and_bom(queue, write_csv):
    src = write_csv("bom.csv", ["\ufeff  MSISDN ;Name", "385911;Ana"])

    CsvImporter(queue).import_file(src, MappingProfile(aliases={"id": ["msisdn"]}))

    assert queue.get_extras("385911") == {"Name": "Ana"}


def test_repeated_imports_merge_extras(queue, write_csv):
    importer = CsvImporter(queue)
    profile = MappingProfile.identity()

    importer.import_file(write_csv("a.csv", ["id;extra_a", "1;x"]), profile)
    importer.import_file(write_csv("b.csv", ["id;extra_b", "1;y"]), profile)
    importer.import_file(write_csv("c.csv", ["id;extra_a", "1;"]), profile)

    assert queue.get_extras("1") == {"extra_a": "x", "extra_b": "y"}
    assert queue.total_items() == 1


def test_update_core_flag_on_import(queue, write_csv):
    importer = CsvImporter(queue)
    profile = MappingProfile.identity()
    importer.import_file(write_csv("first.csv", ["id;status", "1;ok"]), profile)
    assert record(queue, "1")["status"] == "ok"

    importer.import_file(write_csv("second.csv", ["id;status", "1;error"]), profile, update_core=False)
    assert record(queue, "1")["status"] == "ok"

    importer.import_file(write_csv("third.csv", ["id;status", "1;error"]), profile, update_core=True)
    assert record(queue, "1")["status"] == "error"


def test_passthrough_off_drops_unknown_columns(queue, write_csv):
    profile = MappingProfile(aliases={"id": ["id"], "crm": ["crm id"]}, passthrough_unknown=False)
    src = write_csv("rows.csv", ["id;CRM ID;junk", "1;C1;zzz"])

    CsvImporter(queue).import_file(src, profile)

    assert queue.get_extras("1") == {"crm": "C1"}


def test_defaults(queue, write_csv):
    profile = MappingProfile(
        aliases={"id": ["id"], "last_error": ["last_error"]},
        defaults={"last_error": "n/a", "segment": "none"},
    )
    importer = CsvImporter(queue)

    importer.import_file(write_csv("a.csv", ["id;last_error;segment", "1;;", "2;;vip"]), profile)
    assert text(record(queue, "1")["last_error"]) == ""
    assert queue.get_extras("1") == {"segment": "none"}
    assert queue.get_extras("2") == {"segment": "vip"}

    importer.import_file(write_csv("b.csv", ["id;last_error", "3;"]), profile, update_core=True)
    assert record(queue, "3")["last_error"] == "n/a"


def test_core_default_needs_the_column_in_the_header(queue, write_csv):
    profile = MappingProfile(aliases={"id": ["id"]}, defaults={"last_error": "n/a"})

    CsvImporter(queue).import_file(write_csv("a.csv", ["id", "1"]), profile, update_core=True)

    assert text(record(queue, "1")["last_error"]) == ""


def test_transforms_apply_to_extras_and_use_callables(queue, write_csv):
    profile = MappingProfile(
        aliases={"id": ["id"]},
        transforms={"name": str.upper, "code": "int"},
    )

    CsvImporter(queue).import_file(write_csv("a.csv", ["id;name;code", " 7 ;ana;042"]), profile)

    assert queue.get_extras("7") == {"name": "ANA", "code": 42}


def test_failing_transform_skips_the_row(queue, write_csv):
    profile = MappingProfile(aliases={"id": ["id"]}, transforms={"code": "int"})

    count = CsvImporter(queue).import_file(write_csv("a.csv", ["id;code", "1;12", "2;x"]), profile)

    assert count == 1
    assert queue.total_items() == 1


def test_custom_delimiter(queue, write_csv):
    src = write_csv("comma.csv", ['id,note', '1,"a, b"'])

    CsvImporter(queue).import_file(src, MappingProfile.identity(), delimiter=",")

    assert queue.get_extras("1") == {"note": "a, b"}


def test_export_then_reimport_keeps_core_values(queue, tmp_path):
    with queue.batch():
        for job_id in ("a", "b", "c"):
            queue.upsert(job_id, {}, {}, False)
    queue.mark_success(queue.fetch_next().id)
    queue.mark_failure(queue.fetch_next().id, "boom")
    out = tmp_path / "export.csv"
    CsvExporter(queue).export(out, MappingProfile())

    fresh = type(queue).open(tmp_path / f"fresh{Path(queue.path).suffix}")
    try:
        CsvImporter(fresh).import_file(out, MappingProfile.identity(), update_core=True)
        for job_id in ("a", "b", "c"):
            before, after = record(queue, job_id), record(fresh, job_id)
            for field in ("processed", "in_progress", "status", "result", "updated_at", "last_error"):
                assert text(before[field]) == text(after[field]), (job_id, field)
    finally:
        fresh.close()


def test_backslashes_are_kept_verbatim(queue, write_csv):
    src = write_csv(
        "paths.csv",
        ["id;path;note", r"1;C:\data\x.txt;plain", r'2;\\server\share;"quoted; \n ""text"""'],
    )

    CsvImporter(queue).import_file(src, MappingProfile.identity())

    assert queue.get_extras("1") == {"path": r"C:\data\x.txt", "note": "plain"}
    assert queue.get_extras("2") == {"path": r"\\server\share", "note": r'quoted; \n "text"'}
