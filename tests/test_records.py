"""Tests for the JSON file record store"""

import json
from datetime import timedelta

import pytest

from conversion_service.errors import StorageIOError
from conversion_service.storage import LocalFileRecords, StoredFile
from conversion_service.storage.records import from_iso, to_iso, utcnow


def make_record(record_id: str = "f1", *, user_id: str = "u1", path: str = "/tmp/x", expires_in_days: int = 1):
    now = utcnow()
    return StoredFile(
        id=record_id,
        user_id=user_id,
        path=path,
        filename="1-abc.pdf",
        original_filename="a.pdf",
        mime_type="application/pdf",
        size=10,
        created_at=now,
        expires_at=now + timedelta(days=expires_in_days),
    )


def test_create_and_get(records: LocalFileRecords, data_dir):
    record = make_record()

    records.create(record)

    assert records.get("f1") == record
    on_disk = json.loads((data_dir / "records" / "f1.json").read_text(encoding="utf-8"))
    assert on_disk["expires_at"].endswith("Z")
    assert on_disk["encryption_method"] == "aes-256-gcm"


def test_duplicate_create_is_rejected(records: LocalFileRecords):
    records.create(make_record())

    with pytest.raises(StorageIOError):
        records.create(make_record())


@pytest.mark.parametrize("file_id", ["missing", "../etc", "a/b", ""])
def test_get_unknown_or_invalid_id(records: LocalFileRecords, file_id: str):
    assert records.get(file_id) is None


def test_find_expired_skips_deleted(records: LocalFileRecords):
    records.create(make_record("old", expires_in_days=-1))
    records.create(make_record("fresh", expires_in_days=3))
    gone = make_record("gone", expires_in_days=-2)
    gone.is_deleted = True
    records.create(gone)

    assert [r.id for r in records.find_expired(utcnow())] == ["old"]


def test_known_paths_and_list_for_user(records: LocalFileRecords, tmp_path):
    records.create(make_record("a", path=str(tmp_path / "one.bin")))
    records.create(make_record("b", user_id="u2", path=str(tmp_path / "two.bin")))
    gone = make_record("c", path=str(tmp_path / "three.bin"))
    gone.is_deleted = True
    records.create(gone)

    assert records.known_paths() == {str((tmp_path / name).resolve()) for name in ("one.bin", "two.bin", "three.bin")}
    assert {r.id for r in records.list_for_user("u1")} == {"a", "c"}
    assert records.list_for_user("nobody") == []


def test_scans_skip_unreadable_records(records: LocalFileRecords, data_dir):
    records.create(make_record("good", expires_in_days=-1))
    (data_dir / "records" / "bad.json").write_text("{truncated")

    assert [r.id for r in records.find_expired(utcnow())] == ["good"]
    assert records.unreadable == 1
    assert records.get("good") is not None
    with pytest.raises(StorageIOError):
        records.get("bad")


def test_iso_helpers():
    now = utcnow()

    assert from_iso(to_iso(now)) == now
    assert to_iso(None) is None
    assert from_iso(None) is None
