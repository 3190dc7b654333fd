"""Tests for the retention and orphan sweeps"""

import asyncio
import os
import time
from datetime import timedelta
from pathlib import Path

from conversion_service.storage import SecureFileStore
from conversion_service.storage import cleanup
from conversion_service.storage.cleanup import TEMP_GRACE_SEC, cleanup_expired_files, cleanup_orphaned_files
from conversion_service.storage.codec import tag_path_for
from conversion_service.storage.records import utcnow
from tests.fixtures import PDF_BYTES, stage


def test_expired_files_are_destroyed_and_soft_deleted(store: SecureFileStore, records):
    expired = store.store_upload("u1", "free", stage(store, "u1", PDF_BYTES), "old.pdf")
    kept = store.store_upload("u1", "enterprise", stage(store, "u1", PDF_BYTES), "new.pdf")

    report = cleanup_expired_files(records, store, now=utcnow() + timedelta(days=2))

    assert report.deleted == 1
    assert report.errors == 0
    assert not Path(expired.path).exists()
    assert not tag_path_for(expired.path).exists()
    assert Path(kept.path).exists()
    swept = records.get(expired.id)
    assert swept.is_deleted is True
    assert swept.deleted_at is not None
    # a second sweep has nothing left to do
    assert cleanup_expired_files(records, store, now=utcnow() + timedelta(days=2)).deleted == 0


def test_one_failure_does_not_stop_the_sweep(store: SecureFileStore, records, monkeypatch):
    first = store.store_upload("u1", "free", stage(store, "u1", PDF_BYTES), "a.pdf")
    second = store.store_upload("u2", "free", stage(store, "u2", PDF_BYTES), "b.pdf")
    real_delete = store.delete_encrypted

    def delete(path):
        if path == first.path:
            raise OSError("permission denied")
        return real_delete(path)

    monkeypatch.setattr(store, "delete_encrypted", delete)

    report = cleanup_expired_files(records, store, now=utcnow() + timedelta(days=2))

    assert (report.deleted, report.errors) == (1, 1)
    assert records.get(first.id).is_deleted is False
    assert records.get(second.id).is_deleted is True


def test_orphans_are_removed(store: SecureFileStore, records):
    known = store.store_upload("u1", "free", stage(store, "u1", PDF_BYTES), "a.pdf")
    uploads = store.base_dir / "uploads" / "u1"
    orphan = uploads / "123-stray.pdf"
    orphan.write_bytes(b"left behind")
    in_flight = uploads / "upload.tmp"
    in_flight.write_bytes(b"still writing")
    hidden = uploads / ".keep"
    hidden.write_bytes(b"")
    scratch = store.base_dir / "temp" / "u1" / "job.tmp" / "source.pdf"
    scratch.parent.mkdir(parents=True)
    scratch.write_bytes(b"converting")

    report = cleanup_orphaned_files(records, store)

    assert report.orphaned == 1
    assert report.deleted == 1
    assert report.errors == 0
    assert not orphan.exists()
    assert Path(known.path).exists()
    assert tag_path_for(known.path).exists()
    assert in_flight.exists() and hidden.exists() and scratch.exists()


def age(path: Path, seconds: float) -> None:
    then = time.time() - seconds
    os.utime(path, (then, then))


def test_stale_scratch_plaintext_is_removed(store: SecureFileStore, records):
    temp = store.base_dir / "temp" / "u1"
    dead_job = temp / "job-1.tmp" / "source.pdf"
    dead_job.parent.mkdir(parents=True)
    dead_job.write_bytes(PDF_BYTES)
    age(dead_job, TEMP_GRACE_SEC + 60)
    dead_download = temp / "abc.download.tmp"
    dead_download.write_bytes(PDF_BYTES)
    age(dead_download, TEMP_GRACE_SEC + 60)
    live_job = temp / "job-2.tmp" / "source.pdf"
    live_job.parent.mkdir(parents=True)
    live_job.write_bytes(PDF_BYTES)

    report = cleanup_orphaned_files(records, store)

    assert (report.orphaned, report.deleted, report.errors) == (2, 2, 0)
    assert not dead_job.exists()
    assert not dead_job.parent.exists()
    assert not dead_download.exists()
    assert live_job.exists()


def test_user_named_like_scratch_is_not_treated_as_scratch(store: SecureFileStore, records):
    known = store.store_upload("a.tmp", "free", stage(store, "a.tmp", PDF_BYTES), "a.pdf")
    age(Path(known.path), TEMP_GRACE_SEC + 60)

    report = cleanup_orphaned_files(records, store)

    assert report.deleted == 0
    assert Path(known.path).exists()


def test_unreadable_record_does_not_abort_expired_sweep(store: SecureFileStore, records, data_dir: Path):
    expired = store.store_upload("u1", "free", stage(store, "u1", PDF_BYTES), "old.pdf")
    (data_dir / "records" / "zzzz.json").write_text("{not json")

    report = cleanup_expired_files(records, store, now=utcnow() + timedelta(days=2))

    assert (report.deleted, report.errors) == (1, 1)
    assert not Path(expired.path).exists()
    assert records.get(expired.id).is_deleted is True


def test_unreadable_record_keeps_unrecorded_files(store: SecureFileStore, records, data_dir: Path):
    store.store_upload("u1", "free", stage(store, "u1", PDF_BYTES), "a.pdf")
    unknown = store.base_dir / "uploads" / "u1" / "123-unknown.pdf"
    unknown.write_bytes(b"maybe owned by the broken record")
    stale = store.base_dir / "temp" / "u1" / "old.download.tmp"
    stale.write_bytes(PDF_BYTES)
    age(stale, TEMP_GRACE_SEC + 60)
    (data_dir / "records" / "broken.json").write_text('{"id": "broken"}')

    report = cleanup_orphaned_files(records, store)

    assert unknown.exists()
    assert not stale.exists()
    assert (report.deleted, report.errors) == (1, 1)


async def test_cleanup_loop_runs_both_sweeps(store: SecureFileStore, records, monkeypatch):
    ran: list[str] = []

    def sweep(name):
        return lambda *args, **kwargs: ran.append(name)

    async def both_ran():
        while len(ran) < 2:
            await asyncio.sleep(0.01)

    monkeypatch.setattr(cleanup, "cleanup_expired_files", sweep("expired"))
    monkeypatch.setattr(cleanup, "cleanup_orphaned_files", sweep("orphaned"))

    task = asyncio.create_task(cleanup.run_cleanup_loop(records, store, 3600))
    try:
        await asyncio.wait_for(both_ran(), timeout=2)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert ran[:2] == ["expired", "orphaned"]
