"""Tests for per-user encrypted storage"""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conversion_service.errors import StorageIOError, ValidationError
from conversion_service.settings import DAY_MS
from conversion_service.storage import SecureFileStore, StorageKind
from conversion_service.storage.codec import tag_path_for
from conversion_service.storage.store import generate_secure_filename, retry_transient, secure_delete
from conversion_service.tiers import UserTier
from tests.fixtures import DOCX_BYTES, PDF_BYTES, stage

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_user_directories_are_created_once(store: SecureFileStore):
    first = store.ensure_user_directory("user-1", StorageKind.UPLOADS)
    second = store.ensure_user_directory("user-1", "uploads")

    assert first == second
    assert first.is_dir()
    assert first == store.base_dir / "uploads" / "user-1"


@pytest.mark.parametrize("user_id", ["../escape", "a/b", "", "..", ".", ".hidden", "with space", "x" * 129])
def test_user_directory_rejects_unsafe_ids(store: SecureFileStore, user_id: str):
    with pytest.raises(StorageIOError):
        store.ensure_user_directory(user_id, StorageKind.TEMP)


@pytest.mark.parametrize("user_id", ["alice@example.com", "first.last", "auth0_123+tag", "a.tmp"])
def test_user_directory_accepts_common_ids(store: SecureFileStore, user_id: str):
    path = store.ensure_user_directory(user_id, StorageKind.UPLOADS)

    assert path == store.base_dir / "uploads" / user_id
    assert path.is_dir()


def test_secure_filename_shape():
    name = generate_secure_filename("Quarterly Report.PDF")

    assert re.fullmatch(r"\d{13}-[0-9a-f]{32}\.PDF", name)
    assert generate_secure_filename("a.pdf") != generate_secure_filename("a.pdf")


@pytest.mark.parametrize("original", ["noext", "../../etc/passwd", "x.a b", ""])
def test_secure_filename_drops_unusable_extensions(original: str):
    assert re.fullmatch(r"\d{13}-[0-9a-f]{32}", generate_secure_filename(original))


@pytest.mark.parametrize(
    "tier, days",
    [("free", 1), ("basic", 7), ("premium", 30), ("enterprise", 90), ("platinum", 1), (None, 1)],
)
def test_expiration_by_tier(store: SecureFileStore, tier, days: int):
    assert store.calculate_expiration(tier, now=NOW) == NOW + timedelta(days=days)


def test_expiration_override(store: SecureFileStore, transfer, records, data_dir: Path):
    custom = SecureFileStore(data_dir / "other", transfer, records, expiry_ms={UserTier.FREE: DAY_MS // 2})

    assert custom.calculate_expiration(UserTier.FREE, now=NOW) == NOW + timedelta(hours=12)


def test_secure_delete_is_idempotent(tmp_path: Path):
    target = tmp_path / "secret.bin"
    target.write_bytes(b"s" * 20000)

    assert secure_delete(target) is True
    assert not target.exists()
    assert secure_delete(target) is False


def test_retry_transient_retries_then_gives_up():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise BlockingIOError("busy")
        return "ok"

    assert retry_transient(flaky, delay=0) == "ok"

    def always_busy():
        raise InterruptedError("again")

    with pytest.raises(StorageIOError):
        retry_transient(always_busy, delay=0)


def test_store_upload_encrypts_and_records(store: SecureFileStore, records):
    record = store.store_upload("user-1", "premium", stage(store, "user-1", PDF_BYTES), "report.pdf")

    stored = Path(record.path)
    assert stored.parent == store.base_dir / "uploads" / "user-1"
    assert stored.read_bytes() != PDF_BYTES
    assert tag_path_for(stored).stat().st_size == 16
    assert record.mime_type == "application/pdf"
    assert record.size == len(PDF_BYTES)
    assert record.original_filename == "report.pdf"
    assert record.key_identifier == store.transfer.codec.key_identifier("user-1")
    assert record.expires_at - record.created_at == timedelta(days=30)
    assert records.get(record.id) == record
    assert store.read_decrypted(record) == PDF_BYTES
    # plaintext staging file is gone
    assert list((store.base_dir / "temp" / "user-1").iterdir()) == []


def test_store_result_and_decrypt_to(store: SecureFileStore, tmp_path: Path):
    plain = tmp_path / "converted.docx"
    plain.write_bytes(DOCX_BYTES)

    record = store.store_result("user-2", "basic", plain, "converted.docx", "application/docx-test")
    result = store.decrypt_to(record, tmp_path / "roundtrip.docx")

    assert Path(record.path).parent == store.base_dir / "outputs" / "user-2"
    assert record.mime_type == "application/docx-test"
    assert result.path.read_bytes() == DOCX_BYTES
    assert plain.exists()


def test_delete_encrypted_removes_sidecar(store: SecureFileStore):
    record = store.store_upload("user-1", "free", stage(store, "user-1", PDF_BYTES), "a.pdf")

    assert store.delete_encrypted(record.path) is True
    assert not Path(record.path).exists()
    assert not tag_path_for(record.path).exists()
    assert store.delete_encrypted(record.path) is False


def test_failed_record_creation_removes_ciphertext(store: SecureFileStore, monkeypatch):
    def refuse(record):
        raise StorageIOError("disk full")

    monkeypatch.setattr(store.records, "create", refuse)

    with pytest.raises(StorageIOError):
        store.store_upload("user-1", "free", stage(store, "user-1", PDF_BYTES), "a.pdf")
    assert list((store.base_dir / "uploads" / "user-1").iterdir()) == []


def test_staged_upload_is_deleted_when_encryption_fails(store: SecureFileStore):
    staged = stage(store, "user-1", b"not a document")
    store.transfer.validate_content = True

    with pytest.raises(ValidationError):
        store.store_upload("user-1", "free", staged, "a.pdf")
    assert not staged.exists()
    assert list((store.base_dir / "uploads" / "user-1").iterdir()) == []
