"""Tests for buffered and streaming file transfer"""

from pathlib import Path

import pytest

from conversion_service.errors import (
    FormatError,
    IntegrityError,
    NotFoundError,
    PayloadTooLargeError,
    StorageIOError,
    ValidationError,
)
from conversion_service.storage import AdaptiveFileTransfer, EncryptionCodec
from conversion_service.storage.codec import HEADER_LENGTH, FileFormat, tag_path_for
from tests.conftest import THRESHOLD
from tests.fixtures import PDF_BYTES, flip_bit, legacy_encrypt


def write(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.mark.parametrize(
    "size, expected",
    [(THRESHOLD - 1, "buffered"), (THRESHOLD, "streaming"), (THRESHOLD + 1, "streaming")],
)
def test_strategy_boundary(transfer: AdaptiveFileTransfer, tmp_path: Path, size: int, expected: str):
    """Sizes below the threshold are buffered, sizes at or above it stream"""
    src = write(tmp_path / "plain.bin", b"a" * size)

    encrypted = transfer.smart_encrypt(src, tmp_path / "enc.bin")
    decrypted = transfer.smart_decrypt(tmp_path / "enc.bin", tmp_path / "out.bin")

    assert transfer.strategy_for(size).name == expected
    assert encrypted.strategy == expected
    assert decrypted.strategy == expected
    assert (tmp_path / "out.bin").read_bytes() == b"a" * size


@pytest.mark.parametrize("size", [0, 1, THRESHOLD, 3 * THRESHOLD + 7])
def test_round_trip(transfer: AdaptiveFileTransfer, tmp_path: Path, size: int):
    data = bytes(i % 251 for i in range(size))
    src = write(tmp_path / "plain.bin", data)

    result = transfer.smart_encrypt(src, tmp_path / "enc" / "file.bin")
    transfer.smart_decrypt(result.path, tmp_path / "dec" / "file.bin")

    assert (tmp_path / "dec" / "file.bin").read_bytes() == data
    assert result.size == size


def test_per_call_threshold(transfer: AdaptiveFileTransfer, tmp_path: Path):
    src = write(tmp_path / "plain.bin", b"z" * 10)

    result = transfer.smart_encrypt(src, tmp_path / "enc.bin", threshold=5)

    assert result.strategy == "streaming"


def test_one_kilobyte_current_format(tmp_path: Path):
    """1 KB round-trips and leaves a 16-byte sidecar tag"""
    transfer = AdaptiveFileTransfer(EncryptionCodec("k", iterations=1000), validate_content=False)
    data = bytes(range(256)) * 4
    src = write(tmp_path / "plain.bin", data)

    result = transfer.smart_encrypt(src, tmp_path / "enc.bin")
    transfer.smart_decrypt(result.path, tmp_path / "out.bin")

    assert (tmp_path / "out.bin").read_bytes() == data
    assert result.tag_path == tag_path_for(tmp_path / "enc.bin")
    assert result.tag_path.stat().st_size == 16
    assert result.path.stat().st_size == HEADER_LENGTH + len(data)


@pytest.mark.parametrize("size", [10, 5 * THRESHOLD])
def test_legacy_files_decrypt_transparently(transfer: AdaptiveFileTransfer, tmp_path: Path, size: int):
    data = b"L" * size
    enc = write(tmp_path / "legacy.bin", legacy_encrypt(data))

    result = transfer.smart_decrypt(enc, tmp_path / "out.bin")

    assert result.format is FileFormat.LEGACY
    assert (tmp_path / "out.bin").read_bytes() == data


def test_legacy_user_bound_file(transfer: AdaptiveFileTransfer, tmp_path: Path):
    enc = write(tmp_path / "legacy.bin", legacy_encrypt(b"bound" * 400, user_id="u1"))

    transfer.smart_decrypt(enc, tmp_path / "out.bin", user_id="u1")

    assert (tmp_path / "out.bin").read_bytes() == b"bound" * 400


def test_stray_tag_next_to_legacy_file(transfer: AdaptiveFileTransfer, tmp_path: Path):
    enc = write(tmp_path / "legacy.bin", legacy_encrypt(b"old"))
    tag_path_for(enc).write_bytes(b"\x07" * 16)

    result = transfer.smart_decrypt(enc, tmp_path / "out.bin")

    assert result.format is FileFormat.LEGACY
    assert (tmp_path / "out.bin").read_bytes() == b"old"


@pytest.mark.parametrize("size", [100, 4 * THRESHOLD])
def test_tampered_file_leaves_no_output(transfer: AdaptiveFileTransfer, tmp_path: Path, size: int):
    src = write(tmp_path / "plain.bin", b"p" * size)
    result = transfer.smart_encrypt(src, tmp_path / "enc.bin")
    result.path.write_bytes(flip_bit(result.path.read_bytes(), HEADER_LENGTH + 1))

    with pytest.raises(IntegrityError):
        transfer.smart_decrypt(result.path, tmp_path / "out.bin")

    assert not (tmp_path / "out.bin").exists()


def test_missing_input(transfer: AdaptiveFileTransfer, tmp_path: Path):
    with pytest.raises(NotFoundError):
        transfer.smart_decrypt(tmp_path / "absent.bin", tmp_path / "out.bin")
    with pytest.raises(NotFoundError):
        transfer.smart_encrypt(tmp_path / "absent.bin", tmp_path / "enc.bin")


def test_truncated_file_is_format_error(transfer: AdaptiveFileTransfer, tmp_path: Path):
    enc = write(tmp_path / "short.bin", b"\x00" * (HEADER_LENGTH - 1))

    with pytest.raises(FormatError):
        transfer.smart_decrypt(enc, tmp_path / "out.bin")


def test_size_cap(codec: EncryptionCodec, tmp_path: Path):
    transfer = AdaptiveFileTransfer(codec, max_size=10, validate_content=False)
    src = write(tmp_path / "plain.bin", b"x" * 11)

    with pytest.raises(PayloadTooLargeError):
        transfer.smart_encrypt(src, tmp_path / "enc.bin")
    assert not (tmp_path / "enc.bin").exists()


def test_content_validation(codec: EncryptionCodec, tmp_path: Path):
    transfer = AdaptiveFileTransfer(codec, validate_content=True)
    text = write(tmp_path / "notes.txt", b"just text")
    pdf = write(tmp_path / "doc.pdf", PDF_BYTES)

    with pytest.raises(ValidationError):
        transfer.smart_encrypt(text, tmp_path / "enc.txt")
    assert transfer.smart_encrypt(pdf, tmp_path / "enc.pdf").size == len(PDF_BYTES)
    assert transfer.smart_encrypt(text, tmp_path / "enc.txt", validate_content=False).size == 9


def test_write_failure_cleans_up(transfer: AdaptiveFileTransfer, tmp_path: Path):
    src = write(tmp_path / "plain.bin", b"x" * 10)
    blocker = write(tmp_path / "not-a-dir", b"")

    with pytest.raises(StorageIOError):
        transfer.smart_encrypt(src, blocker / "enc.bin")


def test_decrypt_to_bytes(transfer: AdaptiveFileTransfer, tmp_path: Path):
    src = write(tmp_path / "plain.bin", b"small file")
    result = transfer.smart_encrypt(src, tmp_path / "enc.bin")
    legacy = write(tmp_path / "legacy.bin", legacy_encrypt(b"older"))

    assert transfer.decrypt_to_bytes(result.path) == b"small file"
    assert transfer.decrypt_to_bytes(legacy) == b"older"
