"""Fixtures"""

from pathlib import Path

import pytest

from conversion_service.storage import AdaptiveFileTransfer, EncryptionCodec, LocalFileRecords, SecureFileStore
from tests.fixtures import SECRET, TEST_ITERATIONS

THRESHOLD = 1024


@pytest.fixture()
def codec() -> EncryptionCodec:
    """Codec with a reduced PBKDF2 iteration count"""
    return EncryptionCodec(SECRET, iterations=TEST_ITERATIONS)


@pytest.fixture()
def transfer(codec: EncryptionCodec) -> AdaptiveFileTransfer:
    """Transfer with a small streaming threshold and chunk size so both paths run on tiny files"""
    return AdaptiveFileTransfer(codec, threshold=THRESHOLD, validate_content=False, chunk_size=256)


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture()
def records(data_dir: Path) -> LocalFileRecords:
    return LocalFileRecords(data_dir)


@pytest.fixture()
def store(data_dir: Path, transfer: AdaptiveFileTransfer, records: LocalFileRecords) -> SecureFileStore:
    return SecureFileStore(data_dir / "storage", transfer, records)
