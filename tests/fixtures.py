"""Shared test data and helpers"""

import os
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from conversion_service.conversion.models import ConversionOutcome

SECRET = "test-master-secret"
TOKEN_SECRET = "test-token-secret"
# keeps key derivation fast; the production count is covered in test_codec
TEST_ITERATIONS = 1000

PDF_BYTES = b"%PDF-1.4\n" + b"1 0 obj << /Type /Page >> endobj\n" * 8
DOCX_BYTES = b"PK\x03\x04" + b"\x00" * 200


def legacy_encrypt(
    plaintext: bytes,
    *,
    user_id: str | None = None,
    secret: str = SECRET,
    iterations: int = TEST_ITERATIONS,
) -> bytes:
    """Build a file in the legacy layout: salt | iv | tag | ciphertext."""
    salt = os.urandom(16)
    iv = os.urandom(16)
    material = secret + (user_id or "")
    key = PBKDF2HMAC(algorithm=hashes.SHA512(), length=32, salt=salt, iterations=iterations).derive(
        material.encode("utf-8")
    )
    encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return salt + iv + encryptor.tag + ciphertext


def flip_bit(data: bytes, index: int) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


class FakeConverter:
    """Converter double that writes canned output and records its calls."""

    def __init__(self, *, fail_times: int = 0, output: bytes | None = None) -> None:
        self.calls: list[tuple[bytes, str, bool]] = []
        self._fail_times = fail_times
        self._output = output

    def convert(self, input_path: Path, output_path: Path, quality: str, preserve_formatting: bool) -> ConversionOutcome:
        self.calls.append((Path(input_path).read_bytes(), quality, preserve_formatting))
        if len(self.calls) <= self._fail_times:
            return ConversionOutcome(success=False, error="converter crashed")
        if self._output is not None:
            data = self._output
        else:
            data = PDF_BYTES if Path(output_path).suffix == ".pdf" else DOCX_BYTES
        Path(output_path).write_bytes(data)
        return ConversionOutcome(success=True, page_count=1)


def reader_for(data: bytes, chunk_size: int | None = None):
    """An async ``read(n)`` over ``data``, like ``UploadFile.read``."""
    view = memoryview(data)
    offset = 0

    async def read(n: int) -> bytes:
        nonlocal offset
        n = min(n, chunk_size or n)
        chunk = bytes(view[offset : offset + n])
        offset += len(chunk)
        return chunk

    return read


def stage(store, user_id: str, data: bytes) -> Path:
    """Write ``data`` where an upload would be staged before encryption."""
    path = store.staging_path(user_id)
    path.write_bytes(data)
    return path
