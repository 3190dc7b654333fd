"""Size-adaptive file encryption.

Files below the threshold are processed in memory, larger ones in fixed-size
chunks. Both strategies honour the same contract, and any failure removes the
partial output (and its ``.tag`` sidecar) before the error propagates.
"""

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Protocol

from ..errors import FormatError, IntegrityError, NotFoundError, StorageIOError
from .codec import (
    AUTH_TAG_LENGTH,
    HEADER_LENGTH,
    LEGACY_HEADER_LENGTH,
    SALT_LENGTH,
    EncryptionCodec,
    FileFormat,
    combine_failures,
    detection_order,
    tag_path_for,
)
from .validation import validate_file

log = logging.getLogger(__name__)

DEFAULT_STREAM_THRESHOLD = 5 * 1024 * 1024
DEFAULT_MAX_FILE_SIZE = 200 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class EncryptionResult:
    path: Path
    tag_path: Path
    salt: str
    iv: str
    strategy: str
    size: int


@dataclass(frozen=True)
class DecryptionResult:
    path: Path
    format: FileFormat
    strategy: str
    size: int


class Transferable(Protocol):
    name: str

    def encrypt(self, src: Path, dst: Path) -> EncryptionResult:
        ...

    def decrypt(self, src: Path, dst: Path, fmt: FileFormat, *, user_id: str | None = None) -> None:
        ...


def remove_partial(*paths: Path) -> None:
    for p in paths:
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            log.warning("could not remove partial output %s: %s", p, e)


def read_tag(src: Path) -> bytes:
    tag_path = tag_path_for(src)
    try:
        return tag_path.read_bytes()
    except FileNotFoundError as e:
        raise FormatError(f"auth tag file not found: {tag_path}") from e


class BufferedTransfer:
    name = "buffered"

    def __init__(self, codec: EncryptionCodec) -> None:
        self._codec = codec

    def encrypt(self, src: Path, dst: Path) -> EncryptionResult:
        plaintext = src.read_bytes()
        payload = self._codec.encrypt(plaintext)
        dst.write_bytes(payload.to_bytes())
        tag_path = tag_path_for(dst)
        tag_path.write_bytes(payload.auth_tag)
        return EncryptionResult(
            path=dst,
            tag_path=tag_path,
            salt=payload.salt.hex(),
            iv=payload.iv.hex(),
            strategy=self.name,
            size=len(plaintext),
        )

    def decrypt(self, src: Path, dst: Path, fmt: FileFormat, *, user_id: str | None = None) -> None:
        blob = src.read_bytes()
        tag = read_tag(src) if fmt is FileFormat.CURRENT else None
        plaintext = self._codec.decrypt_as(fmt, blob, tag, user_id=user_id)
        dst.write_bytes(plaintext)


class StreamingTransfer:
    name = "streaming"

    def __init__(self, codec: EncryptionCodec, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._codec = codec
        self._chunk_size = chunk_size

    def encrypt(self, src: Path, dst: Path) -> EncryptionResult:
        encryptor = self._codec.encryptor()
        size = 0
        with ExitStack() as stack:
            fin = stack.enter_context(src.open("rb"))
            fout = stack.enter_context(dst.open("wb"))
            fout.write(encryptor.header)
            for chunk in iter(partial(fin.read, self._chunk_size), b""):
                size += len(chunk)
                fout.write(encryptor.update(chunk))
            tail, tag = encryptor.finalize()
            fout.write(tail)
        tag_path = tag_path_for(dst)
        tag_path.write_bytes(tag)
        return EncryptionResult(
            path=dst,
            tag_path=tag_path,
            salt=encryptor.salt.hex(),
            iv=encryptor.iv.hex(),
            strategy=self.name,
            size=size,
        )

    def decrypt(self, src: Path, dst: Path, fmt: FileFormat, *, user_id: str | None = None) -> None:
        with src.open("rb") as fin:
            if fmt is FileFormat.CURRENT:
                header = fin.read(HEADER_LENGTH)
                if len(header) < HEADER_LENGTH:
                    raise FormatError("could not read encryption header")
                tag = read_tag(src)
                offset = HEADER_LENGTH
            else:
                header = fin.read(LEGACY_HEADER_LENGTH)
                if len(header) < LEGACY_HEADER_LENGTH:
                    raise FormatError("could not read legacy encryption header")
                tag = header[HEADER_LENGTH:HEADER_LENGTH + AUTH_TAG_LENGTH]
                offset = LEGACY_HEADER_LENGTH
            salt = header[:SALT_LENGTH]
            iv = header[SALT_LENGTH:HEADER_LENGTH]

            last: IntegrityError | None = None
            for scheme in self._codec.schemes_for(fmt, user_id):
                decryptor = self._codec.decryptor(salt, iv, tag, scheme=scheme, user_id=user_id)
                fin.seek(offset)
                try:
                    with dst.open("wb") as fout:
                        for chunk in iter(partial(fin.read, self._chunk_size), b""):
                            fout.write(decryptor.update(chunk))
                        fout.write(decryptor.finalize())
                    return
                except IntegrityError as e:
                    remove_partial(dst)
                    last = e
            assert last is not None
            raise last


class AdaptiveFileTransfer:
    def __init__(
        self,
        codec: EncryptionCodec,
        *,
        threshold: int = DEFAULT_STREAM_THRESHOLD,
        max_size: int = DEFAULT_MAX_FILE_SIZE,
        validate_content: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.codec = codec
        self.threshold = threshold
        self.max_size = max_size
        self.validate_content = validate_content
        self.buffered = BufferedTransfer(codec)
        self.streaming = StreamingTransfer(codec, chunk_size)

    def strategy_for(self, size: int, threshold: int | None = None) -> Transferable:
        """Buffered below the threshold, streaming at or above it."""
        limit = self.threshold if threshold is None else threshold
        return self.streaming if size >= limit else self.buffered

    def smart_encrypt(
        self,
        input_path: str | Path,
        output_path: str | Path,
        threshold: int | None = None,
        *,
        validate_content: bool | None = None,
    ) -> EncryptionResult:
        src, dst = Path(input_path), Path(output_path)
        check = self.validate_content if validate_content is None else validate_content
        validation = validate_file(src, max_size=self.max_size, validate_content=check)
        strategy = self.strategy_for(validation.size, threshold)
        log.info(
            "using %s encryption for %s (%d bytes, %s)",
            strategy.name,
            src,
            validation.size,
            validation.file_type or "unchecked",
        )
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            return strategy.encrypt(src, dst)
        except OSError as e:
            remove_partial(dst, tag_path_for(dst))
            raise StorageIOError(f"file encryption failed for {src}: {e}") from e
        except BaseException:
            remove_partial(dst, tag_path_for(dst))
            raise

    def smart_decrypt(
        self,
        input_path: str | Path,
        output_path: str | Path,
        threshold: int | None = None,
        *,
        user_id: str | None = None,
    ) -> DecryptionResult:
        """Decrypt either on-disk format to ``output_path``.

        The sidecar tag decides which format is tried first; the other one is
        tried if that fails. IntegrityError and FormatError reach the caller
        unchanged, other OS failures as StorageIOError.
        """
        src, dst = Path(input_path), Path(output_path)
        if not src.is_file():
            raise NotFoundError(f"encrypted file not found: {src}")
        size = src.stat().st_size
        if size < HEADER_LENGTH:
            raise FormatError(f"file is too small to be a valid encrypted file: {src}")

        order = detection_order(tag_path_for(src).is_file())
        strategy = self.strategy_for(size - HEADER_LENGTH, threshold)
        log.info("detected %s encryption format for %s, using %s decryption", order[0].value, src, strategy.name)

        failures: list[IntegrityError | FormatError] = []
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            for fmt in order:
                try:
                    strategy.decrypt(src, dst, fmt, user_id=user_id)
                except (IntegrityError, FormatError) as e:
                    remove_partial(dst)
                    failures.append(e)
                    if fmt is order[0]:
                        log.warning("%s format decryption failed for %s, trying %s", fmt.value, src, fmt.other().value)
                    continue
                return DecryptionResult(path=dst, format=fmt, strategy=strategy.name, size=dst.stat().st_size)
        except OSError as e:
            remove_partial(dst)
            raise StorageIOError(f"file decryption failed for {src}: {e}") from e
        except BaseException:
            remove_partial(dst)
            raise

        error = combine_failures(failures)
        log.error("could not decrypt %s: %s", src, error)
        raise error

    def decrypt_to_bytes(self, input_path: str | Path, *, user_id: str | None = None) -> bytes:
        src = Path(input_path)
        if not src.is_file():
            raise NotFoundError(f"encrypted file not found: {src}")
        tag_path = tag_path_for(src)
        try:
            blob = src.read_bytes()
            tag = tag_path.read_bytes() if tag_path.is_file() else None
        except OSError as e:
            raise StorageIOError(f"could not read {src}: {e}") from e
        return self.codec.decrypt_blob(blob, tag, user_id=user_id)
