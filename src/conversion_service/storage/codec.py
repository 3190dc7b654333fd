"""Authenticated file encryption with backward-compatible decryption.

Current on-disk layout (tag kept in a ``<path>.tag`` sidecar)::

    [0:16]   salt
    [16:32]  iv
    [32:]    ciphertext

Legacy layout, read-only::

    [0:16]   salt
    [16:32]  iv
    [32:48]  auth tag
    [48:]    ciphertext

Current files derive their key with PBKDF2-SHA256 from the master secret.
Legacy files used PBKDF2-SHA512, either from the master secret alone or from
the secret with the owner's user id appended.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import ConfigurationError, FormatError, IntegrityError

log = logging.getLogger(__name__)

ENCRYPTION_METHOD = "aes-256-gcm"
SALT_LENGTH = 16
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH
LEGACY_HEADER_LENGTH = HEADER_LENGTH + AUTH_TAG_LENGTH
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
TAG_SUFFIX = ".tag"

_HASHES = {
    "sha256": hashes.SHA256,
    "sha512": hashes.SHA512,
}


class FileFormat(str, Enum):
    CURRENT = "current"
    LEGACY = "legacy"

    def other(self) -> "FileFormat":
        return FileFormat.LEGACY if self is FileFormat.CURRENT else FileFormat.CURRENT


@dataclass(frozen=True)
class KeyScheme:
    algorithm: str
    bind_user: bool = False


CURRENT_SCHEME = KeyScheme("sha256")
LEGACY_SCHEMES = (KeyScheme("sha512"), KeyScheme("sha512", bind_user=True))


def tag_path_for(path: str | Path) -> Path:
    return Path(f"{path}{TAG_SUFFIX}")


def detection_order(tag_present: bool) -> tuple[FileFormat, FileFormat]:
    """Formats to try, best guess first. A sidecar tag suggests the current format."""
    first = FileFormat.CURRENT if tag_present else FileFormat.LEGACY
    return first, first.other()


@dataclass(frozen=True)
class EncryptedFilePayload:
    salt: bytes
    iv: bytes
    ciphertext: bytes
    auth_tag: bytes

    @property
    def header(self) -> bytes:
        return self.salt + self.iv

    def to_bytes(self) -> bytes:
        """Main file contents in the current layout (tag goes to the sidecar)."""
        return self.salt + self.iv + self.ciphertext

    @classmethod
    def from_current(cls, blob: bytes, tag: bytes) -> "EncryptedFilePayload":
        if len(blob) < HEADER_LENGTH:
            raise FormatError("encrypted file is too small or corrupt")
        if len(tag) != AUTH_TAG_LENGTH:
            raise FormatError(f"auth tag must be {AUTH_TAG_LENGTH} bytes, got {len(tag)}")
        return cls(
            salt=blob[:SALT_LENGTH],
            iv=blob[SALT_LENGTH:HEADER_LENGTH],
            ciphertext=blob[HEADER_LENGTH:],
            auth_tag=tag,
        )

    @classmethod
    def from_legacy(cls, blob: bytes) -> "EncryptedFilePayload":
        if len(blob) < LEGACY_HEADER_LENGTH:
            raise FormatError("encrypted file is too small or corrupt for legacy format")
        return cls(
            salt=blob[:SALT_LENGTH],
            iv=blob[SALT_LENGTH:HEADER_LENGTH],
            auth_tag=blob[HEADER_LENGTH:LEGACY_HEADER_LENGTH],
            ciphertext=blob[LEGACY_HEADER_LENGTH:],
        )


class StreamEncryptor:
    """Chunked AES-GCM encryption. Write ``header`` first, then every ``update``."""

    def __init__(self, key: bytes, salt: bytes, iv: bytes) -> None:
        self.salt = salt
        self.iv = iv
        self._ctx = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()

    @property
    def header(self) -> bytes:
        return self.salt + self.iv

    def update(self, chunk: bytes) -> bytes:
        return self._ctx.update(chunk)

    def finalize(self) -> tuple[bytes, bytes]:
        """Return the trailing ciphertext and the auth tag."""
        tail = self._ctx.finalize()
        return tail, self._ctx.tag


class StreamDecryptor:
    """Chunked AES-GCM decryption.

    Plaintext returned by ``update`` is unauthenticated until ``finalize``
    succeeds; callers must discard it if ``finalize`` raises.
    """

    def __init__(self, key: bytes, iv: bytes, tag: bytes) -> None:
        self._ctx = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()

    def update(self, chunk: bytes) -> bytes:
        return self._ctx.update(chunk)

    def finalize(self) -> bytes:
        try:
            return self._ctx.finalize()
        except InvalidTag as e:
            raise IntegrityError("authentication tag mismatch") from e


class EncryptionCodec:
    def __init__(self, secret: str | None, *, iterations: int = PBKDF2_ITERATIONS) -> None:
        self._secret = secret or ""
        self._iterations = iterations

    def derive_key(
        self,
        salt: bytes,
        secret_material: str | None = None,
        *,
        algorithm: str = "sha256",
    ) -> bytes:
        """PBKDF2 key for ``salt``; ``secret_material`` defaults to the master secret."""
        if not self._secret:
            raise ConfigurationError("FILE_ENCRYPTION_SECRET is not set")
        material = self._secret if secret_material is None else secret_material
        kdf = PBKDF2HMAC(
            algorithm=_HASHES[algorithm](),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(material.encode("utf-8"))

    def scheme_key(self, salt: bytes, scheme: KeyScheme, user_id: str | None = None) -> bytes:
        material = None
        if scheme.bind_user:
            if not user_id:
                raise FormatError("user-bound key scheme needs a user id")
            material = self._secret + user_id
        return self.derive_key(salt, material, algorithm=scheme.algorithm)

    def key_identifier(self, user_id: str) -> str:
        return hashlib.sha256((user_id + self._secret).encode("utf-8")).hexdigest()[:8]

    def encrypt(self, plaintext: bytes) -> EncryptedFilePayload:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self.derive_key(salt)
        ctx = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
        ciphertext = ctx.update(plaintext) + ctx.finalize()
        return EncryptedFilePayload(salt=salt, iv=iv, ciphertext=ciphertext, auth_tag=ctx.tag)

    def decrypt(self, payload: EncryptedFilePayload, *, user_id: str | None = None) -> bytes:
        """Decrypt a parsed payload, trying the current key scheme before the legacy ones."""
        last: IntegrityError | None = None
        for scheme in self.schemes_for(FileFormat.CURRENT, user_id) + self.schemes_for(
            FileFormat.LEGACY, user_id
        ):
            try:
                return self._decrypt_with(payload, scheme, user_id)
            except IntegrityError as e:
                last = e
        assert last is not None
        raise last

    def decrypt_blob(
        self, blob: bytes, tag: bytes | None = None, *, user_id: str | None = None
    ) -> bytes:
        """Decrypt raw file contents in either on-disk layout.

        ``tag`` is the sidecar contents when one exists. The detected layout is
        tried first and the other one after it.
        """
        failures: list[IntegrityError | FormatError] = []
        for fmt in detection_order(tag is not None):
            try:
                return self.decrypt_as(fmt, blob, tag, user_id=user_id)
            except (IntegrityError, FormatError) as e:
                log.debug("%s format decryption failed: %s", fmt.value, e)
                failures.append(e)
        raise combine_failures(failures)

    def decrypt_as(
        self,
        fmt: FileFormat,
        blob: bytes,
        tag: bytes | None,
        *,
        user_id: str | None = None,
    ) -> bytes:
        if fmt is FileFormat.CURRENT:
            if tag is None:
                raise FormatError("auth tag file not found")
            payload = EncryptedFilePayload.from_current(blob, tag)
        else:
            payload = EncryptedFilePayload.from_legacy(blob)
        last: IntegrityError | None = None
        for scheme in self.schemes_for(fmt, user_id):
            try:
                return self._decrypt_with(payload, scheme, user_id)
            except IntegrityError as e:
                last = e
        assert last is not None
        raise last

    def schemes_for(self, fmt: FileFormat, user_id: str | None) -> tuple[KeyScheme, ...]:
        if fmt is FileFormat.CURRENT:
            return (CURRENT_SCHEME,)
        return tuple(s for s in LEGACY_SCHEMES if user_id or not s.bind_user)

    def encryptor(self) -> StreamEncryptor:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        return StreamEncryptor(self.derive_key(salt), salt, iv)

    def decryptor(
        self,
        salt: bytes,
        iv: bytes,
        tag: bytes,
        *,
        scheme: KeyScheme = CURRENT_SCHEME,
        user_id: str | None = None,
    ) -> StreamDecryptor:
        if len(tag) != AUTH_TAG_LENGTH:
            raise FormatError(f"auth tag must be {AUTH_TAG_LENGTH} bytes, got {len(tag)}")
        return StreamDecryptor(self.scheme_key(salt, scheme, user_id), iv, tag)

    def _decrypt_with(
        self, payload: EncryptedFilePayload, scheme: KeyScheme, user_id: str | None
    ) -> bytes:
        key = self.scheme_key(payload.salt, scheme, user_id)
        ctx = Cipher(algorithms.AES(key), modes.GCM(payload.iv, payload.auth_tag)).decryptor()
        try:
            return ctx.update(payload.ciphertext) + ctx.finalize()
        except InvalidTag as e:
            raise IntegrityError("authentication tag mismatch") from e


def combine_failures(failures: list[IntegrityError | FormatError]) -> IntegrityError | FormatError:
    """Pick the error to report after every format failed.

    A failed authentication under any format means the bytes were readable but
    wrong, which outranks a structural mismatch.
    """
    for failure in failures:
        if isinstance(failure, IntegrityError):
            return failure
    if failures:
        return failures[0]
    return FormatError("no decryption format applicable")
