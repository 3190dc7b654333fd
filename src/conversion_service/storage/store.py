import logging
import os
import re
import secrets
import time
import uuid
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, TypeVar

from ..errors import StorageIOError
from ..settings import DAY_MS
from ..tiers import UserTier
from .codec import tag_path_for
from .records import FileRecordGateway, StoredFile, utcnow
from .transfer import AdaptiveFileTransfer, DecryptionResult
from .validation import mime_for, sniff_file_type

log = logging.getLogger(__name__)

T = TypeVar("T")

OVERWRITE_PASSES = 3
OVERWRITE_CHUNK = 8192
TRANSIENT_RETRIES = 3

# no separators and no leading dot, so "." and ".." never name a directory
_USER_ID = re.compile(r"[A-Za-z0-9_@+-][A-Za-z0-9_.@+-]{0,127}")
_EXTENSION = re.compile(r"\.[A-Za-z0-9]{1,10}")

DEFAULT_EXPIRY_MS: dict[UserTier, int] = {
    UserTier.FREE: DAY_MS,
    UserTier.BASIC: 7 * DAY_MS,
    UserTier.PREMIUM: 30 * DAY_MS,
    UserTier.ENTERPRISE: 90 * DAY_MS,
}


class StorageKind(str, Enum):
    UPLOADS = "uploads"
    OUTPUTS = "outputs"
    THUMBNAILS = "thumbnails"
    TEMP = "temp"


def is_storable_user_id(user_id: str | None) -> bool:
    return bool(user_id) and _USER_ID.fullmatch(user_id) is not None


def retry_transient(fn: Callable[[], T], *, attempts: int = TRANSIENT_RETRIES, delay: float = 0.05) -> T:
    """Run ``fn``, retrying only lock contention and interrupted system calls."""
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (BlockingIOError, InterruptedError) as e:
            if attempt == attempts:
                raise StorageIOError(f"storage busy after {attempts} attempts: {e}") from e
            log.warning("transient storage error (attempt %d/%d): %s", attempt, attempts, e)
            time.sleep(delay * attempt)
    raise AssertionError("unreachable")


def generate_secure_filename(original_name: str) -> str:
    """``<ms timestamp>-<32 hex chars><ext>``; only the extension survives from the input."""
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(16)
    ext = os.path.splitext(os.path.basename(original_name or ""))[1]
    if not _EXTENSION.fullmatch(ext):
        ext = ""
    return f"{timestamp}-{random_part}{ext}"


def secure_delete(path: str | Path, *, passes: int = OVERWRITE_PASSES) -> bool:
    """Overwrite a file with random bytes ``passes`` times, then unlink it.

    Returns False when the file does not exist.
    """
    p = Path(path)
    try:
        size = p.stat().st_size
        with p.open("r+b") as f:
            for _ in range(passes):
                f.seek(0)
                written = 0
                while written < size:
                    n = min(OVERWRITE_CHUNK, size - written)
                    f.write(os.urandom(n))
                    written += n
                f.flush()
                os.fsync(f.fileno())
        p.unlink()
    except FileNotFoundError:
        log.info("file does not exist, skipping deletion: %s", p)
        return False
    except OSError as e:
        raise StorageIOError(f"secure deletion failed for {p}: {e}") from e
    log.info("securely deleted file: %s", p)
    return True


class SecureFileStore:
    def __init__(
        self,
        base_dir: str | Path,
        transfer: AdaptiveFileTransfer,
        records: FileRecordGateway,
        *,
        expiry_ms: dict[UserTier, int] | None = None,
    ) -> None:
        self.base_dir = Path(base_dir).resolve()
        self.transfer = transfer
        self.records = records
        self._expiry_ms = dict(DEFAULT_EXPIRY_MS)
        if expiry_ms:
            self._expiry_ms.update(expiry_ms)

    def user_directory(self, user_id: str, kind: StorageKind | str) -> Path:
        kind = StorageKind(kind)
        if not is_storable_user_id(user_id):
            raise StorageIOError(f"rejected user id for storage path: {user_id!r}")
        path = (self.base_dir / kind.value / user_id).resolve()
        if not path.is_relative_to(self.base_dir):
            raise StorageIOError(f"path traversal rejected: {path}")
        return path

    def ensure_user_directory(self, user_id: str, kind: StorageKind | str) -> Path:
        path = self.user_directory(user_id, kind)
        if path.is_dir():
            return path
        try:
            # a concurrent upload may create it first; exist_ok makes that a success
            retry_transient(lambda: path.mkdir(parents=True, exist_ok=True))
        except OSError as e:
            if isinstance(e, StorageIOError):
                raise
            raise StorageIOError(f"cannot create storage directory {path}: {e}") from e
        log.info("created directory: %s", path)
        return path

    def calculate_expiration(self, user_tier: UserTier | str | None, *, now: datetime | None = None) -> datetime:
        tier = UserTier.parse(user_tier)
        return (now or utcnow()) + timedelta(milliseconds=self._expiry_ms[tier])

    generate_secure_filename = staticmethod(generate_secure_filename)
    secure_delete = staticmethod(secure_delete)

    def delete_encrypted(self, path: str | Path) -> bool:
        """Securely delete a ciphertext file together with its tag sidecar."""
        deleted = secure_delete(path)
        secure_delete(tag_path_for(path))
        return deleted

    def staging_path(self, user_id: str) -> Path:
        """A fresh path in the user's temp directory for plaintext awaiting encryption."""
        temp_dir = self.ensure_user_directory(user_id, StorageKind.TEMP)
        return temp_dir / f"{generate_secure_filename('')}.upload.tmp"

    def store_upload(
        self,
        user_id: str,
        user_tier: UserTier | str | None,
        staged_path: str | Path,
        original_filename: str,
        mime_type: str | None = None,
    ) -> StoredFile:
        """Encrypt a staged upload into the user's uploads directory and record it.

        The staged plaintext is securely deleted whether or not this succeeds.
        """
        staged = Path(staged_path)
        upload_dir = self.ensure_user_directory(user_id, StorageKind.UPLOADS)
        target = upload_dir / generate_secure_filename(original_filename)
        try:
            with staged.open("rb") as f:
                head = f.read(8)
            result = self.transfer.smart_encrypt(staged, target)
        except OSError as e:
            if isinstance(e, StorageIOError):
                raise
            raise StorageIOError(f"could not store upload for user {user_id}: {e}") from e
        finally:
            secure_delete(staged)

        if mime_type is None:
            file_type = sniff_file_type(head)
            mime_type = mime_for(file_type) if file_type else "application/octet-stream"
        return self._record(user_id, user_tier, result.path, original_filename, mime_type, result.size)

    def store_result(
        self,
        user_id: str,
        user_tier: UserTier | str | None,
        plaintext_path: str | Path,
        original_filename: str,
        mime_type: str,
        *,
        output_path: str | Path | None = None,
    ) -> StoredFile:
        """Encrypt a converted file into the user's outputs directory and record it.

        The plaintext file is left in place; callers own its deletion.
        """
        if output_path is None:
            output_dir = self.ensure_user_directory(user_id, StorageKind.OUTPUTS)
            output_path = output_dir / generate_secure_filename(original_filename)
        result = self.transfer.smart_encrypt(plaintext_path, output_path)
        return self._record(user_id, user_tier, result.path, original_filename, mime_type, result.size)

    def decrypt_to(self, record: StoredFile, output_path: str | Path) -> DecryptionResult:
        return self.transfer.smart_decrypt(record.path, output_path, user_id=record.user_id)

    def read_decrypted(self, record: StoredFile) -> bytes:
        return self.transfer.decrypt_to_bytes(record.path, user_id=record.user_id)

    def _record(
        self,
        user_id: str,
        user_tier: UserTier | str | None,
        path: Path,
        original_filename: str,
        mime_type: str,
        size: int,
    ) -> StoredFile:
        now = utcnow()
        record = StoredFile(
            id=uuid.uuid4().hex,
            user_id=user_id,
            path=str(path),
            filename=path.name,
            original_filename=original_filename,
            mime_type=mime_type,
            size=size,
            created_at=now,
            expires_at=self.calculate_expiration(user_tier, now=now),
            key_identifier=self.transfer.codec.key_identifier(user_id),
        )
        try:
            return self.records.create(record)
        except Exception:
            self.delete_encrypted(path)
            raise
