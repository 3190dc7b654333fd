import json
import logging
import os
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

from ..errors import StorageIOError, ValidationError
from .codec import ENCRYPTION_METHOD

log = logging.getLogger(__name__)

_RECORD_ID = re.compile(r"[A-Za-z0-9_-]{1,64}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class StoredFile:
    id: str
    user_id: str
    path: str
    filename: str
    original_filename: str
    mime_type: str
    size: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_deleted: bool = False
    deleted_at: datetime | None = None
    encryption_method: str = ENCRYPTION_METHOD
    key_identifier: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        for key in ("expires_at", "created_at", "deleted_at"):
            data[key] = to_iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "StoredFile":
        values = dict(data)
        for key in ("expires_at", "created_at", "deleted_at"):
            values[key] = from_iso(values.get(key))  # type: ignore[arg-type]
        return cls(**values)  # type: ignore[arg-type]


class FileRecordGateway(Protocol):
    unreadable: int

    def create(self, record: StoredFile) -> StoredFile:
        ...

    def get(self, file_id: str) -> StoredFile | None:
        ...

    def save(self, record: StoredFile) -> None:
        ...

    def find_expired(self, now: datetime) -> list[StoredFile]:
        ...

    def known_paths(self) -> set[str]:
        ...

    def list_for_user(self, user_id: str) -> list[StoredFile]:
        ...


class LocalFileRecords(FileRecordGateway):
    """StoredFile records as one JSON document each under ``<data_dir>/records``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._base = Path(data_dir).resolve() / "records"
        self._lock = threading.Lock()
        # records skipped by scans since this store was created
        self.unreadable = 0

    def _record_path(self, file_id: str) -> Path:
        if not _RECORD_ID.fullmatch(file_id):
            raise ValidationError(f"invalid file id: {file_id!r}")
        return self._base / f"{file_id}.json"

    def create(self, record: StoredFile) -> StoredFile:
        if self._record_path(record.id).exists():
            raise StorageIOError(f"file record {record.id} already exists")
        self.save(record)
        return record

    def get(self, file_id: str) -> StoredFile | None:
        try:
            p = self._record_path(file_id)
        except ValidationError:
            return None
        if not p.exists():
            return None
        return self._read(p)

    def save(self, record: StoredFile) -> None:
        p = self._record_path(record.id)
        tmp = p.with_suffix(".json.tmp")
        with self._lock:
            try:
                p.parent.mkdir(parents=True, exist_ok=True)
                with tmp.open("w", encoding="utf-8") as f:
                    json.dump(record.to_dict(), f, ensure_ascii=False, indent=2)
                os.replace(tmp, p)
            except OSError as e:
                tmp.unlink(missing_ok=True)
                raise StorageIOError(f"could not persist file record {record.id}: {e}") from e

    def all(self) -> Iterator[StoredFile]:
        """Every readable record. Unreadable documents are logged and skipped."""
        if not self._base.exists():
            return
        for p in sorted(self._base.glob("*.json")):
            try:
                record = self._read(p)
            except StorageIOError as e:
                self.unreadable += 1
                log.error("skipping unreadable file record %s: %s", p.name, e)
                continue
            yield record

    def _read(self, p: Path) -> StoredFile:
        try:
            with p.open("r", encoding="utf-8") as f:
                return StoredFile.from_dict(json.load(f))
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            raise StorageIOError(f"could not read file record {p.name}: {e}") from e

    def find_expired(self, now: datetime) -> list[StoredFile]:
        return [r for r in self.all() if not r.is_deleted and r.expires_at < now]

    def known_paths(self) -> set[str]:
        """Resolved paths of every recorded file, deleted ones included."""
        return {str(Path(r.path).resolve()) for r in self.all()}

    def list_for_user(self, user_id: str) -> list[StoredFile]:
        records = [r for r in self.all() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records
