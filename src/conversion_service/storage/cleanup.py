"""Periodic retention sweeps.

One failing file is logged and counted; the sweep always moves on to the next.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .codec import TAG_SUFFIX
from .records import FileRecordGateway, utcnow
from .store import SecureFileStore, StorageKind

log = logging.getLogger(__name__)

# scratch plaintext older than this belongs to a job or download that died
TEMP_GRACE_SEC = 6 * 60 * 60


@dataclass(frozen=True)
class SweepReport:
    deleted: int
    errors: int


@dataclass(frozen=True)
class OrphanReport:
    scanned: int
    orphaned: int
    deleted: int
    errors: int


def cleanup_expired_files(
    records: FileRecordGateway,
    store: SecureFileStore,
    *,
    now: datetime | None = None,
) -> SweepReport:
    """Destroy the ciphertext of expired files and soft-delete their records."""
    now = now or utcnow()
    unreadable_before = records.unreadable
    expired = records.find_expired(now)
    errors = records.unreadable - unreadable_before
    log.info("found %d expired files to clean up", len(expired))

    deleted = 0
    for record in expired:
        try:
            store.delete_encrypted(record.path)
            record.is_deleted = True
            record.deleted_at = utcnow()
            records.save(record)
            deleted += 1
        except Exception:
            errors += 1
            log.exception("error cleaning up file %s", record.id)

    log.info("cleanup completed: deleted %d files with %d errors", deleted, errors)
    return SweepReport(deleted=deleted, errors=errors)


def _is_ignored(rel: Path) -> bool:
    return rel.name.startswith(".") or rel.name.endswith(".json")


def _is_scratch(rel: Path) -> bool:
    # the first part is the user directory; scratch names live below it
    return any(part.endswith(".tmp") for part in rel.parts[1:])


def cleanup_orphaned_files(
    records: FileRecordGateway,
    store: SecureFileStore,
    *,
    temp_grace_sec: float = TEMP_GRACE_SEC,
    now: float | None = None,
) -> OrphanReport:
    """Securely delete unrecorded files and stale scratch plaintext.

    Files still being written (``*.tmp``, per-job ``*.tmp/`` directories) are
    left alone until they are older than ``temp_grace_sec``. When some records
    cannot be read, only stale scratch files are removed, since any other file
    might belong to one of them.
    """
    now = time.time() if now is None else now
    unreadable_before = records.unreadable
    known = records.known_paths()
    unreadable = records.unreadable - unreadable_before
    if unreadable:
        log.warning("%d file records are unreadable, keeping unrecorded files", unreadable)

    scanned = orphaned = deleted = 0
    errors = unreadable
    for kind in StorageKind:
        root = store.base_dir / kind.value
        if not root.is_dir():
            continue
        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            scanned += 1
            rel = path.relative_to(root)
            if _is_ignored(rel):
                continue
            try:
                if _is_scratch(rel):
                    if now - path.stat().st_mtime < temp_grace_sec:
                        continue
                else:
                    owner_path = str(path.resolve())
                    if owner_path.endswith(TAG_SUFFIX):
                        owner_path = owner_path[: -len(TAG_SUFFIX)]
                    if unreadable or owner_path in known:
                        continue
                orphaned += 1
                if store.secure_delete(path):
                    deleted += 1
            except Exception:
                errors += 1
                log.exception("error deleting orphaned file %s", path)
        _remove_empty_scratch_dirs(root)

    log.info(
        "orphaned files cleanup completed. scanned: %d, orphaned: %d, deleted: %d, errors: %d",
        scanned,
        orphaned,
        deleted,
        errors,
    )
    return OrphanReport(scanned=scanned, orphaned=orphaned, deleted=deleted, errors=errors)


def _remove_empty_scratch_dirs(root: Path) -> None:
    for d in sorted(root.glob("*/*.tmp"), reverse=True):
        if not d.is_dir():
            continue
        try:
            if not any(d.iterdir()):
                d.rmdir()
        except OSError as e:
            log.warning("could not remove scratch directory %s: %s", d, e)


async def run_cleanup_loop(
    records: FileRecordGateway,
    store: SecureFileStore,
    interval_sec: float,
) -> None:
    """Run the expired-file and orphan sweeps every ``interval_sec`` until cancelled."""
    log.info("scheduling file cleanup every %s seconds", interval_sec)
    while True:
        try:
            await asyncio.to_thread(cleanup_expired_files, records, store)
            await asyncio.to_thread(cleanup_orphaned_files, records, store)
        except Exception:
            log.exception("error in scheduled file cleanup")
        await asyncio.sleep(interval_sec)
