import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..errors import (
    AccessDeniedError,
    ConfigurationError,
    ConversionFailedError,
    FormatError,
    IntegrityError,
    NotFoundError,
    PayloadTooLargeError,
    QueueUnavailableError,
    ValidationError,
)
from ..links import generate_download_token, verify_download_token
from ..storage.cleanup import run_cleanup_loop
from ..storage.records import StoredFile, utcnow
from ..storage.store import SecureFileStore, StorageKind, generate_secure_filename, secure_delete
from .interfaces import ConverterGateway
from .models import (
    ConversionJob,
    ConversionQuality,
    ConversionTicket,
    ConversionType,
    JobState,
    JobStatusReport,
    Principal,
    QueuedJob,
)
from .scheduler import ConversionQueueScheduler, job_key

log = logging.getLogger(__name__)

# another attempt cannot fix these
NON_RETRYABLE = (IntegrityError, FormatError, ValidationError, ConfigurationError, NotFoundError)

UPLOAD_CHUNK = 1024 * 1024


class ConversionService:
    """Core domain service orchestrating conversion jobs.

    Framework-agnostic: the HTTP layer calls the async intake methods, while
    worker loops drain the queue backend and run each job through
    decrypt, convert and re-encrypt. Blocking crypto, disk and converter work
    is offloaded to threads.
    """

    def __init__(
        self,
        store: SecureFileStore,
        scheduler: ConversionQueueScheduler,
        converter: ConverterGateway,
        *,
        token_secret: str,
        workers: int = 4,
        token_ttl_sec: int = 3600,
        cleanup_interval_sec: float | None = None,
        reserve_timeout: float = 1.0,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._converter = converter
        self._token_secret = token_secret
        self._workers = workers
        self._token_ttl = token_ttl_sec
        self._cleanup_interval = cleanup_interval_sec
        self._reserve_timeout = reserve_timeout
        self._tasks: list[asyncio.Task] = []

    @property
    def store(self) -> SecureFileStore:
        return self._store

    @property
    def scheduler(self) -> ConversionQueueScheduler:
        return self._scheduler

    async def start(self) -> None:
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        if self._cleanup_interval:
            self._tasks.append(
                asyncio.create_task(run_cleanup_loop(self._store.records, self._store, self._cleanup_interval))
            )
        log.info("started %d conversion workers", self._workers)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # intake

    async def upload(
        self,
        principal: Principal,
        reader: Callable[[int], Awaitable[bytes]],
        original_filename: str,
        mime_type: str | None = None,
        *,
        max_bytes: int | None = None,
    ) -> StoredFile:
        """Stream an upload to a staging file, then encrypt and record it.

        ``reader(n)`` returns up to ``n`` bytes and an empty chunk at the end.
        """
        max_bytes = self._store.transfer.max_size if max_bytes is None else max_bytes
        staged = await asyncio.to_thread(self._store.staging_path, principal.user_id)
        size = 0
        try:
            with staged.open("wb") as f_out:
                while True:
                    chunk = await reader(UPLOAD_CHUNK)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > max_bytes:
                        raise PayloadTooLargeError(f"upload exceeds {max_bytes} bytes")
                    f_out.write(chunk)
        except BaseException:
            await asyncio.to_thread(secure_delete, staged)
            raise

        record = await asyncio.to_thread(
            self._store.store_upload,
            principal.user_id,
            principal.tier,
            staged,
            original_filename,
            mime_type,
        )
        log.info("stored upload %s for user %s (%d bytes)", record.id, principal.user_id, record.size)
        return record

    async def start_conversion(
        self,
        principal: Principal,
        source_file_id: str,
        conversion_type: ConversionType | str,
        quality: ConversionQuality | str = ConversionQuality.HIGH,
        preserve_formatting: bool = True,
    ) -> ConversionTicket:
        ctype = ConversionType.parse(conversion_type)
        cquality = ConversionQuality.parse(quality)
        source = self.get_file(principal, source_file_id)
        if source.mime_type != ctype.source_mime:
            raise ValidationError(f"{ctype.value} needs a {ctype.source_type} source, got {source.mime_type}")

        conversion_id = uuid.uuid4().hex
        output_dir = await asyncio.to_thread(
            self._store.ensure_user_directory, principal.user_id, StorageKind.OUTPUTS
        )
        job = ConversionJob(
            conversion_id=conversion_id,
            user_id=principal.user_id,
            source_file_path=source.path,
            output_file_path=str(output_dir / generate_secure_filename(f"result{ctype.output_extension}")),
            original_filename=f"{Path(source.original_filename).stem}{ctype.output_extension}",
            conversion_type=ctype,
            quality=cquality,
            preserve_formatting=preserve_formatting,
            user_tier=principal.tier,
        )
        handle = await self._scheduler.enqueue(job, source_size=source.size)
        return ConversionTicket(
            conversion_id=conversion_id,
            job_id=handle.job_id,
            estimated_time_ms=handle.estimated_time_ms,
        )

    async def conversion_status(self, principal: Principal, conversion_id: str) -> JobStatusReport:
        report = await self._scheduler.status(job_key(conversion_id))
        if report.state is not JobState.NOT_FOUND:
            self._check_job_owner(principal, report)
        return report

    async def cancel_conversion(self, principal: Principal, conversion_id: str) -> bool:
        report = await self._scheduler.status(job_key(conversion_id))
        if report.state is JobState.NOT_FOUND:
            return False
        self._check_job_owner(principal, report)
        return await self._scheduler.cancel(job_key(conversion_id))

    # files and downloads

    def get_file(self, principal: Principal, file_id: str) -> StoredFile:
        record = self._available(file_id)
        if record.user_id != principal.user_id:
            raise AccessDeniedError("file belongs to another user")
        return record

    def list_files(self, principal: Principal) -> list[StoredFile]:
        """The caller's live files, newest first."""
        now = utcnow()
        return [
            r
            for r in self._store.records.list_for_user(principal.user_id)
            if not r.is_deleted and not r.is_expired(now)
        ]

    def download_link(self, principal: Principal, file_id: str) -> str:
        record = self.get_file(principal, file_id)
        return generate_download_token(record.id, record.user_id, self._token_secret, self._token_ttl)

    def resolve_download_token(self, token: str) -> StoredFile:
        claims = verify_download_token(token, self._token_secret)
        if claims is None:
            raise AccessDeniedError("invalid or expired download link")
        file_id, user_id = claims
        return self.get_file(Principal(user_id=user_id), file_id)

    async def download(self, record: StoredFile) -> Path:
        """Decrypt ``record`` into the owner's temp directory and return the path.

        The caller must securely delete the returned file once it is sent.
        """
        temp_dir = await asyncio.to_thread(self._store.ensure_user_directory, record.user_id, StorageKind.TEMP)
        target = temp_dir / f"{uuid.uuid4().hex}.download.tmp"
        try:
            await asyncio.to_thread(self._store.decrypt_to, record, target)
        except (IntegrityError, FormatError):
            log.error("stored file %s failed to decrypt", record.id)
            raise
        return target

    def _available(self, file_id: str) -> StoredFile:
        record = self._store.records.get(file_id)
        if record is None or record.is_deleted or record.is_expired(utcnow()):
            raise NotFoundError(f"file {file_id} not found")
        return record

    @staticmethod
    def _check_job_owner(principal: Principal, report: JobStatusReport) -> None:
        payload = (report.data or {}).get("payload", {})
        if payload.get("userId") != principal.user_id:
            raise AccessDeniedError("conversion belongs to another user")

    # workers

    async def process_job(self, queued: QueuedJob) -> dict[str, Any]:
        """Run one attempt of a queued conversion and return its result data.

        The output StoredFile is recorded before this returns, so a completed
        job always points at a downloadable file.
        """
        job = ConversionJob.from_payload(queued.payload)
        log.info("processing %s job %s (attempt %d)", job.conversion_type.value, queued.id, queued.attempts_made)
        temp_dir = await asyncio.to_thread(self._store.ensure_user_directory, job.user_id, StorageKind.TEMP)
        work_dir = temp_dir / f"{job.conversion_id}.tmp"
        source_plain = work_dir / f"source.{job.conversion_type.source_type}"
        result_plain = work_dir / f"result{job.conversion_type.output_extension}"
        try:
            await asyncio.to_thread(work_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(
                self._store.transfer.smart_decrypt, job.source_file_path, source_plain, user_id=job.user_id
            )
            outcome = await asyncio.to_thread(
                self._converter.convert,
                source_plain,
                result_plain,
                job.quality.value,
                job.preserve_formatting,
            )
            if not outcome.success:
                raise ConversionFailedError(outcome.error or "conversion failed")
            if not result_plain.exists():
                raise ConversionFailedError("converter reported success but produced no output")
            record = await asyncio.to_thread(
                self._store.store_result,
                job.user_id,
                job.user_tier,
                result_plain,
                job.original_filename,
                job.conversion_type.output_mime,
                output_path=job.output_file_path,
            )
        finally:
            await asyncio.to_thread(_scrub_work_dir, work_dir)

        log.info("conversion %s completed, output file %s", job.conversion_id, record.id)
        return {"resultFileId": record.id, "pageCount": outcome.page_count, "outputFilePath": record.path}

    async def _worker_loop(self, name: str) -> None:
        backend = self._scheduler.backend
        while True:
            try:
                queued = await backend.reserve(timeout=self._reserve_timeout)
            except QueueUnavailableError as e:
                log.error("%s cannot reach queue: %s", name, e)
                await asyncio.sleep(self._reserve_timeout)
                continue
            if queued is None:
                continue
            try:
                await self._run_attempt(name, queued)
            except QueueUnavailableError as e:
                log.error("%s could not report job %s: %s", name, queued.id, e)

    async def _run_attempt(self, name: str, queued: QueuedJob) -> None:
        backend = self._scheduler.backend
        try:
            result = await self.process_job(queued)
        except asyncio.CancelledError:
            raise
        except NON_RETRYABLE as e:
            state = await backend.fail(queued.id, str(e), retryable=False)
            log.error("%s: job %s failed permanently: %s", name, queued.id, e)
        except Exception as e:
            state = await backend.fail(queued.id, str(e))
            log.warning("%s: job %s attempt %d failed (%s): %s", name, queued.id, queued.attempts_made, state.value, e)
        else:
            await backend.complete(queued.id, result)
            return
        if state is JobState.FAILED:
            log.info("job %s will not be retried", queued.id)


def _scrub_work_dir(work_dir: Path) -> None:
    if not work_dir.exists():
        return
    for path in work_dir.rglob("*"):
        if path.is_file():
            secure_delete(path)
    shutil.rmtree(work_dir, ignore_errors=True)
