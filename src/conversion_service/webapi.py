import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from . import __version__
from .conversion import ConversionService, ConverterGateway, LibreOfficeConverter, Principal, QueueBackend
from .conversion.queues import build_queue_backend
from .conversion.scheduler import ConversionQueueScheduler
from .errors import (
    AccessDeniedError,
    ConfigurationError,
    ConversionServiceError,
    FormatError,
    IntegrityError,
    NotFoundError,
    PayloadTooLargeError,
    QueueUnavailableError,
    ValidationError,
)
from .settings import Settings, configure_logging
from .storage import AdaptiveFileTransfer, EncryptionCodec, LocalFileRecords, SecureFileStore, StoredFile
from .storage.records import to_iso
from .storage.store import is_storable_user_id, secure_delete
from .tiers import UserTier

log = logging.getLogger(__name__)

# most specific first
ERROR_STATUS: list[tuple[type[ConversionServiceError], int]] = [
    (IntegrityError, status.HTTP_410_GONE),
    (FormatError, status.HTTP_410_GONE),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (PayloadTooLargeError, 413),
    (ValidationError, 422),
    (QueueUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: ConversionServiceError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ConversionRequest(BaseModel):
    file_id: str = Field(alias="fileId")
    conversion_type: str = Field(alias="conversionType")
    quality: str = "high"
    preserve_formatting: bool = Field(True, alias="preserveFormatting")


def build_service(
    settings: Settings,
    *,
    converter: ConverterGateway | None = None,
    backend: QueueBackend | None = None,
) -> ConversionService:
    codec = EncryptionCodec(settings.file_encryption_secret.get_secret_value())
    transfer = AdaptiveFileTransfer(
        codec,
        threshold=settings.stream_threshold_bytes,
        max_size=settings.max_file_size_bytes,
        validate_content=settings.validate_content,
    )
    records = LocalFileRecords(settings.data_dir)
    store = SecureFileStore(settings.data_dir / "storage", transfer, records, expiry_ms=settings.file_expiry_ms)
    scheduler = ConversionQueueScheduler(backend or build_queue_backend(settings))
    return ConversionService(
        store,
        scheduler,
        converter or LibreOfficeConverter(),
        token_secret=settings.secure_token_secret.get_secret_value(),
        workers=settings.workers,
        token_ttl_sec=settings.download_token_ttl_sec,
        cleanup_interval_sec=settings.cleanup_interval_sec or None,
    )


def file_body(record: StoredFile) -> dict[str, object]:
    return {
        "id": record.id,
        "filename": record.filename,
        "originalFilename": record.original_filename,
        "mimeType": record.mime_type,
        "size": record.size,
        "createdAt": to_iso(record.created_at),
        "expiresAt": to_iso(record.expires_at),
    }


def get_principal(
    x_user_id: str | None = Header(None),
    x_user_tier: str | None = Header(None),
) -> Principal:
    # identity is established upstream; an unknown tier is served as free
    if not x_user_id:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "missing user identity"})
    if not is_storable_user_id(x_user_id):
        raise ValidationError("user id may only contain letters, digits and . _ @ + -")
    return Principal(user_id=x_user_id, tier=UserTier.parse(x_user_tier))


def get_service(request: Request) -> ConversionService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "service is starting"})
    return service


def _send_plaintext(path, record: StoredFile) -> FileResponse:
    return FileResponse(
        path,
        media_type=record.mime_type,
        filename=record.original_filename,
        background=BackgroundTask(secure_delete, path),
    )


def create_app(
    settings: Settings | None = None,
    *,
    converter: ConverterGateway | None = None,
    backend: QueueBackend | None = None,
    start_workers: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = settings or Settings.from_env()
        configure_logging(cfg.log_level)
        service = build_service(cfg, converter=converter, backend=backend)
        app.state.service = service
        if start_workers:
            await service.start()
        log.info("conversion service ready (data dir %s, queue %s)", cfg.data_dir, cfg.queue_backend)
        try:
            yield
        finally:
            await service.stop()
            await service.scheduler.backend.close()
            app.state.service = None

    app = FastAPI(
        title="Secure Conversion Service",
        version=__version__,
        description=(
            "PDF/DOCX conversion with tier-based queue priority and "
            "encrypted-at-rest file storage."
        ),
        lifespan=lifespan,
    )

    @app.exception_handler(ConversionServiceError)
    async def _service_error(request: Request, exc: ConversionServiceError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        # integrity failures do not echo file paths back to the client
        message = "file is unavailable" if isinstance(exc, (IntegrityError, FormatError)) else str(exc)
        return JSONResponse(status_code=code, content={"detail": {"code": exc.code, "message": message}})

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/files", status_code=status.HTTP_201_CREATED)
    async def upload_file(
        file: UploadFile = File(...),
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> JSONResponse:
        """Encrypt and store an uploaded PDF or DOCX for later conversion."""
        record = await service.upload(principal, file.read, file.filename or "upload")
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content=file_body(record),
            headers={"Location": f"/files/{record.id}"},
        )

    @app.get("/files")
    def list_files(
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> dict[str, object]:
        """The caller's stored files that have not expired, newest first."""
        return {"files": [file_body(r) for r in service.list_files(principal)]}

    @app.get("/files/{file_id}")
    def get_file(
        file_id: str,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> dict[str, object]:
        return file_body(service.get_file(principal, file_id))

    @app.get("/files/{file_id}/link")
    def get_download_link(
        file_id: str,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> dict[str, object]:
        token = service.download_link(principal, file_id)
        return {"token": token, "url": f"/downloads/{token}"}

    @app.get("/files/{file_id}/download")
    async def download_file(
        file_id: str,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> FileResponse:
        record = service.get_file(principal, file_id)
        return _send_plaintext(await service.download(record), record)

    @app.get("/downloads/{token}")
    async def download_by_token(token: str, service: ConversionService = Depends(get_service)) -> FileResponse:
        record = service.resolve_download_token(token)
        return _send_plaintext(await service.download(record), record)

    @app.post("/conversions", status_code=status.HTTP_202_ACCEPTED)
    async def create_conversion(
        body: ConversionRequest,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> JSONResponse:
        ticket = await service.start_conversion(
            principal,
            body.file_id,
            body.conversion_type,
            body.quality,
            body.preserve_formatting,
        )
        content = {
            "conversionId": ticket.conversion_id,
            "jobId": ticket.job_id,
            "estimatedTimeMs": ticket.estimated_time_ms,
            "links": {"self": f"/conversions/{ticket.conversion_id}"},
        }
        headers = {"Location": f"/conversions/{ticket.conversion_id}"}
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content, headers=headers)

    @app.get("/conversions/{conversion_id}")
    async def get_conversion(
        conversion_id: str,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> dict[str, object]:
        report = await service.conversion_status(principal, conversion_id)
        if report.data is None:
            raise NotFoundError(f"conversion {conversion_id} not found")
        data = report.data
        return {
            "conversionId": conversion_id,
            "state": report.state.value,
            "attemptsMade": data["attemptsMade"],
            "result": data["result"],
            "error": data["error"],
        }

    @app.delete("/conversions/{conversion_id}")
    async def cancel_conversion(
        conversion_id: str,
        principal: Principal = Depends(get_principal),
        service: ConversionService = Depends(get_service),
    ) -> dict[str, object]:
        return {"conversionId": conversion_id, "cancelled": await service.cancel_conversion(principal, conversion_id)}

    @app.get("/queue/stats")
    async def queue_stats(service: ConversionService = Depends(get_service)) -> dict[str, int]:
        return (await service.scheduler.queue_stats()).to_dict()

    return app


app = create_app()


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("conversion_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
