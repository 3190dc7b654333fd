from dataclasses import dataclass
from pathlib import Path

from ..errors import NotFoundError, PayloadTooLargeError, ValidationError

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

# leading bytes -> (file type, mime type)
SIGNATURES: tuple[tuple[bytes, str, str], ...] = (
    (b"%PDF", "pdf", PDF_MIME),
    (b"PK\x03\x04", "docx", DOCX_MIME),
)
SNIFF_LENGTH = max(len(magic) for magic, _, _ in SIGNATURES)


@dataclass(frozen=True)
class FileValidation:
    size: int
    file_type: str | None


def sniff_file_type(head: bytes) -> str | None:
    for magic, file_type, _ in SIGNATURES:
        if head.startswith(magic):
            return file_type
    return None


def mime_for(file_type: str) -> str:
    for _, known, mime in SIGNATURES:
        if known == file_type:
            return mime
    raise ValidationError(f"unsupported file type: {file_type!r}")


def validate_file(path: Path, *, max_size: int, validate_content: bool) -> FileValidation:
    """Check a plaintext file before it is encrypted."""
    if not path.is_file():
        raise NotFoundError(f"input file not found: {path}")
    size = path.stat().st_size
    if size > max_size:
        raise PayloadTooLargeError(f"file is {size} bytes, limit is {max_size}")
    file_type = None
    if validate_content:
        with path.open("rb") as f:
            file_type = sniff_file_type(f.read(SNIFF_LENGTH))
        if file_type is None:
            raise ValidationError("file content does not match a supported document type")
    return FileValidation(size=size, file_type=file_type)
