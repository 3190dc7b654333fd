from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import ValidationError
from ..storage.validation import DOCX_MIME, PDF_MIME
from ..tiers import UserTier


class ConversionType(str, Enum):
    PDF_TO_DOCX = "pdf-to-docx"
    DOCX_TO_PDF = "docx-to-pdf"

    @classmethod
    def parse(cls, value: "str | ConversionType") -> "ConversionType":
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError(f"unsupported conversion type: {value!r}") from e

    @property
    def source_type(self) -> str:
        return "pdf" if self is ConversionType.PDF_TO_DOCX else "docx"

    @property
    def source_mime(self) -> str:
        return PDF_MIME if self is ConversionType.PDF_TO_DOCX else DOCX_MIME

    @property
    def output_extension(self) -> str:
        return ".docx" if self is ConversionType.PDF_TO_DOCX else ".pdf"

    @property
    def output_mime(self) -> str:
        return DOCX_MIME if self is ConversionType.PDF_TO_DOCX else PDF_MIME


class ConversionQuality(str, Enum):
    STANDARD = "standard"
    HIGH = "high"

    @classmethod
    def parse(cls, value: "str | ConversionQuality") -> "ConversionQuality":
        try:
            return cls(value)
        except ValueError as e:
            raise ValidationError(f"unsupported quality: {value!r}") from e


class JobState(str, Enum):
    NOT_FOUND = "not_found"
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Principal:
    user_id: str
    tier: UserTier = UserTier.FREE


@dataclass(frozen=True)
class ConversionJob:
    conversion_id: str
    user_id: str
    source_file_path: str
    output_file_path: str
    original_filename: str
    conversion_type: ConversionType
    quality: ConversionQuality = ConversionQuality.HIGH
    preserve_formatting: bool = True
    user_tier: UserTier = UserTier.FREE

    def to_payload(self) -> dict[str, Any]:
        return {
            "conversionId": self.conversion_id,
            "userId": self.user_id,
            "sourceFilePath": self.source_file_path,
            "outputFilePath": self.output_file_path,
            "originalFilename": self.original_filename,
            "conversionType": self.conversion_type.value,
            "quality": self.quality.value,
            "preserveFormatting": self.preserve_formatting,
            "userTier": self.user_tier.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ConversionJob":
        try:
            return cls(
                conversion_id=str(payload["conversionId"]),
                user_id=str(payload["userId"]),
                source_file_path=str(payload["sourceFilePath"]),
                output_file_path=str(payload["outputFilePath"]),
                original_filename=str(payload["originalFilename"]),
                conversion_type=ConversionType.parse(payload["conversionType"]),
                quality=ConversionQuality.parse(payload.get("quality", "high")),
                preserve_formatting=bool(payload.get("preserveFormatting", True)),
                user_tier=UserTier.parse(payload.get("userTier")),
            )
        except KeyError as e:
            raise ValidationError(f"job payload is missing {e.args[0]}") from e


@dataclass(frozen=True)
class JobOptions:
    priority: int
    attempts: int
    job_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"priority": self.priority, "attempts": self.attempts, "jobId": self.job_id}


@dataclass
class QueuedJob:
    id: str
    payload: dict[str, Any]
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    cancelled: bool = False
    result: dict[str, Any] | None = None
    error: str | None = None

    def data(self) -> dict[str, Any]:
        return {
            "payload": dict(self.payload),
            "options": self.options.to_dict(),
            "attemptsMade": self.attempts_made,
            "cancelled": self.cancelled,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    priority: int
    attempts: int
    estimated_time_ms: int
    created: bool = True


@dataclass(frozen=True)
class JobStatusReport:
    state: JobState
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
        }


@dataclass(frozen=True)
class ConversionOutcome:
    success: bool
    page_count: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class ConversionTicket:
    conversion_id: str
    job_id: str
    estimated_time_ms: int
