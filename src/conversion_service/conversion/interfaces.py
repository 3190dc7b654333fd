from pathlib import Path
from typing import Any, Protocol

from .models import ConversionOutcome, JobOptions, JobState, QueuedJob, QueueStats


class ConverterGateway(Protocol):
    def convert(
        self,
        input_path: Path,
        output_path: Path,
        quality: str,
        preserve_formatting: bool,
    ) -> ConversionOutcome:
        """Convert a decrypted document to ``output_path`` synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """


class QueueBackend(Protocol):
    async def add(self, payload: dict[str, Any], options: JobOptions) -> tuple[QueuedJob, bool]:
        """Add a job under ``options.job_id``; returns the job and whether it was new."""

    async def get(self, job_id: str) -> QueuedJob | None:
        ...

    async def remove(self, job_id: str) -> bool:
        ...

    async def counts(self) -> QueueStats:
        ...

    async def reserve(self, timeout: float | None = None) -> QueuedJob | None:
        """Move the next job (lowest priority value first) to active."""

    async def complete(self, job_id: str, result: dict[str, Any]) -> None:
        ...

    async def fail(self, job_id: str, error: str, *, retryable: bool = True) -> JobState:
        """Record a failed attempt; returns the job's new state."""

    async def close(self) -> None:
        ...
