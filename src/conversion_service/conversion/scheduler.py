import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ..errors import QueueUnavailableError
from ..estimator import effective_queue_position, estimate_conversion_time
from ..tiers import policy_for
from .interfaces import QueueBackend
from .models import ConversionJob, JobHandle, JobOptions, JobState, JobStatusReport, QueueStats

log = logging.getLogger(__name__)


def job_key(conversion_id: str) -> str:
    return f"conversion:{conversion_id}"


class ConversionQueueScheduler:
    """Tier-aware front of the conversion queue.

    Priority and retry budget come from the submitting user's tier; the ETA
    handed back uses the tier-discounted view of the waiting queue. Any
    backend failure is raised as QueueUnavailableError.
    """

    def __init__(self, backend: QueueBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    async def enqueue(self, job: ConversionJob, *, source_size: int = 0) -> JobHandle:
        policy = policy_for(job.user_tier)
        options = JobOptions(priority=policy.priority, attempts=policy.attempts, job_id=job_key(job.conversion_id))

        async with self._fail_closed("enqueue"):
            stats = await self._backend.counts()
            queued, created = await self._backend.add(job.to_payload(), options)

        position = effective_queue_position(stats.waiting, job.user_tier)
        estimate = estimate_conversion_time(
            job.conversion_type.source_type,
            source_size,
            job.quality.value,
            position,
        )
        if created:
            log.info(
                "queued %s for user %s (tier=%s priority=%d attempts=%d position=%d)",
                queued.id,
                job.user_id,
                job.user_tier.value,
                policy.priority,
                policy.attempts,
                position,
            )
        else:
            log.info("conversion %s already queued as %s", job.conversion_id, queued.id)
        return JobHandle(
            job_id=queued.id,
            priority=queued.options.priority,
            attempts=queued.options.attempts,
            estimated_time_ms=estimate,
            created=created,
        )

    async def status(self, job_id: str) -> JobStatusReport:
        async with self._fail_closed("status"):
            job = await self._backend.get(job_id)
        if job is None:
            return JobStatusReport(JobState.NOT_FOUND)
        # a job waiting out its retry backoff is still waiting from the user's side
        state = JobState.WAITING if job.state is JobState.DELAYED else job.state
        return JobStatusReport(state, job.data())

    async def cancel(self, job_id: str) -> bool:
        async with self._fail_closed("cancel"):
            removed = await self._backend.remove(job_id)
        if removed:
            log.info("cancelled job %s", job_id)
        return removed

    async def queue_stats(self) -> QueueStats:
        async with self._fail_closed("queue_stats"):
            return await self._backend.counts()

    @asynccontextmanager
    async def _fail_closed(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except QueueUnavailableError:
            raise
        except (ConnectionError, TimeoutError, OSError) as e:
            log.error("queue backend failed during %s: %s", operation, e)
            raise QueueUnavailableError(f"queue unavailable during {operation}: {e}") from e
