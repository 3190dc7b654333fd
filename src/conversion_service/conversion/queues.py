"""Queue backends.

Jobs are served lowest priority value first and FIFO within a priority. A
failed attempt goes back to the queue (after a backoff, in the ``delayed``
state) until its attempt budget is spent. Cancelled active jobs are never
retried.
"""

import asyncio
import heapq
import itertools
import json
import logging
import time
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, AsyncIterator, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..errors import QueueUnavailableError
from ..settings import Settings
from .models import JobOptions, JobState, QueuedJob, QueueStats

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_MS = 5000
REMOVABLE_STATES = {JobState.WAITING, JobState.DELAYED}


def backoff_delay_ms(base_ms: int, attempts_made: int) -> int:
    """Exponential backoff: ``base``, ``2*base``, ``4*base``, ..."""
    return base_ms * 2 ** max(0, attempts_made - 1)


class InMemoryQueueBackend:
    """Process-local backend; the default when no durable queue is configured."""

    def __init__(self, *, backoff_ms: int = DEFAULT_BACKOFF_MS, clock: Callable[[], float] = time.monotonic) -> None:
        self._backoff_ms = backoff_ms
        self._clock = clock
        self._jobs: dict[str, QueuedJob] = {}
        self._waiting: list[tuple[int, int, str]] = []
        self._delayed: dict[str, float] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    async def add(self, payload: dict[str, Any], options: JobOptions) -> tuple[QueuedJob, bool]:
        async with self._cond:
            existing = self._jobs.get(options.job_id)
            if existing is not None:
                return existing, False
            job = QueuedJob(id=options.job_id, payload=dict(payload), options=options)
            self._jobs[job.id] = job
            self._push_waiting(job)
            self._cond.notify()
            return job, True

    async def get(self, job_id: str) -> QueuedJob | None:
        return self._jobs.get(job_id)

    async def remove(self, job_id: str) -> bool:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if job.state in REMOVABLE_STATES:
                # heap entries of removed jobs are skipped lazily on reserve
                self._delayed.pop(job_id, None)
                del self._jobs[job_id]
                return True
            if job.state is JobState.ACTIVE and not job.cancelled:
                job.cancelled = True
                return True
            return False

    async def counts(self) -> QueueStats:
        by_state = {state: 0 for state in JobState}
        for job in self._jobs.values():
            by_state[job.state] += 1
        return QueueStats(
            waiting=by_state[JobState.WAITING],
            active=by_state[JobState.ACTIVE],
            completed=by_state[JobState.COMPLETED],
            failed=by_state[JobState.FAILED],
            delayed=by_state[JobState.DELAYED],
        )

    async def reserve(self, timeout: float | None = None) -> QueuedJob | None:
        deadline = None if timeout is None else self._clock() + timeout
        async with self._cond:
            while True:
                self._promote_delayed()
                job = self._pop_waiting()
                if job is not None:
                    job.state = JobState.ACTIVE
                    job.attempts_made += 1
                    return job
                wait_for = self._next_wakeup(deadline)
                if wait_for is not None and wait_for <= 0:
                    return None
                try:
                    await asyncio.wait_for(self._cond.wait(), wait_for)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, job_id: str, result: dict[str, Any]) -> None:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.state = JobState.COMPLETED
            job.result = result
            job.error = None

    async def fail(self, job_id: str, error: str, *, retryable: bool = True) -> JobState:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                return JobState.NOT_FOUND
            job.error = error
            if not retryable or job.cancelled or job.attempts_made >= job.options.attempts:
                job.state = JobState.FAILED
                return job.state
            delay = backoff_delay_ms(self._backoff_ms, job.attempts_made)
            if delay > 0:
                job.state = JobState.DELAYED
                self._delayed[job_id] = self._clock() + delay / 1000
            else:
                self._push_waiting(job)
            self._cond.notify()
            return job.state

    async def close(self) -> None:
        return None

    def _push_waiting(self, job: QueuedJob) -> None:
        job.state = JobState.WAITING
        heapq.heappush(self._waiting, (job.options.priority, next(self._seq), job.id))

    def _pop_waiting(self) -> QueuedJob | None:
        while self._waiting:
            _, _, job_id = heapq.heappop(self._waiting)
            job = self._jobs.get(job_id)
            if job is not None and job.state is JobState.WAITING:
                return job
        return None

    def _promote_delayed(self) -> None:
        now = self._clock()
        for job_id, ready_at in list(self._delayed.items()):
            if ready_at <= now:
                del self._delayed[job_id]
                job = self._jobs.get(job_id)
                if job is not None and job.state is JobState.DELAYED:
                    self._push_waiting(job)

    def _next_wakeup(self, deadline: float | None) -> float | None:
        now = self._clock()
        candidates = [ready_at - now for ready_at in self._delayed.values()]
        if deadline is not None:
            candidates.append(deadline - now)
        if not candidates:
            return None
        return max(0.0, min(candidates))


class RedisQueueBackend:
    """Durable backend on Redis.

    Keys under ``<name>``: ``:job:<id>`` hash per job, ``:waiting`` sorted set
    scored by priority then arrival, ``:delayed`` sorted set scored by ready
    time (ms), ``:active``, ``:completed`` and ``:failed`` sets.
    """

    PRIORITY_SPAN = 10**12

    def __init__(
        self,
        client: aioredis.Redis,
        name: str = "conversion-queue",
        *,
        backoff_ms: int = DEFAULT_BACKOFF_MS,
        poll_interval: float = 0.5,
    ) -> None:
        self._r = client
        self._name = name
        self._backoff_ms = backoff_ms
        self._poll_interval = poll_interval

    @classmethod
    def from_url(cls, url: str, name: str = "conversion-queue", **kwargs: Any) -> "RedisQueueBackend":
        return cls(aioredis.Redis.from_url(url, decode_responses=True), name, **kwargs)

    def _key(self, suffix: str) -> str:
        return f"{self._name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @asynccontextmanager
    async def _redis(self) -> AsyncIterator[aioredis.Redis]:
        try:
            yield self._r
        except RedisError as e:
            raise QueueUnavailableError(f"queue backend unavailable: {e}") from e

    async def add(self, payload: dict[str, Any], options: JobOptions) -> tuple[QueuedJob, bool]:
        async with self._redis() as r:
            key = self._job_key(options.job_id)
            # the state field doubles as the creation lock for idempotent submits
            created = await r.hsetnx(key, "state", JobState.WAITING.value)
            if not created:
                existing = await self._load(r, options.job_id)
                if existing is not None:
                    return existing, False
            seq = await r.incr(self._key("seq"))
            async with r.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "payload": json.dumps(payload),
                        "priority": options.priority,
                        "attempts": options.attempts,
                        "attempts_made": 0,
                        "cancelled": 0,
                        "state": JobState.WAITING.value,
                    },
                )
                pipe.zadd(self._key("waiting"), {options.job_id: self._score(options.priority, seq)})
                await pipe.execute()
            job = await self._load(r, options.job_id)
            assert job is not None
            return job, True

    async def get(self, job_id: str) -> QueuedJob | None:
        async with self._redis() as r:
            return await self._load(r, job_id)

    async def remove(self, job_id: str) -> bool:
        def apply(pipe: Any, job: QueuedJob | None) -> bool:
            if job is None:
                return False
            if job.state in REMOVABLE_STATES:
                pipe.zrem(self._key("waiting"), job_id)
                pipe.zrem(self._key("delayed"), job_id)
                pipe.delete(self._job_key(job_id))
                return True
            if job.state is JobState.ACTIVE and not job.cancelled:
                pipe.hset(self._job_key(job_id), "cancelled", 1)
                return True
            return False

        async with self._redis() as r:
            return await self._watched(r, job_id, apply)

    async def counts(self) -> QueueStats:
        async with self._redis() as r:
            async with r.pipeline(transaction=False) as pipe:
                pipe.zcard(self._key("waiting"))
                pipe.scard(self._key("active"))
                pipe.scard(self._key("completed"))
                pipe.scard(self._key("failed"))
                pipe.zcard(self._key("delayed"))
                waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueStats(waiting=waiting, active=active, completed=completed, failed=failed, delayed=delayed)

    async def reserve(self, timeout: float | None = None) -> QueuedJob | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        async with self._redis() as r:
            while True:
                await self._promote_delayed(r)
                head = await r.zrange(self._key("waiting"), 0, 0)
                if head:
                    job = await self._watched(r, head[0], partial(self._claim, head[0]))
                    if job is not None:
                        return job
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                await asyncio.sleep(self._poll_interval)

    def _claim(self, job_id: str, pipe: Any, job: QueuedJob | None) -> QueuedJob | None:
        pipe.zrem(self._key("waiting"), job_id)
        # another worker may have claimed or removed the job since it was seen
        if job is None or job.state is not JobState.WAITING:
            return None
        pipe.hset(self._job_key(job_id), "state", JobState.ACTIVE.value)
        pipe.hincrby(self._job_key(job_id), "attempts_made", 1)
        pipe.sadd(self._key("active"), job_id)
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        return job

    async def complete(self, job_id: str, result: dict[str, Any]) -> None:
        async with self._redis() as r:
            async with r.pipeline(transaction=True) as pipe:
                pipe.srem(self._key("active"), job_id)
                pipe.sadd(self._key("completed"), job_id)
                pipe.hset(
                    self._job_key(job_id),
                    mapping={"state": JobState.COMPLETED.value, "result": json.dumps(result)},
                )
                pipe.hdel(self._job_key(job_id), "error")
                await pipe.execute()

    async def fail(self, job_id: str, error: str, *, retryable: bool = True) -> JobState:
        async with self._redis() as r:
            seq = await r.incr(self._key("seq"))

            def apply(pipe: Any, job: QueuedJob | None) -> JobState:
                if job is None:
                    return JobState.NOT_FOUND
                key = self._job_key(job_id)
                pipe.srem(self._key("active"), job_id)
                pipe.hset(key, "error", error)
                if not retryable or job.cancelled or job.attempts_made >= job.options.attempts:
                    state = JobState.FAILED
                    pipe.sadd(self._key("failed"), job_id)
                else:
                    delay = backoff_delay_ms(self._backoff_ms, job.attempts_made)
                    if delay > 0:
                        state = JobState.DELAYED
                        ready_at = int(time.time() * 1000) + delay
                        pipe.zadd(self._key("delayed"), {job_id: ready_at})
                    else:
                        state = JobState.WAITING
                        pipe.zadd(self._key("waiting"), {job_id: self._score(job.options.priority, seq)})
                pipe.hset(key, "state", state.value)
                return state

            return await self._watched(r, job_id, apply)

    async def close(self) -> None:
        await self._r.aclose()

    def _score(self, priority: int, seq: int) -> int:
        return priority * self.PRIORITY_SPAN + seq

    async def _promote_delayed(self, r: aioredis.Redis) -> None:
        now_ms = int(time.time() * 1000)
        due = await r.zrangebyscore(self._key("delayed"), "-inf", now_ms)
        for job_id in due:
            seq = await r.incr(self._key("seq"))

            def apply(pipe: Any, job: QueuedJob | None, job_id: str = job_id, seq: int = seq) -> None:
                pipe.zrem(self._key("delayed"), job_id)
                if job is not None and job.state is JobState.DELAYED:
                    pipe.hset(self._job_key(job_id), "state", JobState.WAITING.value)
                    pipe.zadd(self._key("waiting"), {job_id: self._score(job.options.priority, seq)})

            await self._watched(r, job_id, apply)

    async def _watched(self, r: aioredis.Redis, job_id: str, apply: Callable[[Any, QueuedJob | None], T]) -> T:
        """Read a job and queue ``apply``'s writes in one optimistic transaction.

        ``apply`` runs after MULTI; when the job hash changes before EXEC the
        transaction is dropped and the job is read again.
        """
        key = self._job_key(job_id)
        async with r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    job = self._parse(job_id, await pipe.hgetall(key))
                    pipe.multi()
                    outcome = apply(pipe, job)
                    await pipe.execute()
                    return outcome
                except WatchError:
                    log.debug("job %s changed during update, retrying", job_id)

    async def _load(self, r: aioredis.Redis, job_id: str) -> QueuedJob | None:
        return self._parse(job_id, await r.hgetall(self._job_key(job_id)))

    def _parse(self, job_id: str, raw: dict[str, str]) -> QueuedJob | None:
        if not raw or "payload" not in raw:
            return None
        result = raw.get("result")
        return QueuedJob(
            id=job_id,
            payload=json.loads(raw["payload"]),
            options=JobOptions(priority=int(raw["priority"]), attempts=int(raw["attempts"]), job_id=job_id),
            state=JobState(raw["state"]),
            attempts_made=int(raw.get("attempts_made", 0)),
            cancelled=raw.get("cancelled") == "1",
            result=json.loads(result) if result else None,
            error=raw.get("error"),
        )


def build_queue_backend(settings: Settings) -> InMemoryQueueBackend | RedisQueueBackend:
    if settings.queue_backend == "redis":
        log.info("using redis queue %s at %s", settings.queue_name, settings.redis_uri)
        return RedisQueueBackend.from_url(settings.redis_uri, settings.queue_name)
    log.info("using in-memory queue %s", settings.queue_name)
    return InMemoryQueueBackend()
