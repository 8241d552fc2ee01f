"""
Job stores backing the publishing queue.

Provides:
    - JobStore: the interface the queue talks to
    - RedisJobStore: durable, multi-process store on ``redis.asyncio``
    - MemoryJobStore: single-process store with the same semantics

Semantics shared by both stores:
    - one live job per key; ``add`` replaces a pending job and refuses
      while the key is being processed;
    - ``claim_due`` atomically moves due jobs to *active* under a lease,
      increments ``attempts_made`` and stamps a fresh ``lease_token``;
    - ``complete`` / ``fail`` / ``reschedule`` only apply while the caller
      still holds the lease;
    - ``recover_stalled`` returns jobs with expired leases to the delayed
      set so they are redelivered.

Redis layout (``prefix`` defaults to ``publishing``)::

    {prefix}:delayed           ZSET  key -> due time (ms)
    {prefix}:active            ZSET  key -> lease deadline (ms)
    {prefix}:job:{key}         HASH  payload (job JSON), attempts, lease
    {prefix}:stats:completed   counter
    {prefix}:stats:failed      counter
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from social_publisher.exceptions import BackendUnavailableError
from social_publisher.scheduling.jobs import QueueJob, QueueStats
from social_publisher.utils import generate_id

logger = logging.getLogger(__name__)


def _ms(seconds: float) -> int:
    return int(seconds * 1000)


def _payload(job: QueueJob) -> str:
    """Job JSON without the fields the Redis hash tracks itself."""
    stored = QueueJob.from_json(job.to_json())
    stored.attempts_made = 0
    stored.lease_token = None
    return stored.to_json()


# =============================================================================
# INTERFACE
# =============================================================================


class JobStore(ABC):
    """Delayed job storage with leased claims."""

    @abstractmethod
    async def add(self, job: QueueJob, delay_seconds: float, replace: bool = True) -> bool:
        """Schedule *job* after *delay_seconds*.

        Returns ``False`` when the key is being processed, or when
        ``replace`` is false and a pending job already exists.
        """

    @abstractmethod
    async def remove(self, key: str) -> bool:
        """Remove a pending job. ``False`` when absent or being processed."""

    @abstractmethod
    async def claim_due(self, limit: int, lease_seconds: float) -> List[QueueJob]:
        """Claim up to *limit* due jobs under a lease."""

    @abstractmethod
    async def complete(self, job: QueueJob) -> bool:
        """Finish a claimed job successfully."""

    @abstractmethod
    async def fail(self, job: QueueJob) -> bool:
        """Finish a claimed job as failed."""

    @abstractmethod
    async def reschedule(self, job: QueueJob, delay_seconds: float) -> bool:
        """Return a claimed job to the delayed set for another attempt."""

    @abstractmethod
    async def recover_stalled(self) -> int:
        """Redeliver jobs whose lease expired. Returns how many."""

    @abstractmethod
    async def counts(self) -> QueueStats:
        """Current queue counts."""

    @abstractmethod
    async def has_job(self, key: str) -> bool:
        """Whether *key* is pending or being processed."""

    async def aclose(self) -> None:
        """Release backend connections."""


# =============================================================================
# REDIS
# =============================================================================

_ADD_SCRIPT = """
if redis.call('ZSCORE', KEYS[2], ARGV[1]) then
  return 0
end
if ARGV[4] == '0' and redis.call('ZSCORE', KEYS[1], ARGV[1]) then
  return 0
end
redis.call('DEL', KEYS[3])
redis.call('HSET', KEYS[3], 'payload', ARGV[3], 'attempts', ARGV[5])
redis.call('ZADD', KEYS[1], ARGV[2], ARGV[1])
return 1
"""

_REMOVE_SCRIPT = """
if redis.call('ZSCORE', KEYS[2], ARGV[1]) then
  return 0
end
local removed = redis.call('ZREM', KEYS[1], ARGV[1])
if removed == 1 then
  redis.call('DEL', KEYS[3])
end
return removed
"""

_CLAIM_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[3]))
local claimed = {}
for _, member in ipairs(due) do
  if not redis.call('ZSCORE', KEYS[2], member) then
    redis.call('ZREM', KEYS[1], member)
    local job_key = ARGV[4] .. member
    local payload = redis.call('HGET', job_key, 'payload')
    if payload then
      local attempts = redis.call('HINCRBY', job_key, 'attempts', 1)
      local lease = ARGV[5] .. ':' .. member
      redis.call('HSET', job_key, 'lease', lease)
      redis.call('ZADD', KEYS[2], ARGV[2], member)
      table.insert(claimed, payload)
      table.insert(claimed, attempts)
      table.insert(claimed, lease)
    end
  end
end
return claimed
"""

_FINISH_SCRIPT = """
if not redis.call('ZSCORE', KEYS[2], ARGV[1]) then
  return 0
end
if redis.call('HGET', KEYS[3], 'lease') ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('HSET', KEYS[3], 'payload', ARGV[5])
redis.call('HDEL', KEYS[3], 'lease')
if ARGV[3] == 'reschedule' then
  redis.call('ZADD', KEYS[1], ARGV[4], ARGV[1])
else
  redis.call('INCR', KEYS[4])
  redis.call('EXPIRE', KEYS[3], tonumber(ARGV[6]))
end
return 1
"""

_RECOVER_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, member in ipairs(expired) do
  redis.call('ZREM', KEYS[2], member)
  redis.call('ZADD', KEYS[1], 'NX', ARGV[1], member)
end
return #expired
"""


class RedisJobStore(JobStore):
    """Durable job store; every state change is a single Lua script.

    Args:
        client: ``redis.asyncio.Redis`` created with ``decode_responses=True``.
        prefix: Key namespace.
        completed_ttl_seconds: How long finished job payloads are kept.
        clock: Returns epoch seconds.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "publishing",
        completed_ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = client
        self.prefix = prefix
        self.completed_ttl_seconds = completed_ttl_seconds
        self._clock = clock

        self._delayed = f"{prefix}:delayed"
        self._active = f"{prefix}:active"
        self._completed = f"{prefix}:stats:completed"
        self._failed = f"{prefix}:stats:failed"

        self._add = client.register_script(_ADD_SCRIPT)
        self._remove = client.register_script(_REMOVE_SCRIPT)
        self._claim = client.register_script(_CLAIM_SCRIPT)
        self._finish = client.register_script(_FINISH_SCRIPT)
        self._recover = client.register_script(_RECOVER_SCRIPT)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisJobStore":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    def _job_key(self, key: str) -> str:
        return f"{self.prefix}:job:{key}"

    async def _run(self, operation: str, script, keys: List[str], args: List) -> object:
        try:
            return await script(keys=keys, args=args)
        except RedisError as exc:
            raise BackendUnavailableError(f"Redis {operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # JobStore
    # ------------------------------------------------------------------

    async def add(self, job: QueueJob, delay_seconds: float, replace: bool = True) -> bool:
        due = _ms(self._clock() + max(0.0, delay_seconds))
        added = await self._run(
            "add",
            self._add,
            [self._delayed, self._active, self._job_key(job.key)],
            [job.key, due, _payload(job), "1" if replace else "0", job.attempts_made],
        )
        return bool(added)

    async def remove(self, key: str) -> bool:
        removed = await self._run(
            "remove",
            self._remove,
            [self._delayed, self._active, self._job_key(key)],
            [key],
        )
        return bool(removed)

    async def claim_due(self, limit: int, lease_seconds: float) -> List[QueueJob]:
        now = self._clock()
        raw_jobs = await self._run(
            "claim",
            self._claim,
            [self._delayed, self._active],
            [_ms(now), _ms(now + lease_seconds), limit, f"{self.prefix}:job:", generate_id()],
        )
        raw_jobs = list(raw_jobs or [])
        jobs = []
        # Flat reply: payload, attempts, lease per claimed job
        for payload, attempts, lease in zip(raw_jobs[0::3], raw_jobs[1::3], raw_jobs[2::3]):
            job = QueueJob.from_json(payload)
            job.attempts_made = int(attempts)
            job.lease_token = lease
            jobs.append(job)
        return jobs

    async def _finish_job(
        self,
        job: QueueJob,
        mode: str,
        counter: str,
        due_ms: int = 0,
    ) -> bool:
        finished = await self._run(
            mode,
            self._finish,
            [self._delayed, self._active, self._job_key(job.key), counter],
            [
                job.key,
                job.lease_token or "",
                mode,
                due_ms,
                _payload(job),
                self.completed_ttl_seconds,
            ],
        )
        return bool(finished)

    async def complete(self, job: QueueJob) -> bool:
        return await self._finish_job(job, "complete", self._completed)

    async def fail(self, job: QueueJob) -> bool:
        return await self._finish_job(job, "fail", self._failed)

    async def reschedule(self, job: QueueJob, delay_seconds: float) -> bool:
        due = _ms(self._clock() + max(0.0, delay_seconds))
        return await self._finish_job(job, "reschedule", self._completed, due_ms=due)

    async def recover_stalled(self) -> int:
        recovered = await self._run(
            "recover",
            self._recover,
            [self._delayed, self._active],
            [_ms(self._clock())],
        )
        if recovered:
            logger.warning("[QUEUE] Recovered %d stalled job(s)", recovered)
        return int(recovered or 0)

    async def counts(self) -> QueueStats:
        now = _ms(self._clock())
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.zcount(self._delayed, "-inf", now)
                pipe.zcount(self._delayed, f"({now}", "+inf")
                pipe.zcard(self._active)
                pipe.get(self._completed)
                pipe.get(self._failed)
                waiting, delayed, active, completed, failed = await pipe.execute()
        except RedisError as exc:
            raise BackendUnavailableError(f"Redis counts failed: {exc}") from exc
        return QueueStats(
            waiting=int(waiting),
            active=int(active),
            completed=int(completed or 0),
            failed=int(failed or 0),
            delayed=int(delayed),
        )

    async def has_job(self, key: str) -> bool:
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.zscore(self._delayed, key)
                pipe.zscore(self._active, key)
                pending, active = await pipe.execute()
        except RedisError as exc:
            raise BackendUnavailableError(f"Redis has_job failed: {exc}") from exc
        return pending is not None or active is not None

    async def aclose(self) -> None:
        await self.redis.aclose()


# =============================================================================
# IN-MEMORY
# =============================================================================


class MemoryJobStore(JobStore):
    """Single-process store for development and tests."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._jobs: Dict[str, QueueJob] = {}
        self._delayed: Dict[str, float] = {}
        self._active: Dict[str, float] = {}
        self._completed = 0
        self._failed = 0

    async def add(self, job: QueueJob, delay_seconds: float, replace: bool = True) -> bool:
        if job.key in self._active:
            return False
        if not replace and job.key in self._delayed:
            return False
        self._jobs[job.key] = QueueJob.from_json(job.to_json())
        self._delayed[job.key] = self._clock() + max(0.0, delay_seconds)
        return True

    async def remove(self, key: str) -> bool:
        if key in self._active or key not in self._delayed:
            return False
        del self._delayed[key]
        self._jobs.pop(key, None)
        return True

    async def claim_due(self, limit: int, lease_seconds: float) -> List[QueueJob]:
        now = self._clock()
        due = sorted(
            (due_at, key) for key, due_at in self._delayed.items()
            if due_at <= now and key not in self._active
        )
        claimed = []
        for _, key in due[:limit]:
            del self._delayed[key]
            job = self._jobs[key]
            job.attempts_made += 1
            job.lease_token = f"{generate_id()}:{key}"
            self._active[key] = now + lease_seconds
            claimed.append(QueueJob.from_json(job.to_json()))
        return claimed

    def _holds_lease(self, job: QueueJob) -> bool:
        stored = self._jobs.get(job.key)
        return (
            job.key in self._active
            and stored is not None
            and stored.lease_token == job.lease_token
        )

    async def complete(self, job: QueueJob) -> bool:
        if not self._holds_lease(job):
            return False
        del self._active[job.key]
        self._jobs.pop(job.key, None)
        self._completed += 1
        return True

    async def fail(self, job: QueueJob) -> bool:
        if not self._holds_lease(job):
            return False
        del self._active[job.key]
        self._jobs.pop(job.key, None)
        self._failed += 1
        return True

    async def reschedule(self, job: QueueJob, delay_seconds: float) -> bool:
        if not self._holds_lease(job):
            return False
        del self._active[job.key]
        stored = QueueJob.from_json(job.to_json())
        stored.lease_token = None
        self._jobs[job.key] = stored
        self._delayed[job.key] = self._clock() + max(0.0, delay_seconds)
        return True

    async def recover_stalled(self) -> int:
        now = self._clock()
        expired = [key for key, deadline in self._active.items() if deadline <= now]
        for key in expired:
            del self._active[key]
            self._delayed.setdefault(key, now)
        if expired:
            logger.warning("[QUEUE] Recovered %d stalled job(s)", len(expired))
        return len(expired)

    async def counts(self) -> QueueStats:
        now = self._clock()
        waiting = sum(1 for due_at in self._delayed.values() if due_at <= now)
        return QueueStats(
            waiting=waiting,
            active=len(self._active),
            completed=self._completed,
            failed=self._failed,
            delayed=len(self._delayed) - waiting,
        )

    async def has_job(self, key: str) -> bool:
        return key in self._delayed or key in self._active


__all__ = [
    "JobStore",
    "RedisJobStore",
    "MemoryJobStore",
]
