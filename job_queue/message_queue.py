"""
Message Queue: carries "notification created" events to Todo Automation.

Two backends share one interface:
  RedisMessageQueue     Redis Streams + consumer groups, sorted set for retries
  InMemoryMessageQueue  deques in the current process (development, tests)

Delivery is at-least-once. A job can reach the handler twice (retry after a
partial failure, crash before ack), so handlers dedupe on notification id.

Queues:
  notifications:created   jobs ready to run
  notifications:delayed   retries waiting out their backoff, scored by due time
  notifications:dlq       jobs that used up max_attempts

A job travels as one JSON document (``QueueJob.encode``); in Redis it is the
single ``job`` field of a stream entry or the member of the delayed set.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

Handler = Callable[["QueueJob"], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Queues:
    CREATED = "notifications:created"
    DELAYED = "notifications:delayed"
    DLQ = "notifications:dlq"


# ──────────────────────────────────────────────────────────────
#  Job
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """
    One notification waiting for todo generation.

    ``attempt`` counts failed deliveries so far; ``job_id`` survives retries
    so a notification's whole history can be followed in the logs.
    """
    notification_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        self.job_id = self.job_id or f"job_{uuid.uuid4().hex[:12]}"
        self.created_at = _as_datetime(self.created_at) or _utcnow()
        self.scheduled_at = _as_datetime(self.scheduled_at) or self.created_at

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["scheduled_at"] = self.scheduled_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["attempt"] = int(known.get("attempt", 0))
        known["max_attempts"] = int(known.get("max_attempts", 3))
        return cls(**known)

    def encode(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def decode(cls, raw: str | bytes) -> QueueJob:
        return cls.from_dict(json.loads(raw))

    @property
    def exhausted(self) -> bool:
        """True when one more failure would exceed max_attempts."""
        return self.attempt + 1 >= self.max_attempts

    def is_due(self, now: datetime = None) -> bool:
        return (now or _utcnow()) >= self.scheduled_at

    def retried(self, delay_seconds: float, now: datetime = None) -> QueueJob:
        """The same job, one attempt later, scheduled delay_seconds from now."""
        now = now or _utcnow()
        return replace(
            self,
            attempt=self.attempt + 1,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
        )


def _as_datetime(value: datetime | str | None) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(value) if isinstance(value, str) else value
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):

    def __init__(self, retry_backoff_base: int = 60):
        self.retry_backoff_base = retry_backoff_base

    def retry_delay(self, job: QueueJob) -> float:
        """Seconds to wait before the next attempt: base * 2^attempt."""
        return self.retry_backoff_base * (2 ** job.attempt)

    @abstractmethod
    async def connect(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob): ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Hold job until job.scheduled_at, then promote_delayed moves it to CREATED."""

    @abstractmethod
    async def consume(
        self, queue: str, handler: Handler,
        consumer_group: str = "default", consumer_name: str = "",
        batch_size: int = 10,
    ):
        """Run handler for every job until close() is called."""

    @abstractmethod
    async def consume_available(
        self, queue: str, handler: Handler,
        consumer_group: str = "default", max_jobs: int = 100,
    ) -> int:
        """Run handler for jobs that are ready now; returns how many ran."""

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]: ...

    @abstractmethod
    async def promote_delayed(self, now: datetime = None) -> int: ...

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        """Route a failed job to the delayed set, or to the DLQ once exhausted."""
        if job.exhausted:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            job.metadata["failed_queue"] = queue
            await self.publish(Queues.DLQ, job)
            logger.warning("job_dead_lettered",
                           job_id=job.job_id,
                           notification_id=job.notification_id,
                           attempts=job.attempt + 1)
            return
        retry = job.retried(self.retry_delay(job))
        await self.publish_delayed(retry)
        logger.info("job_retry_scheduled",
                    job_id=job.job_id,
                    attempt=retry.attempt,
                    scheduled_at=retry.scheduled_at.isoformat())

    async def _run_handler(self, queue: str, job: QueueJob, handler: Handler, group: str = "default"):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error", job_id=job.job_id, queue=queue, error=str(e))
            await self.nack(queue, job, group)


# ──────────────────────────────────────────────────────────────
#  Redis
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Streams for CREATED and DLQ, a sorted set for DELAYED.

    Entries are acked after the handler returns or after a failed job has
    been re-queued, so a crash mid-handler leaves the entry pending for the
    group. Promotion claims each delayed member with ZREM before re-adding
    it, so concurrent promoters never duplicate a retry.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: int = 60):
        super().__init__(retry_backoff_base)
        self.redis_url = redis_url
        self._redis = None
        self._stopping = False

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self.redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self.redis_url)

    async def close(self):
        self._stopping = True
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _ensure_group(self, queue: str, group: str):
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, {"job": job.encode()})
        logger.info("job_published", queue=queue, job_id=job.job_id,
                    notification_id=job.notification_id)

    async def publish_delayed(self, job: QueueJob):
        await self._redis.zadd(Queues.DELAYED, {job.encode(): job.scheduled_at.timestamp()})

    async def _read(self, queue, group, consumer, count, block=None) -> list[tuple[str, dict]]:
        response = await self._redis.xreadgroup(
            groupname=group, consumername=consumer,
            streams={queue: ">"}, count=count, block=block,
        )
        return [entry for _, entries in response or [] for entry in entries]

    async def _process_entry(self, queue, group, entry_id, fields, handler):
        try:
            job = QueueJob.decode(fields["job"])
        except (KeyError, ValueError, TypeError) as e:
            logger.error("job_entry_unreadable", queue=queue, entry_id=entry_id, error=str(e))
        else:
            await self._run_handler(queue, job, handler, group)
        await self._redis.xack(queue, group, entry_id)

    async def consume(self, queue, handler, consumer_group="default", consumer_name="", batch_size=10):
        consumer = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        await self._ensure_group(queue, consumer_group)
        self._stopping = False
        logger.info("consumer_started", queue=queue, group=consumer_group, consumer=consumer)
        while not self._stopping:
            try:
                for entry_id, fields in await self._read(queue, consumer_group, consumer, batch_size, block=2000):
                    await self._process_entry(queue, consumer_group, entry_id, fields, handler)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def consume_available(self, queue, handler, consumer_group="default", max_jobs=100) -> int:
        await self._ensure_group(queue, consumer_group)
        entries = await self._read(queue, consumer_group, f"batch_{uuid.uuid4().hex[:8]}", max_jobs)
        for entry_id, fields in entries:
            await self._process_entry(queue, consumer_group, entry_id, fields, handler)
        return len(entries)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DELAYED:
            return [QueueJob.decode(m) for m in await self._redis.zrange(queue, 0, count - 1)]
        return [QueueJob.decode(f["job"]) for _, f in await self._redis.xrange(queue, count=count)]

    async def promote_delayed(self, now: datetime = None) -> int:
        due = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", (now or _utcnow()).timestamp())
        promoted = 0
        for member in due:
            if await self._redis.zrem(Queues.DELAYED, member):
                await self._redis.xadd(Queues.CREATED, {"job": member})
                promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-process
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """Single-process queue. Consumer groups are accepted and ignored."""

    def __init__(self, retry_backoff_base: int = 60, poll_interval: float = 0.5):
        super().__init__(retry_backoff_base)
        self.poll_interval = poll_interval
        self._queues: dict[str, deque[QueueJob]] = {}
        self._delayed: list[tuple[float, int, QueueJob]] = []   # heap of (due ts, seq, job)
        self._seq = itertools.count()
        self._stopping = False

    def _queue(self, name: str) -> deque[QueueJob]:
        return self._queues.setdefault(name, deque())

    async def connect(self):
        self._stopping = False
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._stopping = True

    async def publish(self, queue: str, job: QueueJob):
        self._queue(queue).append(job)
        logger.info("job_published", queue=queue, job_id=job.job_id,
                    notification_id=job.notification_id)

    async def publish_delayed(self, job: QueueJob):
        heapq.heappush(self._delayed, (job.scheduled_at.timestamp(), next(self._seq), job))

    async def consume(self, queue, handler, consumer_group="default", consumer_name="", batch_size=10):
        pending = self._queue(queue)
        self._stopping = False
        logger.info("consumer_started", queue=queue)
        while not self._stopping:
            try:
                if not pending:
                    await asyncio.sleep(self.poll_interval)
                    continue
                await self._run_handler(queue, pending.popleft(), handler)
            except asyncio.CancelledError:
                break

    async def consume_available(self, queue, handler, consumer_group="default", max_jobs=100) -> int:
        pending = self._queue(queue)
        handled = 0
        while pending and handled < max_jobs:
            await self._run_handler(queue, pending.popleft(), handler)
            handled += 1
        return handled

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        return len(self._queue(queue))

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DELAYED:
            return [job for _, _, job in heapq.nsmallest(count, self._delayed)]
        return list(itertools.islice(self._queue(queue), count))

    async def promote_delayed(self, now: datetime = None) -> int:
        cutoff = (now or _utcnow()).timestamp()
        promoted = 0
        while self._delayed and self._delayed[0][0] <= cutoff:
            _, _, job = heapq.heappop(self._delayed)
            await self.publish(Queues.CREATED, job)
            promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Build the configured backend once; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    backoff = int(config.get("retry_backoff_base", 60))
    if backend == "redis":
        _instance = RedisMessageQueue(config.get("redis_url", "redis://localhost:6379"), backoff)
    else:
        _instance = InMemoryMessageQueue(backoff)
    logger.info("message_queue_created", backend=backend)
    return _instance


def get_message_queue() -> MessageQueue:
    return _instance or create_message_queue()


def reset_message_queue() -> None:
    global _instance
    _instance = None
