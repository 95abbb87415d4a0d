# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job ledger: per-job state records behind queue statistics.

Dramatiq itself only knows about messages waiting in a queue. The ledger
is fed by JobLedgerMiddleware and remembers what happened to every job:

    waiting   enqueued, ready to run
    delayed   enqueued with a delay (backoff before a retry, paused queue)
    active    a worker is running it
    completed finished successfully
    failed    retries exhausted or not retryable (dead-lettered)

A job already picked up by a worker never goes back to waiting, and a
finished job never goes back to delayed. Marks that carry the attempt
they belong to are dropped once a later attempt has started.

Completed and failed records are trimmed to the most recent N per queue.
Pause flags live in the ledger too, so producers and workers share them.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import redis
from pydantic import BaseModel, Field

from edumanage.utils.datetime import utc_now

logger = logging.getLogger(__name__)

DEFAULT_KEEP_COMPLETED = 100
DEFAULT_KEEP_FAILED = 50


class JobState(str, Enum):
    """State of a job in the ledger."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobRecord(BaseModel):
    """What the ledger knows about one job."""

    job_id: str
    queue: str
    actor_name: str | None = None
    kwargs: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts: int = 0
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None


def _is_stale(record: JobRecord, state: JobState, attempt: int | None) -> bool:
    """Whether a mark arrived after the job already moved past it."""
    if attempt is not None and attempt != record.attempts:
        return True
    if state == JobState.WAITING:
        return record.state not in (JobState.WAITING, JobState.DELAYED)
    if state == JobState.DELAYED:
        return record.state in FINISHED_STATES
    return False


def _apply(
    record: JobRecord,
    state: JobState,
    error: str | None,
    now: datetime,
) -> JobRecord:
    record.state = state
    record.updated_at = now
    if state == JobState.ACTIVE:
        record.attempts += 1
    if error is not None:
        record.error = error
    if state in FINISHED_STATES:
        record.finished_at = now
    else:
        record.finished_at = None
    return record


def _new_record(
    queue: str,
    job_id: str,
    actor_name: str | None,
    kwargs: dict[str, Any] | None,
    now: datetime,
) -> JobRecord:
    return JobRecord(
        job_id=job_id,
        queue=queue,
        actor_name=actor_name,
        kwargs=dict(kwargs or {}),
        created_at=now,
        updated_at=now,
    )


class JobLedger(ABC):
    """Storage for job records and queue pause flags."""

    @abstractmethod
    def configure(self, queue: str, keep_completed: int, keep_failed: int) -> None:
        """Set how many finished records a queue keeps."""

    @abstractmethod
    def mark(
        self,
        queue: str,
        job_id: str,
        state: JobState,
        *,
        actor_name: str | None = None,
        kwargs: dict[str, Any] | None = None,
        error: str | None = None,
        attempt: int | None = None,
        now: datetime | None = None,
    ) -> JobRecord:
        """Move a job to state, creating its record on first sight.

        Marks arriving out of order are ignored (see module docstring).

        Args:
            queue: Queue of the job.
            job_id: Message id.
            state: New state.
            actor_name: Actor, stored when the record is created.
            kwargs: Message kwargs, stored when the record is created.
            error: Error text to store.
            attempt: Attempt the mark belongs to; ignored when another
                attempt has started since.
            now: Time of the transition.

        Returns:
            The record after the mark.
        """

    @abstractmethod
    def get(self, job_id: str) -> JobRecord | None:
        """Load a job record."""

    @abstractmethod
    def counts(self, queue: str) -> dict[JobState, int]:
        """Number of jobs per state in a queue."""

    @abstractmethod
    def pause(self, queue: str) -> None:
        """Stop workers from starting new jobs of a queue."""

    @abstractmethod
    def resume(self, queue: str) -> None:
        """Let workers start jobs of a queue again."""

    @abstractmethod
    def is_paused(self, queue: str) -> bool:
        """Whether a queue is paused."""

    @abstractmethod
    def clean(self, queue: str, grace_period: timedelta, now: datetime | None = None) -> int:
        """Remove finished records older than grace_period.

        Returns:
            Number of records removed.
        """

    def close(self) -> None:
        """Release connections held by the ledger."""


class InMemoryJobLedger(JobLedger):
    """Process-local ledger used with the StubBroker."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, JobRecord] = {}
        self._finished: dict[tuple[str, JobState], deque[str]] = {}
        self._retention: dict[str, tuple[int, int]] = {}
        self._paused: set[str] = set()

    def configure(self, queue: str, keep_completed: int, keep_failed: int) -> None:
        with self._lock:
            self._retention[queue] = (keep_completed, keep_failed)

    def _keep(self, queue: str, state: JobState) -> int:
        keep_completed, keep_failed = self._retention.get(
            queue, (DEFAULT_KEEP_COMPLETED, DEFAULT_KEEP_FAILED)
        )
        return keep_completed if state == JobState.COMPLETED else keep_failed

    def _discard_finished(self, record: JobRecord) -> None:
        if record.state in FINISHED_STATES:
            ids = self._finished.get((record.queue, record.state))
            if ids is not None and record.job_id in ids:
                ids.remove(record.job_id)

    def mark(
        self,
        queue: str,
        job_id: str,
        state: JobState,
        *,
        actor_name: str | None = None,
        kwargs: dict[str, Any] | None = None,
        error: str | None = None,
        attempt: int | None = None,
        now: datetime | None = None,
    ) -> JobRecord:
        moment = now or utc_now()
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                record = _new_record(queue, job_id, actor_name, kwargs, moment)
                self._records[job_id] = record
            elif _is_stale(record, state, attempt):
                logger.debug("Ignoring %s mark for job %s in %s", state.value, job_id, record.state.value)
                return record.model_copy()
            else:
                self._discard_finished(record)

            _apply(record, state, error, moment)

            if state in FINISHED_STATES:
                ids = self._finished.setdefault((queue, state), deque())
                ids.append(job_id)
                while len(ids) > self._keep(queue, state):
                    self._records.pop(ids.popleft(), None)

            return record.model_copy()

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            record = self._records.get(job_id)
            return record.model_copy() if record else None

    def counts(self, queue: str) -> dict[JobState, int]:
        with self._lock:
            result = {state: 0 for state in JobState}
            for record in self._records.values():
                if record.queue == queue:
                    result[record.state] += 1
            return result

    def pause(self, queue: str) -> None:
        with self._lock:
            self._paused.add(queue)

    def resume(self, queue: str) -> None:
        with self._lock:
            self._paused.discard(queue)

    def is_paused(self, queue: str) -> bool:
        with self._lock:
            return queue in self._paused

    def clean(self, queue: str, grace_period: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - grace_period
        with self._lock:
            stale = [
                r
                for r in self._records.values()
                if r.queue == queue
                and r.state in FINISHED_STATES
                and r.finished_at is not None
                and r.finished_at < cutoff
            ]
            for record in stale:
                self._discard_finished(record)
                del self._records[record.job_id]
            return len(stale)

    def clear(self) -> None:
        """Forget every record and pause flag."""
        with self._lock:
            self._records.clear()
            self._finished.clear()
            self._paused.clear()


class RedisJobLedger(JobLedger):
    """Redis-backed ledger shared by all producers and workers.

    Keys:
        edumanage:jobs:<job_id>                JSON record
        edumanage:queues:<queue>:<state>       set (waiting/active/delayed)
                                               or list, newest first
                                               (completed/failed)
        edumanage:queues:<queue>:paused        pause flag
        edumanage:queues:<queue>:retention     hash with keep counts
    """

    PREFIX = "edumanage"

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisJobLedger":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def _job_key(self, job_id: str) -> str:
        return f"{self.PREFIX}:jobs:{job_id}"

    def _state_key(self, queue: str, state: JobState) -> str:
        return f"{self.PREFIX}:queues:{queue}:{state.value}"

    def _paused_key(self, queue: str) -> str:
        return f"{self.PREFIX}:queues:{queue}:paused"

    def _retention_key(self, queue: str) -> str:
        return f"{self.PREFIX}:queues:{queue}:retention"

    def configure(self, queue: str, keep_completed: int, keep_failed: int) -> None:
        self._client.hset(
            self._retention_key(queue),
            mapping={"completed": keep_completed, "failed": keep_failed},
        )

    def _keep(self, queue: str, state: JobState) -> int:
        value = self._client.hget(self._retention_key(queue), state.value)
        if value is None:
            return DEFAULT_KEEP_COMPLETED if state == JobState.COMPLETED else DEFAULT_KEEP_FAILED
        return int(value)

    def _remove_from_state(self, pipe: Any, record: JobRecord) -> None:
        key = self._state_key(record.queue, record.state)
        if record.state in FINISHED_STATES:
            pipe.lrem(key, 0, record.job_id)
        else:
            pipe.srem(key, record.job_id)

    def mark(
        self,
        queue: str,
        job_id: str,
        state: JobState,
        *,
        actor_name: str | None = None,
        kwargs: dict[str, Any] | None = None,
        error: str | None = None,
        attempt: int | None = None,
        now: datetime | None = None,
    ) -> JobRecord:
        moment = now or utc_now()
        job_key = self._job_key(job_id)

        def _write(pipe: Any) -> tuple[JobRecord, bool]:
            # Runs under WATCH on the job key; redis-py retries it on WatchError
            raw = pipe.get(job_key)
            previous = JobRecord.model_validate(json.loads(raw)) if raw else None
            if previous is None:
                record = _new_record(queue, job_id, actor_name, kwargs, moment)
            elif _is_stale(previous, state, attempt):
                return previous, False
            else:
                record = previous.model_copy()

            _apply(record, state, error, moment)

            pipe.multi()
            if previous is not None:
                self._remove_from_state(pipe, previous)
            pipe.set(job_key, record.model_dump_json())
            if state in FINISHED_STATES:
                pipe.lpush(self._state_key(queue, state), job_id)
            else:
                pipe.sadd(self._state_key(queue, state), job_id)
            return record, True

        record, written = self._client.transaction(_write, job_key, value_from_callable=True)

        if not written:
            logger.debug("Ignoring %s mark for job %s in %s", state.value, job_id, record.state.value)
        elif state in FINISHED_STATES:
            self._trim(queue, state)
        return record

    def _trim(self, queue: str, state: JobState) -> None:
        key = self._state_key(queue, state)
        keep = self._keep(queue, state)
        evicted = self._client.lrange(key, keep, -1)
        if not evicted:
            return
        with self._client.pipeline(transaction=True) as pipe:
            pipe.ltrim(key, 0, keep - 1)
            pipe.delete(*[self._job_key(job_id) for job_id in evicted])
            pipe.execute()

    def get(self, job_id: str) -> JobRecord | None:
        raw = self._client.get(self._job_key(job_id))
        if raw is None:
            return None
        return JobRecord.model_validate(json.loads(raw))

    def counts(self, queue: str) -> dict[JobState, int]:
        with self._client.pipeline(transaction=False) as pipe:
            for state in JobState:
                key = self._state_key(queue, state)
                if state in FINISHED_STATES:
                    pipe.llen(key)
                else:
                    pipe.scard(key)
            values = pipe.execute()
        return {state: int(value) for state, value in zip(JobState, values)}

    def pause(self, queue: str) -> None:
        self._client.set(self._paused_key(queue), "1")

    def resume(self, queue: str) -> None:
        self._client.delete(self._paused_key(queue))

    def is_paused(self, queue: str) -> bool:
        return bool(self._client.exists(self._paused_key(queue)))

    def clean(self, queue: str, grace_period: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - grace_period
        removed = 0
        for state in FINISHED_STATES:
            key = self._state_key(queue, state)
            for job_id in self._client.lrange(key, 0, -1):
                record = self.get(job_id)
                if record is not None and (record.finished_at is None or record.finished_at >= cutoff):
                    continue
                with self._client.pipeline(transaction=True) as pipe:
                    pipe.lrem(key, 0, job_id)
                    pipe.delete(self._job_key(job_id))
                    pipe.execute()
                removed += 1
        return removed

    def close(self) -> None:
        self._client.close()
