# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Queue manager: the producer-side API of the job queue.

Wraps the broker manager and the job ledger behind queue-name based
operations used by the build service and operators.

Example:
    manager = QueueManager()
    job_id = await manager.enqueue_build("BLD-1700000000000-A1B2C3")
    manager.get_queue_stats(Queues.BUILDS)
    # QueueStats(waiting=1, active=0, completed=0, failed=0, delayed=0, total=1, paused=False)
"""

import logging
from datetime import timedelta
from typing import Any

from dramatiq.rate_limits import ConcurrentRateLimiter
from pydantic import BaseModel

from edumanage.core.config import get_settings
from edumanage.domains.build.repository import BuildQueue

# Registers the actors on the broker
from edumanage.infrastructure.background import tasks  # noqa: F401
from edumanage.infrastructure.background.broker import (
    BrokerManager,
    Queues,
    get_broker_manager,
)
from edumanage.infrastructure.background.ledger import JobRecord, JobState

logger = logging.getLogger(__name__)


class QueueStats(BaseModel):
    """Job counts of one queue."""

    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0
    paused: bool = False


class QueueManager(BuildQueue):
    """Adds jobs to queues and reports on them.

    Attributes:
        manager: Broker manager owning the broker, ledger and limiters.
    """

    def __init__(self, manager: BrokerManager | None = None) -> None:
        self.manager = manager or get_broker_manager()
        self.manager.setup()

    def add(self, queue: str, data: dict[str, Any], delay_ms: int | None = None) -> str:
        """Enqueue a job for the queue's actor.

        Args:
            queue: Queue name.
            data: Keyword arguments for the actor.
            delay_ms: Optional delay before the job becomes runnable.

        Returns:
            The job id (Dramatiq message id).

        Raises:
            UnknownQueueError: If the queue is not configured.
        """
        config = self.manager.config(queue)
        actor = self.manager.broker.get_actor(config.actor_name)
        message = actor.send_with_options(kwargs=data, delay=delay_ms)
        logger.info("Job %s added to %s", message.message_id, queue)
        return message.message_id

    async def enqueue_build(self, build_id: str) -> str:
        return self.add(Queues.BUILDS, {"build_id": build_id})

    def get_job_status(self, queue: str, job_id: str) -> JobRecord | None:
        """Ledger record of a job, or None if unknown to this queue."""
        self.manager.config(queue)
        record = self.manager.ledger.get(job_id)
        if record is None or record.queue != queue:
            return None
        return record

    def get_queue_stats(self, queue: str) -> QueueStats:
        """Job counts per state for a queue."""
        self.manager.config(queue)
        ledger = self.manager.ledger
        counts = ledger.counts(queue)
        return QueueStats(
            queue=queue,
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            delayed=counts[JobState.DELAYED],
            total=sum(counts.values()),
            paused=ledger.is_paused(queue),
        )

    def pause(self, queue: str) -> None:
        """Stop workers from starting jobs of a queue; running jobs finish."""
        self.manager.config(queue)
        self.manager.ledger.pause(queue)
        logger.info("Queue %s paused", queue)

    def resume(self, queue: str) -> None:
        self.manager.config(queue)
        self.manager.ledger.resume(queue)
        logger.info("Queue %s resumed", queue)

    def clean_old_jobs(self, queue: str, grace_period: timedelta | None = None) -> int:
        """Remove completed and failed job records older than grace_period.

        Args:
            queue: Queue name.
            grace_period: Age threshold, defaults to the configured
                stale-job grace (7 days).

        Returns:
            Number of job records removed.
        """
        self.manager.config(queue)
        if grace_period is None:
            grace_period = timedelta(days=get_settings().queue.stale_job_grace_days)
        removed = self.manager.ledger.clean(queue, grace_period)
        logger.info("Cleaned %d old jobs from %s", removed, queue)
        return removed

    def concurrency_limiter(self, queue: str) -> ConcurrentRateLimiter:
        return self.manager.concurrency_limiter(queue)

    def close(self) -> None:
        """Close the broker and the ledger."""
        self.manager.shutdown()
