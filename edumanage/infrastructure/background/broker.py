# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq broker configuration for EduManage.

This module provides background job processing with:
- Redis broker for durable, at-least-once delivery
- A job ledger recording each job's state for queue statistics
- Per-queue concurrency limits backed by Dramatiq rate limiters

Example:
    from edumanage.infrastructure.background.broker import setup_dramatiq, get_broker

    # Setup at application startup
    broker = setup_dramatiq()

    # Get broker for manual operations
    broker = get_broker()
"""

import logging
from dataclasses import dataclass

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import CurrentMessage, Retries
from dramatiq.rate_limits import ConcurrentRateLimiter, RateLimiterBackend
from dramatiq.rate_limits.backends import RedisBackend, StubBackend

from edumanage.core.config import get_settings
from edumanage.core.config.settings import QueueSettings
from edumanage.infrastructure.background.ledger import (
    InMemoryJobLedger,
    JobLedger,
    RedisJobLedger,
)
from edumanage.infrastructure.background.middleware import (
    DeadLetterMiddleware,
    JobLedgerMiddleware,
)

logger = logging.getLogger(__name__)


class Queues:
    """Queue name constants for task routing."""

    BUILDS = "builds"
    NOTIFICATIONS = "notifications"


class Priority:
    """Task priority levels (lower number = higher priority)."""

    HIGH = 1
    NORMAL = 3


class UnknownQueueError(ValueError):
    """Raised for a queue name that has no configuration."""

    def __init__(self, queue: str):
        self.queue = queue
        super().__init__(f"Queue {queue} not found")


@dataclass(frozen=True)
class QueueConfig:
    """Delivery policy of one queue.

    Attributes:
        name: Queue name.
        actor_name: Actor consuming the queue.
        concurrency: Jobs allowed to run at once across all workers.
        max_retries: Delivery-level retries after the first attempt.
        backoff_ms: First retry delay; doubles on every further retry.
        time_limit_ms: Hard limit for one attempt.
        keep_completed: Completed job records kept in the ledger.
        keep_failed: Failed job records kept in the ledger.
        dead_letter_actor: Actor told about dead-lettered jobs, if any.
    """

    name: str
    actor_name: str
    concurrency: int
    max_retries: int
    backoff_ms: int
    time_limit_ms: int
    keep_completed: int
    keep_failed: int
    dead_letter_actor: str | None = None

    @property
    def max_backoff_ms(self) -> int:
        """Ceiling for exponential backoff."""
        return self.backoff_ms * 2 ** max(self.max_retries, 1)


def get_queue_configs(settings: QueueSettings | None = None) -> dict[str, QueueConfig]:
    """Build the queue configurations from settings."""
    settings = settings or get_settings().queue
    return {
        Queues.BUILDS: QueueConfig(
            name=Queues.BUILDS,
            actor_name="process_build",
            concurrency=settings.build_concurrency,
            max_retries=settings.build_max_retries,
            backoff_ms=settings.build_backoff_ms,
            time_limit_ms=settings.build_time_limit_ms,
            keep_completed=settings.build_keep_completed,
            keep_failed=settings.build_keep_failed,
            dead_letter_actor="fail_undelivered_build",
        ),
        Queues.NOTIFICATIONS: QueueConfig(
            name=Queues.NOTIFICATIONS,
            actor_name="send_notification",
            concurrency=settings.notification_concurrency,
            max_retries=settings.notification_max_retries,
            backoff_ms=settings.notification_backoff_ms,
            time_limit_ms=5 * 60 * 1000,
            keep_completed=settings.notification_keep_completed,
            keep_failed=settings.notification_keep_failed,
        ),
    }


class BrokerManager:
    """Manages Dramatiq broker lifecycle.

    Handles broker initialization, the job ledger, concurrency limiters,
    and shutdown.
    """

    def __init__(self, settings: QueueSettings | None = None) -> None:
        self._settings = settings
        self._broker: dramatiq.Broker | None = None
        self._ledger: JobLedger | None = None
        self._rate_limit_backend: RateLimiterBackend | None = None
        self._configs: dict[str, QueueConfig] = {}
        self._initialized = False

    @property
    def broker(self) -> dramatiq.Broker:
        """Get the configured broker.

        Raises:
            RuntimeError: If broker not initialized.
        """
        if self._broker is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._broker

    @property
    def ledger(self) -> JobLedger:
        """Get the job ledger.

        Raises:
            RuntimeError: If broker not initialized.
        """
        if self._ledger is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._ledger

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def configs(self) -> dict[str, QueueConfig]:
        return self._configs

    def config(self, queue: str) -> QueueConfig:
        """Configuration of a queue.

        Raises:
            UnknownQueueError: If the queue is not configured.
        """
        try:
            return self._configs[queue]
        except KeyError:
            raise UnknownQueueError(queue) from None

    def setup(self) -> dramatiq.Broker:
        """Setup and configure the Dramatiq broker.

        Returns:
            Configured broker instance.
        """
        if self._initialized:
            return self._broker  # type: ignore

        logger.info("Setting up Dramatiq broker...")

        settings = get_settings()
        queue_settings = self._settings or settings.queue
        self._configs = get_queue_configs(queue_settings)

        if queue_settings.test_mode:
            self._broker = StubBroker()
            self._broker.emit_after("process_boot")
            self._ledger = InMemoryJobLedger()
            self._rate_limit_backend = StubBackend()
            logger.info("Using StubBroker for testing")
        else:
            redis_url = settings.redis.url
            self._broker = RedisBroker(url=redis_url)
            self._ledger = RedisJobLedger.from_url(redis_url)
            self._rate_limit_backend = RedisBackend(url=redis_url)
            logger.info("Redis broker initialized (url: %s)", redis_url.split("@")[-1])

        for config in self._configs.values():
            self._ledger.configure(config.name, config.keep_completed, config.keep_failed)
        self._setup_middleware(queue_settings)

        # Set as global broker
        dramatiq.set_broker(self._broker)
        self._initialized = True

        return self._broker

    def _setup_middleware(self, queue_settings: QueueSettings) -> None:
        """Install the ledger and dead-letter middleware ahead of Retries.

        Middleware after-hooks run in reverse order, so placing them
        before Retries lets them see message.failed once Retries gave up.
        CurrentMessage lets actors defer their own message.
        """
        if self._broker is None or self._ledger is None:
            return

        self._broker.add_middleware(
            JobLedgerMiddleware(self._ledger, pause_poll_ms=queue_settings.pause_poll_ms),
            before=Retries,
        )
        self._broker.add_middleware(
            DeadLetterMiddleware(
                {
                    config.actor_name: config.dead_letter_actor
                    for config in self._configs.values()
                    if config.dead_letter_actor
                }
            ),
            before=Retries,
        )
        self._broker.add_middleware(CurrentMessage())
        logger.debug("Middleware configured")

    def concurrency_limiter(self, queue: str) -> ConcurrentRateLimiter:
        """Distributed mutex allowing config.concurrency jobs of a queue at once."""
        config = self.config(queue)
        if self._rate_limit_backend is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return ConcurrentRateLimiter(
            self._rate_limit_backend,
            f"edumanage:concurrency:{queue}",
            limit=config.concurrency,
            ttl=config.time_limit_ms,
        )

    def shutdown(self) -> None:
        """Shutdown the broker."""
        if self._broker is not None:
            self._broker.close()
            self._broker = None
            self._initialized = False
            logger.info("Broker shutdown complete")
        if self._ledger is not None:
            self._ledger.close()
            self._ledger = None


# Singleton instance
_broker_manager: BrokerManager | None = None


def get_broker_manager() -> BrokerManager:
    """Get the singleton broker manager."""
    global _broker_manager
    if _broker_manager is None:
        _broker_manager = BrokerManager()
    return _broker_manager


def setup_dramatiq() -> dramatiq.Broker:
    """Setup Dramatiq with configuration from settings.

    Called when the task modules are imported, so workers and producers
    share one configuration.

    Returns:
        Configured broker.
    """
    return get_broker_manager().setup()


def get_broker() -> dramatiq.Broker:
    """Get the current Dramatiq broker.

    Raises:
        RuntimeError: If broker not initialized.
    """
    return get_broker_manager().broker


def shutdown_dramatiq() -> None:
    """Shutdown the Dramatiq broker."""
    global _broker_manager
    if _broker_manager is not None:
        _broker_manager.shutdown()
        _broker_manager = None
