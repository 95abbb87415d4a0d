# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background job infrastructure for EduManage.

Provides build and notification processing with Dramatiq:
- Redis broker for message persistence and durability
- Job ledger middleware for per-job state and queue statistics
- Concurrency limits, exponential backoff and dead-letter accounting
- Pause/resume and stale job cleanup through QueueManager

Quick Start:
    from edumanage.infrastructure.background.queue import QueueManager

    queue = QueueManager()
    await queue.enqueue_build(build_id)

Running Workers:
    dramatiq edumanage.infrastructure.background.tasks --processes 1 --threads 2
"""

# Re-export from broker module
from edumanage.infrastructure.background.broker import (
    BrokerManager,
    Priority,
    QueueConfig,
    Queues,
    UnknownQueueError,
    get_broker,
    get_broker_manager,
    get_queue_configs,
    setup_dramatiq,
    shutdown_dramatiq,
)
from edumanage.infrastructure.background.ledger import (
    InMemoryJobLedger,
    JobLedger,
    JobRecord,
    JobState,
    RedisJobLedger,
)

# Re-export task actors and QueueManager (import after broker setup)
# Note: They are imported lazily to avoid circular imports
# Use: from edumanage.infrastructure.background.queue import QueueManager

__all__ = [
    # Broker
    "BrokerManager",
    "Priority",
    "QueueConfig",
    "Queues",
    "UnknownQueueError",
    "get_broker",
    "get_broker_manager",
    "get_queue_configs",
    "setup_dramatiq",
    "shutdown_dramatiq",
    # Ledger
    "InMemoryJobLedger",
    "JobLedger",
    "JobRecord",
    "JobState",
    "RedisJobLedger",
]
