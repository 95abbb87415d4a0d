# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Base utilities for Dramatiq tasks.

Thread-Local Event Loop Management:
    Dramatiq workers process messages on several threads. SQLAlchemy async
    engines and asyncpg connections are bound to the event loop that
    created them, so every worker thread keeps one persistent loop and
    reuses it for all of its tasks. When a thread has to create a new
    loop, the thread's cached worker context (engine, repositories) is
    dropped so nothing bound to the old loop is reused.

Concurrency Slots:
    A queue's concurrency limit is a distributed mutex. A job that finds
    every slot taken is put back on its queue with a delay and skipped,
    so waiting for a slot never counts as a delivery retry.
"""

import asyncio
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Coroutine, TypeVar

from dramatiq.middleware import CurrentMessage, SkipMessage

from edumanage.infrastructure.background.broker import get_broker_manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread-local storage for event loops
_thread_local = threading.local()


def _get_thread_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the current thread."""
    loop = getattr(_thread_local, "event_loop", None)

    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        _thread_local.event_loop = loop

        # Import here to avoid circular imports
        from edumanage.bootstrap import reset_worker_context

        reset_worker_context()

        logger.debug(
            "Created new event loop for thread %s",
            threading.current_thread().name,
        )

    return loop


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a sync Dramatiq worker thread.

    Args:
        coro: Coroutine to run.

    Returns:
        Result of coroutine.

    Example:
        @dramatiq.actor
        def my_task(build_id: str):
            async def _process():
                context = await get_worker_context()
                return await context.orchestrator.dispatch(build_id)
            return run_async(_process())
    """
    loop = _get_thread_event_loop()
    return loop.run_until_complete(coro)


@contextmanager
def concurrency_slot(queue: str) -> Iterator[None]:
    """Hold one of a queue's concurrency slots for the current message.

    Args:
        queue: Queue whose limit applies.

    Raises:
        SkipMessage: If no slot was free; the message was re-enqueued
            after the queue's backoff.
    """
    manager = get_broker_manager()
    limiter = manager.concurrency_limiter(queue)
    with limiter.acquire(raise_on_failure=False) as acquired:
        if not acquired:
            message = CurrentMessage.get_current_message()
            if message is None:
                raise RuntimeError("concurrency_slot used outside of a worker")
            delay = manager.config(queue).backoff_ms
            logger.debug("No free %s slot, deferring job %s by %dms", queue, message.message_id, delay)
            manager.broker.enqueue(message.copy(queue_name=queue), delay=delay)
            raise SkipMessage(f"No free {queue} slot")
        yield
