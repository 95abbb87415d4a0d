# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Build background tasks.

process_build hands one build to the orchestrator. Delivery-level retries
cover infrastructure hiccups only: domain errors (a failed stage, a
missing order) are recorded on the build and dead-lettered at once, and
the customer retries explicitly. When delivery gives up before a run
claimed the build, fail_undelivered_build marks it failed so that manual
retry applies.
"""

import logging
from typing import Any

import dramatiq

from edumanage.domains.build.exceptions import BuildError
from edumanage.infrastructure.background.broker import (
    Priority,
    Queues,
    get_broker_manager,
    setup_dramatiq,
)
from edumanage.infrastructure.background.tasks.base import concurrency_slot, run_async
from edumanage.utils.logging import clear_context

# Setup broker before defining actors
setup_dramatiq()

logger = logging.getLogger(__name__)

_config = get_broker_manager().config(Queues.BUILDS)


def should_retry_build(retries: int, exception: BaseException) -> bool:
    """Retry predicate for process_build.

    Args:
        retries: Retries already performed for the message.
        exception: What the last attempt raised.

    Returns:
        True to re-enqueue with backoff, False to dead-letter.
    """
    if isinstance(exception, BuildError):
        return False
    return retries < _config.max_retries


@dramatiq.actor(
    actor_name=_config.actor_name,
    queue_name=Queues.BUILDS,
    retry_when=should_retry_build,
    min_backoff=_config.backoff_ms,
    max_backoff=_config.max_backoff_ms,
    time_limit=_config.time_limit_ms,
    priority=Priority.HIGH,
)
def process_build(build_id: str) -> dict[str, Any]:
    """Run the build pipeline for one build.

    Args:
        build_id: Build to run.

    Returns:
        The orchestrator's DispatchResult as a dictionary.
    """

    async def _process() -> dict[str, Any]:
        from edumanage.bootstrap import get_worker_context

        context = await get_worker_context()
        try:
            result = await context.orchestrator.dispatch(build_id)
        finally:
            clear_context()
        return result.model_dump(mode="json")

    with concurrency_slot(Queues.BUILDS):
        logger.info("Processing build job: %s", build_id)
        return run_async(_process())


@dramatiq.actor(
    actor_name=_config.dead_letter_actor,
    queue_name=Queues.BUILDS,
    max_retries=_config.max_retries,
    min_backoff=_config.backoff_ms,
    max_backoff=_config.max_backoff_ms,
    priority=Priority.HIGH,
)
def fail_undelivered_build(build_id: str, error: str) -> bool:
    """Fail the build of a dead-lettered process_build job if it is still queued.

    Args:
        build_id: Build of the dead-lettered job.
        error: Last error of the dead-lettered job.

    Returns:
        True if the build was marked failed.
    """

    async def _abandon() -> bool:
        from edumanage.bootstrap import get_worker_context

        context = await get_worker_context()
        try:
            return await context.orchestrator.abandon(build_id, error)
        finally:
            clear_context()

    logger.info("Handling dead-lettered build job: %s", build_id)
    return run_async(_abandon())


def get_build_actors() -> list:
    """Get all build actors."""
    return [
        process_build,
        fail_undelivered_build,
    ]
