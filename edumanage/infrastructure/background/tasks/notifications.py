# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification background tasks.

Notifications are delivered off the build path: the orchestrator only
enqueues them (QueuedNotifier), so a slow or failing mail server never
holds up or fails a build.
"""

import logging
from typing import Any

import dramatiq

from edumanage.core.config import get_settings
from edumanage.domains.build.repository import Notifier
from edumanage.infrastructure.background.broker import (
    Priority,
    Queues,
    get_broker_manager,
    setup_dramatiq,
)
from edumanage.infrastructure.background.tasks.base import concurrency_slot, run_async
from edumanage.infrastructure.notifications import EmailChannel, NotificationService

# Setup broker before defining actors
setup_dramatiq()

logger = logging.getLogger(__name__)

_config = get_broker_manager().config(Queues.NOTIFICATIONS)


def should_retry_notification(retries: int, exception: BaseException) -> bool:
    """Retry predicate for send_notification; unknown kinds are never retried."""
    if isinstance(exception, ValueError):
        return False
    return retries < _config.max_retries


@dramatiq.actor(
    actor_name=_config.actor_name,
    queue_name=Queues.NOTIFICATIONS,
    retry_when=should_retry_notification,
    min_backoff=_config.backoff_ms,
    max_backoff=_config.max_backoff_ms,
    time_limit=_config.time_limit_ms,
    priority=Priority.NORMAL,
)
def send_notification(kind: str, recipient_email: str, data: dict[str, Any]) -> list[dict[str, Any]]:
    """Render and deliver one notification.

    Args:
        kind: Notification kind, e.g. "build-complete".
        recipient_email: Recipient address.
        data: Template variables.

    Returns:
        Per-channel delivery results.
    """

    async def _send() -> list[dict[str, Any]]:
        service = NotificationService([EmailChannel(get_settings().smtp)])
        results = await service.send(kind, recipient_email, data)
        return [r.to_dict() for r in results]

    with concurrency_slot(Queues.NOTIFICATIONS):
        logger.info("Processing email job: %s to %s", kind, recipient_email)
        return run_async(_send())


class QueuedNotifier(Notifier):
    """Notifier that enqueues send_notification instead of sending inline."""

    async def notify(self, kind: str, recipient_email: str, data: dict[str, Any]) -> None:
        message = send_notification.send(kind=kind, recipient_email=recipient_email, data=data)
        logger.info("Notification %s queued as job %s", kind, message.message_id)


def get_notification_actors() -> list:
    """Get all notification actors."""
    return [
        send_notification,
    ]
