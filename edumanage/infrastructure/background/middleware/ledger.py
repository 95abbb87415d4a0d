# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Job ledger middleware.

Feeds the job ledger from Dramatiq's message lifecycle and holds back
messages of paused queues.

Enqueues are recorded in before_enqueue, before the message can reach a
worker. Every attempt stores its number in the message options, so the
outcome of an attempt is dropped from the ledger if a later attempt has
already started.

The middleware must be installed before Retries: after-hooks run in
reverse order, so by the time after_process_message runs here Retries
has either re-enqueued the message (delayed) or given up on it
(message.failed is set, the job is dead-lettered).
"""

import logging
from typing import Any

import dramatiq
from dramatiq import Message, Middleware
from dramatiq.common import q_name
from dramatiq.middleware import SkipMessage

from edumanage.infrastructure.background.ledger import JobLedger, JobState

logger = logging.getLogger(__name__)

ATTEMPT_OPTION = "ledger_attempt"


def describe_error(exception: BaseException) -> str:
    """Error text stored on a job record."""
    return f"{type(exception).__name__}: {exception}"


class JobLedgerMiddleware(Middleware):
    """Records job state transitions in a JobLedger.

    Attributes:
        ledger: Ledger receiving the transitions.
        pause_poll_ms: Delay before a message of a paused queue is looked
            at again.
    """

    def __init__(self, ledger: JobLedger, pause_poll_ms: int = 5000) -> None:
        self.ledger = ledger
        self.pause_poll_ms = pause_poll_ms

    def before_enqueue(
        self,
        broker: dramatiq.Broker,
        message: Message,
        delay: int | None,
    ) -> None:
        state = JobState.DELAYED if delay else JobState.WAITING
        self.ledger.mark(
            q_name(message.queue_name),
            message.message_id,
            state,
            actor_name=message.actor_name,
            kwargs=dict(message.kwargs),
        )

    def before_process_message(self, broker: dramatiq.Broker, message: Message) -> None:
        queue = q_name(message.queue_name)
        if self.ledger.is_paused(queue):
            logger.debug("Queue %s paused, deferring job %s", queue, message.message_id)
            broker.enqueue(message.copy(queue_name=queue), delay=self.pause_poll_ms)
            raise SkipMessage(f"Queue {queue} is paused")

        record = self.ledger.mark(queue, message.message_id, JobState.ACTIVE)
        message.options[ATTEMPT_OPTION] = record.attempts

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        queue = q_name(message.queue_name)
        attempt = message.options.get(ATTEMPT_OPTION)

        if exception is None:
            self.ledger.mark(queue, message.message_id, JobState.COMPLETED, attempt=attempt)
            logger.info("%s job completed: %s", queue, message.message_id)
            return

        error = describe_error(exception)
        if message.failed:
            self.ledger.mark(queue, message.message_id, JobState.FAILED, error=error, attempt=attempt)
            logger.error("%s job failed: %s (%s)", queue, message.message_id, error)
        else:
            self.ledger.mark(queue, message.message_id, JobState.DELAYED, error=error, attempt=attempt)
            logger.warning("%s job will be retried: %s (%s)", queue, message.message_id, error)
