# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dead-letter middleware.

Retries gives up on a message by marking it failed; the broker then moves
it to the dead-letter queue and nothing else happens. This middleware
sends a follow-up job for such messages so their owner can record the
outcome (a build whose job was dead-lettered is failed, so the customer
can retry it).

Like JobLedgerMiddleware it must be installed before Retries.
"""

import logging
from typing import Any

import dramatiq
from dramatiq import Message, Middleware

from edumanage.infrastructure.background.middleware.ledger import describe_error

logger = logging.getLogger(__name__)


class DeadLetterMiddleware(Middleware):
    """Sends a handler job for every dead-lettered message.

    Attributes:
        handlers: Maps an actor name to the actor told about its
            dead-lettered messages. The handler receives the original
            arguments plus error, the text of the last exception.
    """

    def __init__(self, handlers: dict[str, str]) -> None:
        self.handlers = dict(handlers)

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        if exception is None or not message.failed:
            return

        handler_name = self.handlers.get(message.actor_name)
        if handler_name is None:
            return

        handler = broker.get_actor(handler_name)
        handler.send_with_options(
            args=tuple(message.args),
            kwargs={**message.kwargs, "error": describe_error(exception)},
        )
        logger.warning(
            "Job %s of %s dead-lettered, sent to %s",
            message.message_id,
            message.actor_name,
            handler_name,
        )
