# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Notification service for orchestrating notification delivery.

Renders a template for the notification kind and sends it through every
configured channel. Runs inside the notifications queue actor, so a
delivery failure raises and lets the queue retry with backoff.
"""

import logging
from typing import Any

from edumanage.domains.build.repository import Notifier
from edumanage.infrastructure.notifications.channels import (
    BaseChannel,
    ChannelResult,
    DeliveryStatus,
    NotificationPayload,
)
from edumanage.infrastructure.notifications.templates import NotificationKind, render

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """Every channel failed to deliver a notification.

    Attributes:
        results: Per-channel results.
    """

    def __init__(self, message: str, results: list[ChannelResult]):
        self.results = results
        super().__init__(message)


class NotificationService(Notifier):
    """Service for sending notifications to customers.

    Attributes:
        channels: Channels every notification is sent through.
    """

    def __init__(self, channels: list[BaseChannel]) -> None:
        self.channels = channels

    async def send(
        self,
        kind: NotificationKind | str,
        recipient_email: str,
        data: dict[str, Any],
    ) -> list[ChannelResult]:
        """Render and deliver one notification.

        Args:
            kind: Notification kind.
            recipient_email: Recipient address.
            data: Template variables.

        Returns:
            Per-channel results.

        Raises:
            ValueError: If the kind is unknown.
            NotificationDeliveryError: If no channel delivered and at least
                one failed.
        """
        kind = NotificationKind(kind)
        rendered = render(kind, data)
        payload = NotificationPayload(
            notification_type=kind.value,
            title=rendered.subject,
            message=rendered.text,
            recipient_email=recipient_email,
            html=rendered.html,
            action_url=rendered.action_url,
            action_label=rendered.action_label,
            data=dict(data),
        )

        results = [await channel.send(payload) for channel in self.channels]

        failed = [r for r in results if r.status == DeliveryStatus.FAILED]
        sent = [r for r in results if r.status == DeliveryStatus.SENT]
        if failed and not sent:
            raise NotificationDeliveryError(
                f"Failed to deliver {kind.value} to {recipient_email}: "
                + "; ".join(r.error_message or "unknown error" for r in failed),
                results,
            )

        logger.info(
            "Notification %s to %s: %s",
            kind.value,
            recipient_email,
            ", ".join(f"{r.channel.value}={r.status.value}" for r in results) or "no channels",
        )
        return results

    async def notify(self, kind: str, recipient_email: str, data: dict[str, Any]) -> None:
        await self.send(kind, recipient_email, data)
