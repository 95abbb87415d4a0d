# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Base classes for notification channels.

This module defines the abstract base class and shared types for
notification channels. Each channel delivers through one medium; the
build pipeline currently only uses email.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from edumanage.utils.datetime import utc_now


class ChannelType(str, Enum):
    """Available notification channel types."""

    EMAIL = "email"


class DeliveryStatus(str, Enum):
    """Delivery status for a channel."""

    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class NotificationPayload:
    """Everything a channel needs to deliver one notification.

    Attributes:
        notification_type: Kind of notification, e.g. "build-complete".
        title: Subject line.
        message: Plain text body.
        recipient_email: Recipient address.
        html: Pre-rendered HTML body, if the template provides one.
        action_url: URL the notification points to.
        action_label: Label for the action link.
        data: Template variables the payload was rendered from.
    """

    notification_type: str
    title: str
    message: str
    recipient_email: str
    html: str | None = None
    action_url: str | None = None
    action_label: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChannelResult:
    """Result of a channel send operation."""

    channel: ChannelType
    status: DeliveryStatus
    message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary (queue results)."""
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "metadata": self.metadata,
        }


class BaseChannel(ABC):
    """Abstract base class for notification channels.

    Channels never raise for delivery problems; they report them through
    ChannelResult so the caller decides whether to retry.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    @abstractmethod
    def channel_type(self) -> ChannelType:
        """Return the channel type."""
        ...

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> ChannelResult:
        """Send a notification through this channel."""
        ...

    def result(
        self,
        status: DeliveryStatus,
        *,
        message_id: str | None = None,
        error: str | None = None,
        recipient: str | None = None,
    ) -> ChannelResult:
        """Result of one delivery attempt through this channel.

        Args:
            status: Outcome of the attempt.
            message_id: Provider message id for sent notifications.
            error: Failure or skip reason.
            recipient: Recorded in the result metadata when given.
        """
        return ChannelResult(
            channel=self.channel_type,
            status=status,
            message_id=message_id,
            error_message=error,
            sent_at=utc_now(),
            metadata={"recipient": recipient} if recipient else {},
        )
