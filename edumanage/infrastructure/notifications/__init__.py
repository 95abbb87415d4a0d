# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Customer notifications.

Example:
    from edumanage.infrastructure.notifications import EmailChannel, NotificationService

    service = NotificationService([EmailChannel(settings.smtp)])
    await service.send("build-complete", "admin@school.ac.ke", data)
"""

from edumanage.infrastructure.notifications.channels import (
    BaseChannel,
    ChannelResult,
    ChannelType,
    DeliveryStatus,
    EmailChannel,
    NotificationPayload,
)
from edumanage.infrastructure.notifications.service import (
    NotificationDeliveryError,
    NotificationService,
)
from edumanage.infrastructure.notifications.templates import (
    NotificationKind,
    RenderedNotification,
    render,
)

__all__ = [
    "BaseChannel",
    "ChannelResult",
    "ChannelType",
    "DeliveryStatus",
    "EmailChannel",
    "NotificationPayload",
    "NotificationDeliveryError",
    "NotificationService",
    "NotificationKind",
    "RenderedNotification",
    "render",
]
