# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background task actors for EduManage.

This module provides all Dramatiq actors:
- Builds: process_build runs the build pipeline for one build;
  fail_undelivered_build fails a build whose job was dead-lettered
- Notifications: send_notification delivers customer emails

Usage:
    from edumanage.infrastructure.background.tasks import process_build

    process_build.send(build_id="BLD-1700000000000-A1B2C3")

Running Workers:
    dramatiq edumanage.infrastructure.background.tasks --processes 1 --threads 2
"""

from edumanage.infrastructure.background.tasks.builds import (
    fail_undelivered_build,
    get_build_actors,
    process_build,
    should_retry_build,
)
from edumanage.infrastructure.background.tasks.notifications import (
    QueuedNotifier,
    get_notification_actors,
    send_notification,
    should_retry_notification,
)

# Re-export run_async for convenience
from edumanage.infrastructure.background.tasks.base import run_async


def get_all_actors() -> list:
    """Get all registered actors."""
    return [
        *get_build_actors(),
        *get_notification_actors(),
    ]


__all__ = [
    # Builds
    "fail_undelivered_build",
    "process_build",
    "should_retry_build",
    # Notifications
    "send_notification",
    "should_retry_notification",
    "QueuedNotifier",
    # Helpers
    "get_all_actors",
    "run_async",
]
