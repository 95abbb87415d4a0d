# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Utility functions and helpers for the EduManage build backend.

This package contains cross-cutting utilities:
- logging: Structured logging with structlog
- datetime: Timezone-aware datetime operations
"""

from edumanage.utils.datetime import (
    days_from,
    elapsed_ms,
    ensure_utc,
    format_iso,
    is_expired,
    parse_iso,
    utc_now,
)
from edumanage.utils.logging import bind_context, clear_context, get_logger, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    # Datetime
    "utc_now",
    "ensure_utc",
    "days_from",
    "is_expired",
    "elapsed_ms",
    "format_iso",
    "parse_iso",
]
