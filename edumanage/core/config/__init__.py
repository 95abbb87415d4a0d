# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for the EduManage build backend.

Example:
    >>> from edumanage.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from edumanage.core.config.settings import (
    BuildSettings,
    DatabaseSettings,
    QueueSettings,
    RedisSettings,
    Settings,
    SMTPSettings,
    StorageSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "RedisSettings",
    "StorageSettings",
    "BuildSettings",
    "QueueSettings",
    "SMTPSettings",
]
