# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Infrastructure layer for EduManage.

This package contains adapters for external systems:
- database: Async SQLAlchemy persistence
- storage: Object storage for build artifacts
- notifications: Email delivery of build notifications
- background: Dramatiq job queue and actors
"""
