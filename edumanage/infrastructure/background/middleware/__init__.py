# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq middleware for EduManage background processing."""

from edumanage.infrastructure.background.middleware.dead_letter import DeadLetterMiddleware
from edumanage.infrastructure.background.middleware.ledger import (
    JobLedgerMiddleware,
    describe_error,
)

__all__ = [
    "DeadLetterMiddleware",
    "JobLedgerMiddleware",
    "describe_error",
]
