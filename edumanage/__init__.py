# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""EduManage build backend.

Turns paid school-management-system orders into downloadable, customised
software packages through an asynchronous build pipeline.
"""

__version__ = "1.0.0"
