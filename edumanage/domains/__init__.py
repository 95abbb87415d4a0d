# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for EduManage.

Domains:
    build: Build pipeline turning paid orders into downloadable packages.
"""
