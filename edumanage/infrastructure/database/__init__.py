# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure.

This package provides SQLAlchemy async persistence for users, schools,
orders and builds, plus repository implementations for the build domain.

Example:
    from edumanage.infrastructure.database import (
        get_sessionmaker,
        init_database,
        SqlBuildRepository,
    )

    await init_database(settings)
    builds = SqlBuildRepository(get_sessionmaker())
"""

from edumanage.infrastructure.database.connection import (
    DatabaseError,
    check_database_connection,
    close_database,
    create_sessionmaker,
    create_tables,
    get_engine,
    get_session,
    get_sessionmaker,
    init_database,
)
from edumanage.infrastructure.database.repositories import (
    SqlBuildRepository,
    SqlOrderRepository,
    SqlSchoolRepository,
)

__all__ = [
    # Connection
    "DatabaseError",
    "check_database_connection",
    "close_database",
    "create_sessionmaker",
    "create_tables",
    "get_engine",
    "get_session",
    "get_sessionmaker",
    "init_database",
    # Repositories
    "SqlBuildRepository",
    "SqlOrderRepository",
    "SqlSchoolRepository",
]
