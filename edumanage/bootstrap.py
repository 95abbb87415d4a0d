# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Wiring of the build pipeline's collaborators.

create_build_context assembles repositories, packager, uploader,
orchestrator and service from settings. Workers use get_worker_context,
which caches one context per thread: the SQLAlchemy engine inside it is
bound to the thread's event loop (see tasks.base.run_async).

Example:
    context = create_build_context(settings, sessionmaker, storage, notifier, queue)
    response = await context.service.start_build("ORD-001", user_id)
"""

import logging
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from edumanage.core.config import get_settings
from edumanage.core.config.settings import Settings
from edumanage.domains.build.orchestrator import BuildOrchestrator
from edumanage.domains.build.packager import ArtifactPackager
from edumanage.domains.build.repository import (
    BuildQueue,
    BuildRepository,
    Notifier,
    OrderRepository,
    SchoolRepository,
)
from edumanage.domains.build.service import BuildService
from edumanage.domains.build.templates import TemplateStore
from edumanage.domains.build.uploader import StorageUploader
from edumanage.infrastructure.database import (
    SqlBuildRepository,
    SqlOrderRepository,
    SqlSchoolRepository,
    create_sessionmaker,
)
from edumanage.infrastructure.storage import ObjectStorage, S3ObjectStorage
from edumanage.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class BuildContext:
    """Everything needed to run or manage builds."""

    builds: BuildRepository
    orders: OrderRepository
    schools: SchoolRepository
    packager: ArtifactPackager
    uploader: StorageUploader
    orchestrator: BuildOrchestrator
    service: BuildService | None = None


def create_packager(settings: Settings) -> ArtifactPackager:
    build = settings.build
    return ArtifactPackager(
        templates=TemplateStore(build.templates_dir),
        builds_dir=build.builds_dir,
        system_version=build.system_version,
        api_base_url=build.api_base_url,
        support_email=build.support_email,
        client_domain=build.client_domain,
        smtp_host=build.smtp_host,
        smtp_port=build.smtp_port,
        dependency_manifest=build.dependency_manifest,
        install_command=build.install_command,
        dependency_timeout=build.dependency_timeout_seconds,
    )


def create_build_context(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    storage: ObjectStorage,
    notifier: Notifier | None = None,
    queue: BuildQueue | None = None,
) -> BuildContext:
    """Assemble the build pipeline.

    Args:
        settings: Application settings.
        sessionmaker: Session factory shared by the repositories.
        storage: Object storage receiving the artifacts.
        notifier: Delivers the build-complete notification.
        queue: Job queue; the service is only built when one is given.

    Returns:
        The assembled BuildContext.
    """
    builds = SqlBuildRepository(sessionmaker)
    orders = SqlOrderRepository(sessionmaker)
    schools = SqlSchoolRepository(sessionmaker)
    packager = create_packager(settings)
    uploader = StorageUploader(
        storage,
        signed_url_ttl=settings.storage.signed_url_ttl_seconds,
        timeout=settings.storage.upload_timeout_seconds,
    )
    orchestrator = BuildOrchestrator(builds, orders, schools, packager, uploader, notifier)

    service = None
    if queue is not None:
        service = BuildService(
            builds,
            orders,
            schools,
            uploader,
            queue,
            expiry_days=settings.build.download_expiry_days,
        )

    return BuildContext(
        builds=builds,
        orders=orders,
        schools=schools,
        packager=packager,
        uploader=uploader,
        orchestrator=orchestrator,
        service=service,
    )


# Per worker thread cache
_worker_local = threading.local()

ContextFactory = Callable[[], Awaitable[BuildContext]]
_context_factory: ContextFactory | None = None


async def get_worker_context() -> BuildContext:
    """Build context of the current worker thread, created on first use."""
    context = getattr(_worker_local, "context", None)
    if context is not None:
        return context

    if _context_factory is not None:
        context = await _context_factory()
        _worker_local.context = context
        return context

    from edumanage.infrastructure.background.tasks.notifications import QueuedNotifier

    settings = get_settings()
    setup_logging(settings)
    engine = create_async_engine(
        settings.database.url,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_pre_ping=True,
    )
    context = create_build_context(
        settings,
        create_sessionmaker(engine),
        S3ObjectStorage.from_settings(settings.storage),
        notifier=QueuedNotifier(),
    )
    _worker_local.context = context
    logger.debug("Worker context created for thread %s", threading.current_thread().name)
    return context


def set_worker_context_factory(factory: ContextFactory | None) -> None:
    """Replace how worker threads create their context; None restores the default."""
    global _context_factory
    _context_factory = factory


def reset_worker_context() -> None:
    """Drop the current thread's cached context."""
    _worker_local.context = None
