# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Build service for request-level build operations.

This module provides the operations behind the build and download
endpoints: accepting a paid order for building, status polling, logs,
listing, manual retry, cancellation and download links.

Request handlers never write a whole build they read earlier, except the
reset on manual retry (a failed build has no other writer). Cancellation,
new download links, the download counter and failing a build whose job
could not be enqueued are single-column-set updates; everything else is
written by the orchestrator.

Example:
    service = BuildService(builds, orders, schools, uploader, queue)
    created = await service.start_build("ORD-001", user_id="user-1")
    status = await service.get_build_status(created.build_id, user_id="user-1")
"""

import logging
import math
import textwrap
from datetime import datetime

from edumanage.domains.build.entity import (
    DOWNLOAD_EXPIRY_DAYS,
    BuildJob,
    BuildStage,
    BuildStatus,
    PackageTier,
)
from edumanage.domains.build.exceptions import (
    AccessDeniedError,
    BuildNotFoundError,
    BuildNotReadyError,
    DuplicateBuildError,
    InvalidTransitionError,
)
from edumanage.domains.build.repository import (
    BuildQueue,
    BuildRepository,
    OrderRepository,
    OrderSnapshot,
    SchoolRepository,
    SchoolSnapshot,
)
from edumanage.domains.build.uploader import StorageUploader
from edumanage.models.build import (
    BuildCreatedResponse,
    BuildListQuery,
    BuildListResponse,
    BuildLogsResponse,
    BuildStageResponse,
    BuildStatsEntry,
    BuildStatusResponse,
    DownloadAvailabilityResponse,
    DownloadInfoResponse,
    DownloadLinkResponse,
    OrderBuildUpdate,
    Pagination,
)
from edumanage.utils.datetime import utc_now

logger = logging.getLogger(__name__)

ADMIN_ROLE = "superadmin"
CANCELLABLE_STATUSES = (BuildStatus.QUEUED, BuildStatus.PROCESSING)

INSTALLATION_GUIDES: dict[PackageTier, str] = {
    PackageTier.SMALL: textwrap.dedent(
        """\
        # Installation Guide - Small School Package

        1. **Extract the ZIP file** to your web server directory
        2. **Upload files** to your hosting server (cPanel, Plesk, or FTP)
        3. **Create MySQL database** from your hosting control panel
        4. **Configure .env file** with your database credentials
        5. **Run installation**: Access https://yourdomain.com/install
        6. **Follow the setup wizard** to complete installation
        7. **Login** with the admin credentials you provided

        **System Requirements:**
        - PHP 7.4 or higher
        - MySQL 5.7 or higher
        - Apache/Nginx web server
        - 100MB disk space
        """
    ),
    PackageTier.MEDIUM: textwrap.dedent(
        """\
        # Installation Guide - Medium School Package

        1. **Extract the ZIP file** to your server
        2. **Upload all files** to your web hosting
        3. **Create database** and user with full privileges
        4. **Edit config/database.php** with your credentials
        5. **Run setup script**: Navigate to /setup in your browser
        6. **Complete the installation wizard**
        7. **Configure SMTP** for email notifications
        8. **Set up cron jobs** for automated tasks

        **Additional Features:**
        - Advanced reporting module
        - Library management
        - Inventory tracking
        - Biometric integration support
        """
    ),
    PackageTier.LIFETIME: textwrap.dedent(
        """\
        # Installation Guide - Lifetime Package

        1. **Extract the package** to your preferred directory
        2. **Upload to your VPS/Cloud Server**
        3. **Set up environment**: Node.js, MongoDB, Redis
        4. **Configure .env** with all required settings
        5. **Install dependencies**: npm install
        6. **Build frontend**: npm run build
        7. **Initialize database**: npm run db:seed
        8. **Start the application**: npm start
        9. **Set up PM2/Nginx** for production

        **Full System Features:**
        - Complete source code access
        - All modules enabled
        - White-label customization
        - API documentation included
        """
    ),
    PackageTier.ENTERPRISE: textwrap.dedent(
        """\
        # Installation Guide - Enterprise Package

        **For Enterprise Deployment:**

        1. **Docker Deployment** (Recommended):
           docker-compose up -d

        2. **Kubernetes Deployment**:
           kubectl apply -f k8s/

        3. **Manual Deployment**:
           - Set up load balancer
           - Configure multiple app servers
           - Set up MongoDB cluster
           - Configure Redis cluster
           - Set up file storage (S3/MinIO)
           - Configure CDN

        **Support Included:**
        - 24/7 technical support
        - Dedicated account manager
        - Custom development hours
        - Priority updates and patches
        """
    ),
}


def installation_guide(tier: PackageTier | str | None) -> str:
    """Installation guide for a tier (small package guide by default)."""
    try:
        return INSTALLATION_GUIDES[PackageTier(tier)]
    except ValueError:
        return INSTALLATION_GUIDES[PackageTier.SMALL]


def _stage_response(stage: BuildStage) -> BuildStageResponse:
    return BuildStageResponse(
        name=stage.name.value,
        status=stage.status,
        started_at=stage.started_at,
        completed_at=stage.completed_at,
        error=stage.error,
    )


def _status_response(build: BuildJob) -> BuildStatusResponse:
    return BuildStatusResponse(
        build_id=build.build_id,
        order_id=build.order_id,
        school_id=build.school_id,
        package=build.package,
        status=build.status,
        progress=build.progress,
        stages=[_stage_response(s) for s in build.stages],
        download_url=build.download_url if build.status == BuildStatus.COMPLETED else None,
        download_count=build.download_count,
        error=build.error,
        created_at=build.created_at,
        started_at=build.started_at,
        completed_at=build.completed_at,
        estimated_time_remaining=build.estimated_time_remaining,
    )


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))


class BuildService:
    """Service for build and download operations.

    Attributes:
        builds: Build repository.
        orders: Order repository.
        schools: School repository.
        uploader: Signs fresh download links.
        queue: Job queue receiving build-start requests.
    """

    def __init__(
        self,
        builds: BuildRepository,
        orders: OrderRepository,
        schools: SchoolRepository,
        uploader: StorageUploader,
        queue: BuildQueue,
        expiry_days: int = DOWNLOAD_EXPIRY_DAYS,
    ) -> None:
        self.builds = builds
        self.orders = orders
        self.schools = schools
        self.uploader = uploader
        self.queue = queue
        self._expiry_days = expiry_days

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(
        self,
        order: OrderSnapshot,
        school: SchoolSnapshot,
        user_id: str,
        now: datetime | None = None,
    ) -> BuildJob:
        """Create and persist a queued build for an order.

        Args:
            order: Order being built.
            school: School provisioned for the order.
            user_id: Requesting user.
            now: Creation time, defaults to now.

        Returns:
            The new build.

        Raises:
            DuplicateBuildError: If the order already has a build.
        """
        existing = await self.builds.get_by_order(order.order_id)
        if existing is not None:
            raise DuplicateBuildError(order.order_id, existing.build_id)

        build = BuildJob.create(
            order_id=order.order_id,
            school_id=school.school_id,
            user_id=user_id,
            package=order.package_tier,
            now=now,
            expiry_days=self._expiry_days,
        )
        await self.builds.add(build)

        logger.info("Build created: %s for order %s", build.build_id, order.order_id)
        return build

    async def start_build(self, order_id: str, user_id: str) -> BuildCreatedResponse:
        """Accept a paid order for building and enqueue it.

        Returns immediately; the build runs in a worker.

        Args:
            order_id: Order to build.
            user_id: Requesting user (must own the order).

        Returns:
            BuildCreatedResponse with the new build id and queue job id.

        Raises:
            BuildNotReadyError: If the order is missing, unpaid, unconfirmed,
                or has no school yet.
            DuplicateBuildError: If the order already has a build.
            Exception: Whatever the queue raised when the job could not be
                enqueued; the build is marked failed first so it can be
                retried.
        """
        order = await self.orders.find_buildable(order_id, user_id)
        if order is None:
            raise BuildNotReadyError("Order not found or payment not completed")
        if not order.school_id:
            raise BuildNotReadyError("School not set up for this order")

        school = await self.schools.get(order.school_id)
        if school is None:
            raise BuildNotReadyError("School not set up for this order")

        build = await self.create(order, school, user_id)
        job_id = await self._enqueue(build)

        logger.info("Build %s queued as job %s", build.build_id, job_id)
        return BuildCreatedResponse(build_id=build.build_id, job_id=job_id)

    async def _enqueue(self, build: BuildJob) -> str:
        """Hand a queued build to the job queue.

        A build whose job never reached the queue would stay queued with
        nothing to run it, so it is failed before the error propagates.
        """
        try:
            return await self.queue.enqueue_build(build.build_id)
        except Exception as exc:
            error = f"Build could not be queued: {type(exc).__name__}: {exc}"
            logger.error("Enqueue failed for build %s: %s", build.build_id, error)
            if await self.builds.fail_queued(build.build_id, error, utc_now()):
                await self.orders.apply_build_update(
                    build.order_id,
                    OrderBuildUpdate(build_status="failed", status="failed"),
                )
            raise

    # =========================================================================
    # Queries
    # =========================================================================

    async def _get_owned(self, build_id: str, user_id: str) -> BuildJob:
        """Load a build the user requested.

        Raises:
            BuildNotFoundError: If missing or owned by someone else.
        """
        build = await self.builds.get(build_id)
        if build is None or build.user_id != user_id:
            raise BuildNotFoundError(build_id)
        return build

    async def get_build_status(self, build_id: str, user_id: str) -> BuildStatusResponse:
        """Status snapshot for polling clients."""
        build = await self._get_owned(build_id, user_id)
        return _status_response(build)

    async def get_build_logs(self, build_id: str, user_id: str) -> BuildLogsResponse:
        """Stage history and log lines of a build."""
        build = await self._get_owned(build_id, user_id)
        return BuildLogsResponse(
            build_id=build.build_id,
            status=build.status,
            logs=list(build.logs),
            stages=[_stage_response(s) for s in build.stages],
            error=build.error,
        )

    async def list_builds(self, user_id: str, query: BuildListQuery) -> BuildListResponse:
        """Page through the user's builds, newest first."""
        builds, total = await self.builds.list_for_user(
            user_id,
            status=query.status,
            offset=query.offset,
            limit=query.limit,
        )
        return BuildListResponse(
            builds=[_status_response(b) for b in builds],
            pagination=_pagination(query.page, query.limit, total),
        )

    async def list_all_builds(self, query: BuildListQuery, requester_role: str) -> BuildListResponse:
        """Page through all builds with per-status statistics.

        Raises:
            AccessDeniedError: If the requester is not a superadmin.
        """
        if requester_role != ADMIN_ROLE:
            raise AccessDeniedError("Permission denied")

        builds, total = await self.builds.list_all(
            status=query.status,
            from_date=query.from_date,
            to_date=query.to_date,
            offset=query.offset,
            limit=query.limit,
        )
        stats = await self.builds.status_stats()
        return BuildListResponse(
            builds=[_status_response(b) for b in builds],
            pagination=_pagination(query.page, query.limit, total),
            stats=[
                BuildStatsEntry(
                    status=s.status,
                    count=s.count,
                    total_size=s.total_size,
                    avg_build_time_ms=s.avg_build_time_ms,
                )
                for s in stats
            ],
        )

    # =========================================================================
    # Retry and cancellation
    # =========================================================================

    async def retry_build(self, build_id: str, user_id: str) -> BuildCreatedResponse:
        """Reset a failed build and enqueue it again from the first stage.

        Raises:
            BuildNotFoundError: If the build is not visible to the user.
            InvalidTransitionError: If the build is not failed.
        """
        build = await self._get_owned(build_id, user_id)
        build.reset_for_retry()
        if not await self.builds.save(build, expected_status=BuildStatus.FAILED):
            raise InvalidTransitionError(
                BuildStatus.FAILED.value,
                BuildStatus.QUEUED.value,
                "build changed while retrying",
            )

        job_id = await self._enqueue(build)
        logger.info("Build retry queued: %s (job %s)", build_id, job_id)
        return BuildCreatedResponse(build_id=build_id, job_id=job_id, message="Build retry queued")

    async def cancel_build(self, build_id: str, user_id: str) -> BuildStatusResponse:
        """Cancel a queued or processing build.

        A running stage is not interrupted; the orchestrator stops before
        the next stage and persists nothing further.

        Raises:
            BuildNotFoundError: If the build is not visible to the user.
            InvalidTransitionError: If the build already finished.
        """
        build = await self._get_owned(build_id, user_id)
        if build.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                build.status.value,
                BuildStatus.CANCELLED.value,
                "only queued or processing builds can be cancelled",
            )

        # Only status and completed_at are written; stages saved by a
        # running worker in the meantime are kept
        if not await self.builds.cancel(build_id, CANCELLABLE_STATUSES, utc_now()):
            current = await self._get_owned(build_id, user_id)
            raise InvalidTransitionError(
                current.status.value, BuildStatus.CANCELLED.value, "build finished while cancelling"
            )

        await self.orders.apply_build_update(
            build.order_id,
            OrderBuildUpdate(build_status="cancelled", status="cancelled"),
        )
        logger.info("Build cancelled: %s", build_id)
        return _status_response(await self._get_owned(build_id, user_id))

    # =========================================================================
    # Downloads
    # =========================================================================

    async def get_download_info(self, build_id: str, user_id: str) -> DownloadInfoResponse:
        """Download details for the customer; counts one download.

        Raises:
            BuildNotFoundError: If the build is not visible to the user.
            DownloadUnavailableError: If the build is not completed.
            DownloadExpiredError: If the download window has closed.
        """
        build = await self._get_owned(build_id, user_id)
        now = utc_now()
        build.ensure_downloadable(now)

        updated = await self.builds.increment_download(build_id, now)
        if updated is None:
            raise BuildNotFoundError(build_id)

        school = await self.schools.get(updated.school_id)
        metadata = updated.metadata
        logger.info("System downloaded: %s by user %s", build_id, user_id)

        return DownloadInfoResponse(
            build_id=updated.build_id,
            school_name=school.name if school else None,
            package=updated.package,
            status=updated.status,
            download_url=updated.download_url,
            download_count=updated.download_count,
            last_download_at=updated.last_download_at,
            file_size=metadata.file_size if metadata else None,
            version=metadata.version if metadata else None,
            expires_at=updated.expires_at,
            installation_guide=installation_guide(updated.package),
        )

    async def generate_new_link(self, build_id: str, user_id: str) -> DownloadLinkResponse:
        """Sign a fresh download link for a completed, unexpired build.

        Raises:
            BuildNotFoundError: If the build is not visible to the user.
            DownloadUnavailableError: If the build is not completed.
            DownloadExpiredError: If the download window has closed.
        """
        build = await self._get_owned(build_id, user_id)
        build.ensure_downloadable(utc_now())

        key = build.archive.key if build.archive else None
        download_url = await self.uploader.refresh_link(build_id, key)
        if not await self.builds.update_download_url(build_id, download_url, BuildStatus.COMPLETED):
            raise BuildNotFoundError(build_id)

        logger.info("New download link generated for build %s", build_id)
        return DownloadLinkResponse(build_id=build_id, download_url=download_url)

    async def verify_download(self, build_id: str) -> DownloadAvailabilityResponse:
        """Whether a build can be downloaded right now. No side effects."""
        build = await self.builds.get(build_id)
        if build is None:
            raise BuildNotFoundError(build_id)
        return DownloadAvailabilityResponse(
            available=build.is_download_available(utc_now()),
            status=build.status,
            expires_at=build.expires_at,
            download_count=build.download_count,
        )
