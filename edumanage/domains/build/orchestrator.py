# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Build orchestrator: runs one build through its six stages.

The orchestrator is the only writer of a build while it is processing.
Every persisted change during a run is a conditional save that only
succeeds while the stored status is still processing, so a cancellation
that lands mid-stage stops the run at the next save without being
overwritten.

Stages and the progress reached when each completes:
    copy_template  20
    configuration  40
    database       60
    dependencies   80
    packaging      90
    upload        100

Example:
    >>> orchestrator = BuildOrchestrator(builds, orders, schools, packager, uploader, notifier)
    >>> result = await orchestrator.dispatch("BLD-1700000000000-A1B2C3")
    >>> result.status
    <BuildStatus.COMPLETED: 'completed'>
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from edumanage.domains.build.entity import (
    STAGE_PROGRESS,
    BuildJob,
    BuildMetadata,
    BuildStatus,
    StageName,
)
from edumanage.domains.build.exceptions import (
    BuildNotFoundError,
    OrderNotFoundError,
    SchoolNotFoundError,
    StageError,
)
from edumanage.domains.build.packager import ArtifactPackager
from edumanage.domains.build.repository import (
    BuildRepository,
    Notifier,
    OrderRepository,
    SchoolRepository,
    SchoolSnapshot,
)
from edumanage.domains.build.uploader import StorageUploader, UploadResult
from edumanage.models.build import DispatchResult, OrderBuildUpdate, SchoolActivationUpdate
from edumanage.utils.datetime import elapsed_ms, utc_now
from edumanage.utils.logging import bind_context, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

BUILD_COMPLETE_NOTIFICATION = "build-complete"

INSTALLATION_STEPS = (
    "1. Extract the downloaded ZIP file\n"
    "2. Upload to your web hosting server\n"
    "3. Run: npm install\n"
    "4. Configure .env file with your database details\n"
    "5. Run: npm start\n"
    "6. Access your system at yourdomain.com"
)


class _RunCancelled(Exception):
    """The build was cancelled while this run held it."""


class BuildOrchestrator:
    """Executes builds dispatched by the job queue.

    Attributes:
        builds: Build repository.
        orders: Order repository.
        schools: School repository.
        packager: Produces the package in a per-build workspace.
        uploader: Publishes artifacts and signs download links.
        notifier: Sends the build-complete notification, optional.
    """

    def __init__(
        self,
        builds: BuildRepository,
        orders: OrderRepository,
        schools: SchoolRepository,
        packager: ArtifactPackager,
        uploader: StorageUploader,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.builds = builds
        self.orders = orders
        self.schools = schools
        self.packager = packager
        self.uploader = uploader
        self.notifier = notifier
        self._clock = clock

    async def dispatch(self, build_id: str) -> DispatchResult:
        """Run the pipeline for one build.

        Builds that are no longer queued (completed, cancelled, or already
        picked up by another worker) are skipped without changes.

        Args:
            build_id: Build to run.

        Returns:
            DispatchResult describing the outcome.

        Raises:
            BuildNotFoundError: If the build does not exist.
            OrderNotFoundError: If the build's order is missing (build failed).
            SchoolNotFoundError: If the build's school is missing (build failed).
            StageError: If a stage failed (build failed).
        """
        build = await self.builds.get(build_id)
        if build is None:
            raise BuildNotFoundError(build_id)

        bind_context(build_id=build.build_id, order_id=build.order_id)

        if build.status != BuildStatus.QUEUED:
            logger.info("build_dispatch_skipped", status=build.status.value)
            return DispatchResult(
                build_id=build_id,
                status=build.status,
                skipped=True,
                message=f"Build is {build.status.value}, nothing to do",
            )

        build.transition_to(BuildStatus.PROCESSING, self._clock())
        build.add_log("Build started")
        if not await self.builds.save(build, expected_status=BuildStatus.QUEUED):
            current = await self.builds.get(build_id)
            status = current.status if current else BuildStatus.CANCELLED
            logger.info("build_claim_lost", status=status.value)
            return DispatchResult(
                build_id=build_id,
                status=status,
                skipped=True,
                message="Build changed before it could start",
            )

        logger.info("build_started", package=build.package.value)
        workspace = self.packager.workspace_for(build_id)
        try:
            return await self._run(build)
        except _RunCancelled:
            logger.info("build_cancelled_during_run", progress=build.progress)
            await self.packager.cleanup(workspace, self.packager.archive_path(build_id))
            return DispatchResult(
                build_id=build_id,
                status=BuildStatus.CANCELLED,
                message="Build was cancelled",
            )
        except Exception as exc:
            await self._record_failure(build, exc)
            raise

    async def abandon(self, build_id: str, error: str) -> bool:
        """Fail a build whose job was dead-lettered before any run claimed it.

        Without this the build would stay queued with no job left to run
        it, and manual retry only accepts failed builds. Builds that already
        left queued are not touched.

        Args:
            build_id: Build of the dead-lettered job.
            error: Why delivery gave up.

        Returns:
            True if the build was marked failed.
        """
        bind_context(build_id=build_id)
        message = f"Build job could not be delivered: {error}"
        if not await self.builds.fail_queued(build_id, message, self._clock()):
            logger.info("build_abandon_skipped")
            return False

        logger.error("build_abandoned", error=message)
        build = await self.builds.get(build_id)
        if build is not None:
            await self.orders.apply_build_update(
                build.order_id,
                OrderBuildUpdate(build_status="failed", status="failed"),
            )
        return True

    async def _run(self, build: BuildJob) -> DispatchResult:
        order = await self.orders.get(build.order_id)
        if order is None:
            raise OrderNotFoundError(build.order_id)
        school = await self.schools.get(build.school_id)
        if school is None:
            raise SchoolNotFoundError(build.school_id)

        build_id = build.build_id
        workspace = await self.packager.prepare_workspace(build_id)

        await self._stage(
            build,
            StageName.COPY_TEMPLATE,
            lambda: self.packager.copy_template(order.package_tier, workspace),
        )
        await self._stage(
            build,
            StageName.CONFIGURATION,
            lambda: self.packager.configure_system(workspace, school, order, self._clock()),
        )
        seed_path = await self._stage(
            build,
            StageName.DATABASE,
            lambda: self.packager.generate_database(workspace, school, order, self._clock()),
        )
        install = await self._stage(
            build,
            StageName.DEPENDENCIES,
            lambda: self.packager.install_dependencies(workspace),
        )
        if not install.installed and not install.skipped:
            build.add_log(f"Warning: {install.message}")

        archive_path = await self._stage(
            build,
            StageName.PACKAGING,
            lambda: self.packager.create_package(build_id, workspace),
        )
        upload: UploadResult = await self._stage(
            build,
            StageName.UPLOAD,
            lambda: self.uploader.publish(build_id, archive_path, seed_path),
        )

        now = self._clock()
        metadata = BuildMetadata(
            build_time_ms=elapsed_ms(build.started_at or now, now),
            file_size=await self.packager.file_size(archive_path),
            version=self.packager.system_version,
            dependencies=tuple(await self.packager.read_dependencies(workspace)),
        )
        build.complete(upload.download_url, metadata, upload.archive, upload.database, now)
        build.add_log("Build completed")
        if not await self.builds.save(build, expected_status=BuildStatus.PROCESSING):
            raise _RunCancelled()

        logger.info(
            "build_completed",
            build_time_ms=metadata.build_time_ms,
            file_size=metadata.file_size,
        )

        await self.orders.apply_build_update(
            build.order_id,
            OrderBuildUpdate(
                build_status="completed",
                status="completed",
                download_url=upload.download_url,
            ),
        )
        await self.schools.activate(
            build.school_id,
            SchoolActivationUpdate(
                build_id=build_id,
                download_url=upload.download_url,
                last_update=now,
            ),
        )
        await self._notify_complete(build, school)
        await self.packager.cleanup(workspace, archive_path)

        return DispatchResult(
            build_id=build_id,
            status=build.status,
            download_url=build.download_url,
            message="Build completed successfully",
            extra={"build_time_ms": metadata.build_time_ms, "file_size": metadata.file_size},
        )

    async def _stage(
        self,
        build: BuildJob,
        stage: StageName,
        work: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one stage: open it, do the work, close it, advance progress.

        Raises:
            _RunCancelled: If the build was cancelled before or during the stage.
            StageError: If the work raised.
        """
        if await self._is_cancelled(build.build_id):
            raise _RunCancelled()

        build.append_stage(stage, self._clock())
        build.add_log(f"Stage {stage.value} started")
        if not await self.builds.save(build, expected_status=BuildStatus.PROCESSING):
            raise _RunCancelled()

        try:
            result = await work()
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            build.fail_stage(stage, message)
            build.add_log(f"Stage {stage.value} failed: {message}")
            logger.error("build_stage_failed", stage=stage.value, error=message)
            raise StageError(stage.value, message) from exc

        build.complete_stage(stage, self._clock())
        build.advance_progress(STAGE_PROGRESS[stage])
        build.add_log(f"Stage {stage.value} completed")
        if not await self.builds.save(build, expected_status=BuildStatus.PROCESSING):
            raise _RunCancelled()

        logger.info("build_stage_completed", stage=stage.value, progress=build.progress)
        return result

    async def _is_cancelled(self, build_id: str) -> bool:
        current = await self.builds.get(build_id)
        return current is None or current.status == BuildStatus.CANCELLED

    async def _record_failure(self, build: BuildJob, exc: Exception) -> None:
        """Persist a failed run and mirror it onto the order.

        Persistence errors here are logged; the original exception is what
        the caller re-raises.
        """
        if build.status != BuildStatus.PROCESSING:
            return

        error = str(exc) if isinstance(exc, StageError) else f"{type(exc).__name__}: {exc}"
        build.fail(error, self._clock())
        build.add_log(f"Build failed: {error}")
        logger.error("build_failed", error=error, progress=build.progress)

        try:
            saved = await self.builds.save(build, expected_status=BuildStatus.PROCESSING)
            if saved:
                await self.orders.apply_build_update(
                    build.order_id,
                    OrderBuildUpdate(build_status="failed", status="failed"),
                )
        except Exception as persist_exc:
            logger.exception("build_failure_not_persisted", error=str(persist_exc))

    async def _notify_complete(self, build: BuildJob, school: SchoolSnapshot) -> None:
        if self.notifier is None:
            return
        data: dict[str, Any] = {
            "school_name": school.name,
            "build_id": build.build_id,
            "download_url": build.download_url,
            "installation_guide": INSTALLATION_STEPS,
        }
        try:
            await self.notifier.notify(BUILD_COMPLETE_NOTIFICATION, school.creator.email, data)
        except Exception as e:
            logger.warning("build_notification_failed", error=str(e))

