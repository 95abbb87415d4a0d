# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Build job aggregate and its state machine.

A BuildJob tracks one build of a customer package from the moment the paid
order is accepted until the artifact is downloadable (or the run fails or
is cancelled). The aggregate enforces its own invariants; persistence is
done by a repository, never by the entity itself.

State machine:
    queued -> processing -> completed | failed
    queued | processing -> cancelled
    failed -> queued (reset_for_retry only)

Example:
    >>> build = BuildJob.create("ORD-001", "school-1", "user-1", PackageTier.MEDIUM)
    >>> build.transition_to(BuildStatus.PROCESSING)
    >>> build.append_stage(StageName.COPY_TEMPLATE)
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from edumanage.domains.build.exceptions import (
    DownloadExpiredError,
    DownloadUnavailableError,
    InvalidStageError,
    InvalidTransitionError,
)
from edumanage.utils.datetime import days_from, is_expired, utc_now

DOWNLOAD_EXPIRY_DAYS = 30
MAX_TRACKED_LOGS = 100
SECONDS_PER_PERCENT = 2


class PackageTier(str, Enum):
    """Package level determining template and feature set."""

    SMALL = "small"
    MEDIUM = "medium"
    LIFETIME = "lifetime"
    ENTERPRISE = "enterprise"


class BuildStatus(str, Enum):
    """Lifecycle status of a build."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Status of a single pipeline stage."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageName(str, Enum):
    """Pipeline stages in execution order."""

    COPY_TEMPLATE = "copy_template"
    CONFIGURATION = "configuration"
    DATABASE = "database"
    DEPENDENCIES = "dependencies"
    PACKAGING = "packaging"
    UPLOAD = "upload"


# Progress reached once each stage completes
STAGE_PROGRESS: dict[StageName, int] = {
    StageName.COPY_TEMPLATE: 20,
    StageName.CONFIGURATION: 40,
    StageName.DATABASE: 60,
    StageName.DEPENDENCIES: 80,
    StageName.PACKAGING: 90,
    StageName.UPLOAD: 100,
}

PIPELINE_STAGES: tuple[StageName, ...] = tuple(StageName)

TERMINAL_STATUSES = frozenset(
    {BuildStatus.COMPLETED, BuildStatus.FAILED, BuildStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.QUEUED: frozenset({BuildStatus.PROCESSING, BuildStatus.CANCELLED}),
    BuildStatus.PROCESSING: frozenset(
        {BuildStatus.COMPLETED, BuildStatus.FAILED, BuildStatus.CANCELLED}
    ),
    BuildStatus.COMPLETED: frozenset(),
    BuildStatus.FAILED: frozenset(),
    BuildStatus.CANCELLED: frozenset(),
}


def generate_build_id(now: datetime | None = None) -> str:
    """Generate a build identifier of the form BLD-<millis>-<6 hex>.

    Args:
        now: Timestamp source, defaults to the current time.

    Returns:
        New build identifier.
    """
    millis = int(now.timestamp() * 1000) if now else int(time.time() * 1000)
    return f"BLD-{millis}-{secrets.token_hex(3).upper()}"


@dataclass
class BuildStage:
    """One named, ordered unit of work within a build run.

    Attributes:
        name: Stage name.
        status: Stage status.
        started_at: When the stage was opened.
        completed_at: When the stage finished successfully.
        error: Error message when the stage failed.
    """

    name: StageName
    status: StageStatus
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def is_open(self) -> bool:
        """Whether the stage is still running."""
        return self.status == StageStatus.PROCESSING


@dataclass(frozen=True)
class ArtifactFile:
    """An uploaded build artifact.

    Attributes:
        key: Object storage key.
        url: Object URL (unsigned).
        size: Size in bytes.
        checksum: SHA-256 hex digest of the uploaded bytes.
    """

    key: str
    url: str
    size: int
    checksum: str | None = None


@dataclass(frozen=True)
class BuildMetadata:
    """Facts recorded about a completed build.

    Attributes:
        build_time_ms: completed_at - started_at in milliseconds.
        file_size: Archive size in bytes.
        version: Version tag of the generated package.
        dependencies: Runtime dependencies declared by the template.
    """

    build_time_ms: int
    file_size: int
    version: str
    dependencies: tuple[str, ...] = ()


@dataclass
class BuildJob:
    """The unit of work: one build of a customer package.

    Run-scoped fields (stages, progress, error, started_at, completed_at and
    the result fields) are reset by reset_for_retry(); identity and
    references never change.
    """

    build_id: str
    order_id: str
    school_id: str
    user_id: str
    package: PackageTier
    status: BuildStatus = BuildStatus.QUEUED
    progress: int = 0
    stages: list[BuildStage] = field(default_factory=list)
    download_url: str | None = None
    download_count: int = 0
    last_download_at: datetime | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: BuildMetadata | None = None
    archive: ArtifactFile | None = None
    database: ArtifactFile | None = None
    logs: list[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        order_id: str,
        school_id: str,
        user_id: str,
        package: PackageTier | str,
        now: datetime | None = None,
        expiry_days: int = DOWNLOAD_EXPIRY_DAYS,
    ) -> "BuildJob":
        """Create a new queued build.

        Args:
            order_id: Owning order.
            school_id: Owning school.
            user_id: Requesting user.
            package: Package tier.
            now: Creation time, defaults to now.
            expiry_days: Days until the artifact becomes inaccessible.

        Returns:
            New BuildJob in status queued.
        """
        created_at = now or utc_now()
        return cls(
            build_id=generate_build_id(created_at),
            order_id=order_id,
            school_id=school_id,
            user_id=user_id,
            package=PackageTier(package),
            created_at=created_at,
            expires_at=days_from(created_at, expiry_days),
        )

    # =========================================================================
    # State machine
    # =========================================================================

    def can_transition_to(self, target: BuildStatus) -> bool:
        """Check whether the state machine allows moving to target."""
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: BuildStatus, now: datetime | None = None) -> None:
        """Move to a new status, enforcing the state machine.

        Entering processing sets started_at and clears the stage history.
        Entering a terminal status sets completed_at.

        Args:
            target: Desired status.
            now: Transition time, defaults to now.

        Raises:
            InvalidTransitionError: If the move is not allowed or the
                status invariants would be broken.
        """
        target = BuildStatus(target)
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.status.value, target.value)

        if target == BuildStatus.COMPLETED and (self.progress != 100 or not self.download_url):
            raise InvalidTransitionError(
                self.status.value,
                target.value,
                "completed builds need progress 100 and a download URL",
            )
        if target == BuildStatus.FAILED and not self.error:
            raise InvalidTransitionError(
                self.status.value, target.value, "failed builds need an error message"
            )

        moment = now or utc_now()
        if target == BuildStatus.PROCESSING:
            self.started_at = moment
            self.stages = []
        if target in TERMINAL_STATUSES:
            self.completed_at = moment

        self.status = target

    def complete(
        self,
        download_url: str,
        metadata: BuildMetadata | None = None,
        archive: ArtifactFile | None = None,
        database: ArtifactFile | None = None,
        now: datetime | None = None,
    ) -> None:
        """Finish a successful run.

        Raises:
            InvalidTransitionError: If not processing or progress is not 100.
        """
        if not download_url:
            raise InvalidTransitionError(
                self.status.value, BuildStatus.COMPLETED.value, "download URL is empty"
            )
        previous_url = self.download_url
        self.download_url = download_url
        try:
            self.transition_to(BuildStatus.COMPLETED, now)
        except InvalidTransitionError:
            self.download_url = previous_url
            raise
        self.metadata = metadata
        self.archive = archive
        self.database = database

    def fail(self, error: str, now: datetime | None = None) -> None:
        """Finish a run with an error.

        Raises:
            InvalidTransitionError: If the build is not processing.
        """
        if not self.can_transition_to(BuildStatus.FAILED):
            raise InvalidTransitionError(self.status.value, BuildStatus.FAILED.value)
        self.error = error or "Unknown build error"
        self.transition_to(BuildStatus.FAILED, now)

    def cancel(self, now: datetime | None = None) -> None:
        """Cancel a queued or processing build.

        Raises:
            InvalidTransitionError: If the build already finished.
        """
        self.transition_to(BuildStatus.CANCELLED, now)

    def reset_for_retry(self) -> None:
        """Reset run-scoped fields so a failed build can be re-queued.

        Raises:
            InvalidTransitionError: If the build is not failed.
        """
        if self.status != BuildStatus.FAILED:
            raise InvalidTransitionError(
                self.status.value,
                BuildStatus.QUEUED.value,
                "only failed builds can be retried",
            )
        self.status = BuildStatus.QUEUED
        self.progress = 0
        self.stages = []
        self.error = None
        self.started_at = None
        self.completed_at = None
        self.download_url = None
        self.metadata = None
        self.archive = None
        self.database = None

    # =========================================================================
    # Stages and progress
    # =========================================================================

    def _open_stage(self, name: StageName) -> BuildStage | None:
        for stage in reversed(self.stages):
            if stage.name == name and stage.completed_at is None and stage.is_open:
                return stage
        return None

    def append_stage(self, name: StageName | str, now: datetime | None = None) -> BuildStage:
        """Open a new stage.

        Raises:
            InvalidStageError: If the build is not processing or a stage
                with the same name is already open.
        """
        name = StageName(name)
        if self.status != BuildStatus.PROCESSING:
            raise InvalidStageError(f"Cannot start stage {name.value} while build is {self.status.value}")
        if self._open_stage(name) is not None:
            raise InvalidStageError(f"Stage {name.value} is already running")

        stage = BuildStage(
            name=name,
            status=StageStatus.PROCESSING,
            started_at=now or utc_now(),
        )
        self.stages.append(stage)
        return stage

    def complete_stage(self, name: StageName | str, now: datetime | None = None) -> BuildStage | None:
        """Close the most recent open stage with this name.

        Returns:
            The completed stage, or None when no such stage is open.
        """
        stage = self._open_stage(StageName(name))
        if stage is None:
            return None
        stage.status = StageStatus.COMPLETED
        stage.completed_at = now or utc_now()
        return stage

    def fail_stage(self, name: StageName | str, error: str) -> BuildStage | None:
        """Mark the open stage with this name as failed.

        Returns:
            The failed stage, or None when no such stage is open.
        """
        stage = self._open_stage(StageName(name))
        if stage is None:
            return None
        stage.status = StageStatus.FAILED
        stage.error = error
        return stage

    def advance_progress(self, value: int) -> None:
        """Raise progress to value.

        Raises:
            InvalidStageError: If not processing or value would decrease.
        """
        if self.status != BuildStatus.PROCESSING:
            raise InvalidStageError(f"Cannot update progress while build is {self.status.value}")
        if not 0 <= value <= 100:
            raise InvalidStageError(f"Progress out of range: {value}")
        if value < self.progress:
            raise InvalidStageError(f"Progress cannot go backwards ({self.progress} -> {value})")
        self.progress = value

    def add_log(self, message: str) -> None:
        """Append a build log line, keeping a rolling window."""
        self.logs.append(message)
        if len(self.logs) > MAX_TRACKED_LOGS:
            self.logs = self.logs[-MAX_TRACKED_LOGS:]

    # =========================================================================
    # Downloads
    # =========================================================================

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the download window has closed."""
        return is_expired(self.expires_at, now)

    def is_download_available(self, now: datetime | None = None) -> bool:
        """Whether the artifact can currently be downloaded."""
        return (
            self.status == BuildStatus.COMPLETED
            and bool(self.download_url)
            and not self.is_expired(now)
        )

    def ensure_downloadable(self, now: datetime | None = None) -> None:
        """Raise unless the artifact can currently be downloaded.

        Raises:
            DownloadUnavailableError: If the build is not completed.
            DownloadExpiredError: If the download window has closed.
        """
        if self.status != BuildStatus.COMPLETED or not self.download_url:
            raise DownloadUnavailableError(f"Build {self.build_id} is not yet completed")
        if self.is_expired(now):
            raise DownloadExpiredError(f"Download for build {self.build_id} has expired")

    def record_download(self, now: datetime | None = None) -> None:
        """Count one download.

        Raises:
            DownloadUnavailableError: If the build is not completed.
            DownloadExpiredError: If the download window has closed.
        """
        moment = now or utc_now()
        self.ensure_downloadable(moment)
        self.download_count += 1
        self.last_download_at = moment

    @property
    def estimated_time_remaining(self) -> int:
        """Rough seconds left in the current run (0 unless processing)."""
        if self.status != BuildStatus.PROCESSING:
            return 0
        return (100 - self.progress) * SECONDS_PER_PERCENT
