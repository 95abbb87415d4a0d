# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Repository and notifier interfaces plus external record snapshots.

The pipeline only reads a handful of order and school fields and writes
back through typed update models, so orders and schools are exposed as
frozen snapshots rather than live ORM objects. Implementations live in
edumanage.infrastructure.database.repositories.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from edumanage.domains.build.entity import BuildJob, BuildStatus, PackageTier
from edumanage.models.build import OrderBuildUpdate, SchoolActivationUpdate


@dataclass(frozen=True)
class AdminContact:
    """The user who created a school; receives build notifications."""

    user_id: str
    email: str
    full_name: str


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order.

    Attributes:
        order_id: Order identifier.
        user_id: Owner of the order.
        package_tier: Purchased tier.
        package_name: Display name of the package.
        package_duration: Billing duration ("lifetime" never expires).
        price: Price paid.
        currency: Currency code.
        payment_status: Payment status reported by the gateway.
        status: Order status.
        build_status: Build status mirrored onto the order.
        school_id: School provisioned for the order, if any.
    """

    order_id: str
    user_id: str
    package_tier: PackageTier
    package_name: str
    package_duration: str
    price: Decimal
    currency: str
    payment_status: str
    status: str
    build_status: str | None = None
    school_id: str | None = None
    download_url: str | None = None

    @property
    def is_paid(self) -> bool:
        """Whether payment is complete and the order is confirmed."""
        return self.payment_status == "completed" and self.status == "confirmed"


@dataclass(frozen=True)
class SchoolSnapshot:
    """Read-only view of a school.

    Attributes:
        school_id: School identifier.
        name: School name.
        slug: URL slug used for the client domain.
        creator: Admin who created the school.
        motto: School motto.
        address: Postal address fields.
        contact: Phone, email and website.
        logo_url: Branding logo.
        settings: Academic year, terms, grading, currency, timezone, language.
        features: Capacity limits and enabled modules.
        subscription_end: End of the paid subscription.
        status: School status.
    """

    school_id: str
    name: str
    slug: str
    creator: AdminContact
    motto: str | None = None
    address: dict[str, Any] = field(default_factory=dict)
    contact: dict[str, Any] = field(default_factory=dict)
    logo_url: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    features: dict[str, Any] = field(default_factory=dict)
    subscription_end: datetime | None = None
    status: str = "pending"


@dataclass(frozen=True)
class BuildStatusStats:
    """Aggregate figures for builds sharing a status."""

    status: BuildStatus
    count: int
    total_size: int
    avg_build_time_ms: float | None


class BuildRepository(ABC):
    """Persistence for BuildJob aggregates."""

    @abstractmethod
    async def add(self, build: BuildJob) -> None:
        """Insert a new build.

        Raises:
            DuplicateBuildError: If a build already exists for the order.
        """

    @abstractmethod
    async def get(self, build_id: str) -> BuildJob | None:
        """Load a build by id."""

    @abstractmethod
    async def get_by_order(self, order_id: str) -> BuildJob | None:
        """Load the build belonging to an order."""

    @abstractmethod
    async def save(self, build: BuildJob, expected_status: BuildStatus | None = None) -> bool:
        """Persist the aggregate.

        Args:
            build: Build to persist.
            expected_status: When given, only write if the stored status
                still equals it.

        Returns:
            False when expected_status did not match (nothing written).
        """

    @abstractmethod
    async def increment_download(self, build_id: str, now: datetime) -> BuildJob | None:
        """Atomically add one to download_count and set last_download_at."""

    @abstractmethod
    async def update_download_url(
        self,
        build_id: str,
        download_url: str,
        expected_status: BuildStatus = BuildStatus.COMPLETED,
    ) -> bool:
        """Replace download_url only, if the stored status is expected_status.

        Returns:
            False when nothing was written.
        """

    @abstractmethod
    async def cancel(
        self,
        build_id: str,
        expected_statuses: Iterable[BuildStatus],
        now: datetime,
    ) -> bool:
        """Set status cancelled and completed_at, touching no other field.

        Args:
            build_id: Build to cancel.
            expected_statuses: Only cancel while the stored status is one of these.
            now: Cancellation time.

        Returns:
            False when the stored status did not match (nothing written).
        """

    @abstractmethod
    async def fail_queued(self, build_id: str, error: str, now: datetime) -> bool:
        """Mark a build that never left queued as failed.

        Used when its job could not be enqueued or was dead-lettered before
        a worker claimed it, so the customer can retry it manually.

        Returns:
            False when the build is missing or no longer queued.
        """

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        status: BuildStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[BuildJob], int]:
        """Page through a user's builds, newest first."""

    @abstractmethod
    async def list_all(
        self,
        status: BuildStatus | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[BuildJob], int]:
        """Page through all builds, newest first."""

    @abstractmethod
    async def status_stats(self) -> list[BuildStatusStats]:
        """Count, total size and average build time per status."""


class OrderRepository(ABC):
    """Field-level access to orders."""

    @abstractmethod
    async def get(self, order_id: str) -> OrderSnapshot | None:
        """Load an order."""

    @abstractmethod
    async def find_buildable(self, order_id: str, user_id: str) -> OrderSnapshot | None:
        """Load an order owned by user_id whose payment is complete and confirmed."""

    @abstractmethod
    async def apply_build_update(
        self,
        order_id: str,
        update: OrderBuildUpdate,
        expected_statuses: frozenset[str] | None = None,
    ) -> bool:
        """Write a build outcome to an order.

        Args:
            order_id: Order to update.
            update: Fields to write.
            expected_statuses: When given, only update if the current order
                status is one of these.

        Returns:
            True if a row was updated.
        """


class SchoolRepository(ABC):
    """Field-level access to schools."""

    @abstractmethod
    async def get(self, school_id: str) -> SchoolSnapshot | None:
        """Load a school with its creator."""

    @abstractmethod
    async def activate(self, school_id: str, update: SchoolActivationUpdate) -> bool:
        """Record build metadata on a school and mark it active.

        Returns:
            True if a row was updated.
        """


class Notifier(ABC):
    """Delivers customer notifications on behalf of the build pipeline."""

    @abstractmethod
    async def notify(self, kind: str, recipient_email: str, data: dict[str, Any]) -> None:
        """Send (or schedule) one notification.

        Args:
            kind: Notification kind, e.g. "build-complete".
            recipient_email: Recipient address.
            data: Template variables.
        """


class BuildQueue(ABC):
    """Hands builds to the job queue."""

    @abstractmethod
    async def enqueue_build(self, build_id: str) -> str:
        """Enqueue a build-start request.

        Returns:
            Queue job id.
        """
