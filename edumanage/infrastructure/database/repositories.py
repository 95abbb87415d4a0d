# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""SQLAlchemy implementations of the build domain repositories.

Each method runs in its own short transaction. Conditional writes are
single UPDATE statements whose WHERE clause carries the expected state, so
two writers racing on the same row cannot both succeed.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edumanage.domains.build.entity import (
    ArtifactFile,
    BuildJob,
    BuildMetadata,
    BuildStage,
    BuildStatus,
    PackageTier,
    StageName,
    StageStatus,
)
from edumanage.domains.build.exceptions import DuplicateBuildError
from edumanage.domains.build.repository import (
    AdminContact,
    BuildRepository,
    BuildStatusStats,
    OrderRepository,
    OrderSnapshot,
    SchoolRepository,
    SchoolSnapshot,
)
from edumanage.infrastructure.database.connection import DatabaseError, get_session
from edumanage.infrastructure.database.models import (
    BuildRecord,
    OrderRecord,
    SchoolRecord,
    UserRecord,
)
from edumanage.models.build import OrderBuildUpdate, SchoolActivationUpdate
from edumanage.utils.datetime import ensure_utc, format_iso, parse_iso

logger = logging.getLogger(__name__)


# =============================================================================
# Mapping helpers
# =============================================================================


def _stage_to_dict(stage: BuildStage) -> dict[str, Any]:
    return {
        "name": stage.name.value,
        "status": stage.status.value,
        "started_at": format_iso(stage.started_at),
        "completed_at": format_iso(stage.completed_at),
        "error": stage.error,
    }


def _stage_from_dict(data: dict[str, Any]) -> BuildStage:
    return BuildStage(
        name=StageName(data["name"]),
        status=StageStatus(data["status"]),
        started_at=parse_iso(data["started_at"]),
        completed_at=parse_iso(data.get("completed_at")),
        error=data.get("error"),
    )


def _artifact_to_dict(artifact: ArtifactFile | None) -> dict[str, Any] | None:
    if artifact is None:
        return None
    return {
        "key": artifact.key,
        "url": artifact.url,
        "size": artifact.size,
        "checksum": artifact.checksum,
    }


def _artifact_from_dict(data: dict[str, Any] | None) -> ArtifactFile | None:
    if not data:
        return None
    return ArtifactFile(
        key=data["key"],
        url=data["url"],
        size=data["size"],
        checksum=data.get("checksum"),
    )


def _build_values(build: BuildJob) -> dict[str, Any]:
    """Column values for a build (everything except the primary key)."""
    metadata = build.metadata
    return {
        "order_id": build.order_id,
        "school_id": build.school_id,
        "user_id": build.user_id,
        "package": build.package.value,
        "status": build.status.value,
        "progress": build.progress,
        "stages": [_stage_to_dict(s) for s in build.stages],
        "download_url": build.download_url,
        "download_count": build.download_count,
        "last_download_at": build.last_download_at,
        "error": build.error,
        "created_at": build.created_at,
        "started_at": build.started_at,
        "completed_at": build.completed_at,
        "expires_at": build.expires_at,
        "build_time_ms": metadata.build_time_ms if metadata else None,
        "file_size": metadata.file_size if metadata else None,
        "version": metadata.version if metadata else None,
        "dependencies": list(metadata.dependencies) if metadata else [],
        "archive": _artifact_to_dict(build.archive),
        "database": _artifact_to_dict(build.database),
        "logs": list(build.logs),
    }


def _build_from_record(record: BuildRecord) -> BuildJob:
    metadata = None
    if record.build_time_ms is not None:
        metadata = BuildMetadata(
            build_time_ms=record.build_time_ms,
            file_size=record.file_size or 0,
            version=record.version or "",
            dependencies=tuple(record.dependencies or ()),
        )

    return BuildJob(
        build_id=record.build_id,
        order_id=record.order_id,
        school_id=record.school_id,
        user_id=record.user_id,
        package=PackageTier(record.package),
        status=BuildStatus(record.status),
        progress=record.progress,
        stages=[_stage_from_dict(s) for s in record.stages or []],
        download_url=record.download_url,
        download_count=record.download_count,
        last_download_at=ensure_utc(record.last_download_at),
        error=record.error,
        created_at=ensure_utc(record.created_at),
        started_at=ensure_utc(record.started_at),
        completed_at=ensure_utc(record.completed_at),
        expires_at=ensure_utc(record.expires_at),
        metadata=metadata,
        archive=_artifact_from_dict(record.archive),
        database=_artifact_from_dict(record.database),
        logs=list(record.logs or []),
    )


# =============================================================================
# Builds
# =============================================================================


class SqlBuildRepository(BuildRepository):
    """Build repository backed by the builds table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def add(self, build: BuildJob) -> None:
        try:
            async with get_session(self._sessionmaker) as session:
                session.add(BuildRecord(build_id=build.build_id, **_build_values(build)))
        except DatabaseError as e:
            if isinstance(e.original_error, IntegrityError):
                existing = await self.get_by_order(build.order_id)
                raise DuplicateBuildError(
                    build.order_id, existing.build_id if existing else None
                ) from e
            raise

    async def get(self, build_id: str) -> BuildJob | None:
        async with get_session(self._sessionmaker) as session:
            record = await session.get(BuildRecord, build_id)
            return _build_from_record(record) if record else None

    async def get_by_order(self, order_id: str) -> BuildJob | None:
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                select(BuildRecord).where(BuildRecord.order_id == order_id)
            )
            record = result.scalar_one_or_none()
            return _build_from_record(record) if record else None

    async def save(self, build: BuildJob, expected_status: BuildStatus | None = None) -> bool:
        stmt = update(BuildRecord).where(BuildRecord.build_id == build.build_id)
        if expected_status is not None:
            stmt = stmt.where(BuildRecord.status == BuildStatus(expected_status).value)

        async with get_session(self._sessionmaker) as session:
            result = await session.execute(stmt.values(**_build_values(build)))
            saved = result.rowcount == 1

        if not saved:
            logger.debug(
                "Build %s not saved, stored status is not %s",
                build.build_id,
                expected_status.value if expected_status else "present",
            )
        return saved

    async def increment_download(self, build_id: str, now: datetime) -> BuildJob | None:
        async with get_session(self._sessionmaker) as session:
            await session.execute(
                update(BuildRecord)
                .where(BuildRecord.build_id == build_id)
                .values(
                    download_count=BuildRecord.download_count + 1,
                    last_download_at=now,
                )
            )
        return await self.get(build_id)

    async def _update_where(self, build_id: str, statuses: Iterable[BuildStatus], **values: Any) -> bool:
        """Single UPDATE of the given columns while the status is one of statuses."""
        expected = [BuildStatus(s).value for s in statuses]
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                update(BuildRecord)
                .where(BuildRecord.build_id == build_id)
                .where(BuildRecord.status.in_(expected))
                .values(**values)
            )
            updated = result.rowcount == 1

        if not updated:
            logger.debug("Build %s not updated, stored status is not in %s", build_id, expected)
        return updated

    async def update_download_url(
        self,
        build_id: str,
        download_url: str,
        expected_status: BuildStatus = BuildStatus.COMPLETED,
    ) -> bool:
        return await self._update_where(build_id, [expected_status], download_url=download_url)

    async def cancel(
        self,
        build_id: str,
        expected_statuses: Iterable[BuildStatus],
        now: datetime,
    ) -> bool:
        return await self._update_where(
            build_id,
            expected_statuses,
            status=BuildStatus.CANCELLED.value,
            completed_at=now,
        )

    async def fail_queued(self, build_id: str, error: str, now: datetime) -> bool:
        return await self._update_where(
            build_id,
            [BuildStatus.QUEUED],
            status=BuildStatus.FAILED.value,
            error=error,
            completed_at=now,
        )

    async def list_for_user(
        self,
        user_id: str,
        status: BuildStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[BuildJob], int]:
        conditions = [BuildRecord.user_id == user_id]
        if status is not None:
            conditions.append(BuildRecord.status == BuildStatus(status).value)
        return await self._page(conditions, offset, limit)

    async def list_all(
        self,
        status: BuildStatus | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[BuildJob], int]:
        conditions = []
        if status is not None:
            conditions.append(BuildRecord.status == BuildStatus(status).value)
        if from_date is not None:
            conditions.append(BuildRecord.created_at >= from_date)
        if to_date is not None:
            conditions.append(BuildRecord.created_at <= to_date)
        return await self._page(conditions, offset, limit)

    async def _page(self, conditions: list, offset: int, limit: int) -> tuple[list[BuildJob], int]:
        async with get_session(self._sessionmaker) as session:
            total = await session.scalar(
                select(func.count()).select_from(BuildRecord).where(*conditions)
            )
            result = await session.execute(
                select(BuildRecord)
                .where(*conditions)
                .order_by(BuildRecord.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            builds = [_build_from_record(r) for r in result.scalars().all()]
        return builds, total or 0

    async def status_stats(self) -> list[BuildStatusStats]:
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                select(
                    BuildRecord.status,
                    func.count(),
                    func.coalesce(func.sum(BuildRecord.file_size), 0),
                    func.avg(BuildRecord.build_time_ms),
                ).group_by(BuildRecord.status)
            )
            rows = result.all()

        return [
            BuildStatusStats(
                status=BuildStatus(status),
                count=count,
                total_size=int(total_size),
                avg_build_time_ms=float(avg) if avg is not None else None,
            )
            for status, count, total_size, avg in rows
        ]


# =============================================================================
# Orders
# =============================================================================


def _order_from_record(record: OrderRecord) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=record.id,
        user_id=record.user_id,
        package_tier=PackageTier(record.package_tier),
        package_name=record.package_name,
        package_duration=record.package_duration,
        price=record.price,
        currency=record.currency,
        payment_status=record.payment_status,
        status=record.status,
        build_status=record.build_status,
        school_id=record.school_id,
        download_url=record.download_url,
    )


class SqlOrderRepository(OrderRepository):
    """Order repository backed by the orders table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, order_id: str) -> OrderSnapshot | None:
        async with get_session(self._sessionmaker) as session:
            record = await session.get(OrderRecord, order_id)
            return _order_from_record(record) if record else None

    async def find_buildable(self, order_id: str, user_id: str) -> OrderSnapshot | None:
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                select(OrderRecord).where(
                    OrderRecord.id == order_id,
                    OrderRecord.user_id == user_id,
                    OrderRecord.payment_status == "completed",
                    OrderRecord.status == "confirmed",
                )
            )
            record = result.scalar_one_or_none()
            return _order_from_record(record) if record else None

    async def apply_build_update(
        self,
        order_id: str,
        update_: OrderBuildUpdate,
        expected_statuses: frozenset[str] | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "build_status": update_.build_status,
            "status": update_.status,
        }
        if update_.download_url is not None:
            values["download_url"] = update_.download_url

        stmt = update(OrderRecord).where(OrderRecord.id == order_id)
        if expected_statuses:
            stmt = stmt.where(OrderRecord.status.in_(sorted(expected_statuses)))

        async with get_session(self._sessionmaker) as session:
            result = await session.execute(stmt.values(**values))
            return result.rowcount == 1


# =============================================================================
# Schools
# =============================================================================


class SqlSchoolRepository(SchoolRepository):
    """School repository backed by the schools table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, school_id: str) -> SchoolSnapshot | None:
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                select(SchoolRecord, UserRecord)
                .join(UserRecord, SchoolRecord.created_by == UserRecord.id)
                .where(SchoolRecord.id == school_id)
            )
            row = result.one_or_none()

        if row is None:
            return None
        school, creator = row
        return SchoolSnapshot(
            school_id=school.id,
            name=school.name,
            slug=school.slug,
            creator=AdminContact(
                user_id=creator.id,
                email=creator.email,
                full_name=creator.full_name,
            ),
            motto=school.motto,
            address=dict(school.address or {}),
            contact=dict(school.contact or {}),
            logo_url=school.logo_url,
            settings=dict(school.settings or {}),
            features=dict(school.features or {}),
            subscription_end=ensure_utc(school.subscription_end),
            status=school.status,
        )

    async def activate(self, school_id: str, update_: SchoolActivationUpdate) -> bool:
        async with get_session(self._sessionmaker) as session:
            result = await session.execute(
                update(SchoolRecord)
                .where(SchoolRecord.id == school_id)
                .values(
                    build_id=update_.build_id,
                    download_url=update_.download_url,
                    last_update=update_.last_update,
                    status=update_.status,
                )
            )
            return result.rowcount == 1
