# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pydantic models for build operations.

Request models validate input at the service boundary. Update models are
the only way the build pipeline writes to order and school records: one
model per operation, each naming exactly the fields that operation may
touch.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from edumanage.domains.build.entity import BuildStatus, PackageTier, StageStatus

OrderStatus = Literal["pending", "confirmed", "processing", "completed", "failed", "cancelled"]
OrderBuildStatus = Literal["pending", "queued", "processing", "completed", "failed", "cancelled"]


# =============================================================================
# Requests
# =============================================================================


class BuildListQuery(BaseModel):
    """Pagination and filters for listing builds."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    status: BuildStatus | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None

    @property
    def offset(self) -> int:
        """Row offset for the requested page."""
        return (self.page - 1) * self.limit


# =============================================================================
# Typed updates for external records
# =============================================================================


class OrderBuildUpdate(BaseModel):
    """Build outcome written back to an order."""

    model_config = ConfigDict(frozen=True)

    build_status: OrderBuildStatus
    status: OrderStatus
    download_url: str | None = None


class SchoolActivationUpdate(BaseModel):
    """Build result written back to a school after a successful build."""

    model_config = ConfigDict(frozen=True)

    build_id: str
    download_url: str
    last_update: datetime
    status: Literal["active"] = "active"


# =============================================================================
# Responses
# =============================================================================


class BuildCreatedResponse(BaseModel):
    """Result of accepting an order for building."""

    success: bool = True
    build_id: str
    job_id: str | None = None
    message: str = "Build queued successfully"


class BuildStageResponse(BaseModel):
    """One stage in a status response."""

    name: str
    status: StageStatus
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class BuildStatusResponse(BaseModel):
    """Status snapshot for polling clients."""

    build_id: str
    order_id: str
    school_id: str
    package: PackageTier
    status: BuildStatus
    progress: int
    stages: list[BuildStageResponse]
    download_url: str | None = None
    download_count: int = 0
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_time_remaining: int = 0


class BuildLogsResponse(BaseModel):
    """Stage history and log lines of a build."""

    build_id: str
    status: BuildStatus
    logs: list[str]
    stages: list[BuildStageResponse]
    error: str | None = None


class Pagination(BaseModel):
    """Pagination block of list responses."""

    page: int
    limit: int
    total: int
    pages: int


class BuildStatsEntry(BaseModel):
    """Aggregate figures for builds sharing a status."""

    status: BuildStatus
    count: int
    total_size: int = 0
    avg_build_time_ms: float | None = None


class BuildListResponse(BaseModel):
    """Page of builds."""

    builds: list[BuildStatusResponse]
    pagination: Pagination
    stats: list[BuildStatsEntry] | None = None


class DownloadInfoResponse(BaseModel):
    """Download details handed to the customer."""

    build_id: str
    school_name: str | None = None
    package: PackageTier
    status: BuildStatus
    download_url: str | None = None
    download_count: int
    last_download_at: datetime | None = None
    file_size: int | None = None
    version: str | None = None
    expires_at: datetime | None = None
    installation_guide: str


class DownloadLinkResponse(BaseModel):
    """A freshly signed download link."""

    build_id: str
    download_url: str
    message: str = "New download link generated"


class DownloadAvailabilityResponse(BaseModel):
    """Whether a build's artifact can be downloaded right now."""

    available: bool
    status: BuildStatus
    expires_at: datetime | None = None
    download_count: int


class DispatchResult(BaseModel):
    """Outcome of one orchestrator dispatch, returned to the queue."""

    build_id: str
    status: BuildStatus
    skipped: bool = False
    download_url: str | None = None
    message: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)
