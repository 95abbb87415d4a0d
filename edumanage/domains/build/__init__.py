# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Build domain package.

This package provides the build pipeline:
- BuildJob aggregate and its state machine
- Template resolution and artifact packaging
- Artifact upload and signed download links
- The orchestrator that runs a build's six stages
- The service behind build, status and download operations

Services and the orchestrator are imported from their modules directly:

    from edumanage.domains.build.service import BuildService
    from edumanage.domains.build.orchestrator import BuildOrchestrator
"""

from edumanage.domains.build.entity import (
    PIPELINE_STAGES,
    STAGE_PROGRESS,
    ArtifactFile,
    BuildJob,
    BuildMetadata,
    BuildStage,
    BuildStatus,
    PackageTier,
    StageName,
    StageStatus,
)
from edumanage.domains.build.exceptions import (
    AccessDeniedError,
    AdvisoryWarning,
    BuildError,
    BuildNotFoundError,
    BuildNotReadyError,
    DownloadExpiredError,
    DownloadUnavailableError,
    DuplicateBuildError,
    InvalidStageError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    SchoolNotFoundError,
    StageError,
    TemplateNotFoundError,
)

__all__ = [
    "PIPELINE_STAGES",
    "STAGE_PROGRESS",
    "ArtifactFile",
    "BuildJob",
    "BuildMetadata",
    "BuildStage",
    "BuildStatus",
    "PackageTier",
    "StageName",
    "StageStatus",
    "AccessDeniedError",
    "AdvisoryWarning",
    "BuildError",
    "BuildNotFoundError",
    "BuildNotReadyError",
    "DownloadExpiredError",
    "DownloadUnavailableError",
    "DuplicateBuildError",
    "InvalidStageError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrderNotFoundError",
    "SchoolNotFoundError",
    "StageError",
    "TemplateNotFoundError",
]
