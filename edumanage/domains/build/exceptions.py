# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Custom exceptions for the build domain.

This module defines the exception hierarchy for build operations:
- BuildError: Base exception for all build-related errors
- DuplicateBuildError: A build already exists for the order
- NotFoundError: A referenced build, order or school is missing
- StageError: A pipeline stage failed
- InvalidTransitionError: A state machine rule was violated
- TemplateNotFoundError: No template (not even the fallback) is available
- BuildNotReadyError: The order cannot be built yet
- DownloadUnavailableError / DownloadExpiredError: Download refused
- AccessDeniedError: Caller lacks the required role
- AdvisoryWarning: Non-fatal dependency installation problem
"""


class BuildError(Exception):
    """Base exception for all build-related errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
    """

    def __init__(self, message: str, details: dict | None = None):
        """Initialize build error.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation with details if available."""
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class DuplicateBuildError(BuildError):
    """A build already exists for the order.

    Callers treat this as non-fatal and surface the existing build id.

    Attributes:
        order_id: Order that already has a build.
        existing_build_id: Build id of the existing build, when known.
    """

    def __init__(self, order_id: str, existing_build_id: str | None = None):
        self.order_id = order_id
        self.existing_build_id = existing_build_id
        super().__init__(f"Build already exists for order {order_id}")


class NotFoundError(BuildError):
    """A referenced record is missing. Fatal to the run, never retried."""


class BuildNotFoundError(NotFoundError):
    """Build record not found (or not visible to the caller)."""

    def __init__(self, build_id: str):
        self.build_id = build_id
        super().__init__(f"Build not found: {build_id}")


class OrderNotFoundError(NotFoundError):
    """Order referenced by a build is missing."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class SchoolNotFoundError(NotFoundError):
    """School referenced by a build is missing."""

    def __init__(self, school_id: str):
        self.school_id = school_id
        super().__init__(f"School not found: {school_id}")


class StageError(BuildError):
    """A pipeline stage failed.

    Always terminal for the current run. The message is the captured
    error verbatim so operators see what actually went wrong.

    Attributes:
        stage: Name of the failing stage.
    """

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message, details={"stage": stage})

    def __str__(self) -> str:
        return self.message


class InvalidTransitionError(BuildError):
    """Requested build status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        message = f"Cannot transition build from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidStageError(BuildError):
    """Stage bookkeeping rule violated (e.g. the same stage opened twice)."""


class TemplateNotFoundError(BuildError):
    """Neither the tier template nor the fallback template exists."""


class BuildNotReadyError(BuildError):
    """The order is unpaid, unconfirmed, or has no school yet."""


class DownloadUnavailableError(BuildError):
    """The build has no downloadable artifact (not completed)."""


class DownloadExpiredError(BuildError):
    """The build's download window has closed."""


class AdvisoryWarning(UserWarning):
    """Non-fatal problem that is logged but never aborts a build."""


class AccessDeniedError(BuildError):
    """The caller lacks the role required for the operation."""
