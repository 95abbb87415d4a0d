# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- In-memory repositories standing in for the SQL ones
- Fake object storage, notifier and build queue
- Template directories and a packager/orchestrator wired to them
"""

import json
import os
from pathlib import Path

# Every test process uses the in-process broker with short delays
os.environ.setdefault("DRAMATIQ_TEST_MODE", "true")
os.environ.setdefault("QUEUE_BUILD_BACKOFF_MS", "10")
os.environ.setdefault("QUEUE_NOTIFICATION_BACKOFF_MS", "10")
os.environ.setdefault("QUEUE_PAUSE_POLL_MS", "50")

import pytest

from edumanage.domains.build.orchestrator import BuildOrchestrator
from edumanage.domains.build.packager import ArtifactPackager
from edumanage.domains.build.repository import OrderSnapshot, SchoolSnapshot
from edumanage.domains.build.service import BuildService
from edumanage.domains.build.templates import FALLBACK_TEMPLATE, TemplateStore
from edumanage.domains.build.uploader import StorageUploader

from tests.fakes import (
    FakeNotifier,
    FakeQueue,
    FakeStorage,
    InMemoryBuildRepository,
    InMemoryOrderRepository,
    InMemorySchoolRepository,
    make_order,
    make_school,
)


# =============================================================================
# Records and fakes
# =============================================================================


@pytest.fixture
def sample_order() -> OrderSnapshot:
    """A paid, confirmed medium-tier order with a school."""
    return make_order()


@pytest.fixture
def sample_school() -> SchoolSnapshot:
    return make_school()


@pytest.fixture
def builds() -> InMemoryBuildRepository:
    return InMemoryBuildRepository()


@pytest.fixture
def orders(sample_order: OrderSnapshot) -> InMemoryOrderRepository:
    return InMemoryOrderRepository([sample_order])


@pytest.fixture
def schools(sample_school: SchoolSnapshot) -> InMemorySchoolRepository:
    return InMemorySchoolRepository([sample_school])


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def build_queue() -> FakeQueue:
    return FakeQueue()


# =============================================================================
# Templates and pipeline components
# =============================================================================


def write_template(root: Path, name: str, dependencies: dict[str, str] | None = None) -> Path:
    """Create a minimal application template directory."""
    template = root / name
    (template / "src").mkdir(parents=True)
    (template / "uploads").mkdir()
    (template / "src" / "server.js").write_text("console.log('school system');\n")
    (template / "README.md").write_text(f"# {name} template\n")
    manifest = {
        "name": "school-system",
        "version": "1.0.0",
        "dependencies": dependencies if dependencies is not None else {"express": "^4.18.0"},
    }
    (template / "package.json").write_text(json.dumps(manifest, indent=2))
    return template


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Templates root with a medium tier and the fallback template."""
    root = tmp_path / "templates"
    write_template(root, FALLBACK_TEMPLATE)
    write_template(root, "medium", {"express": "^4.18.0", "mongoose": "^7.0.0"})
    return root


@pytest.fixture
def packager(templates_dir: Path, tmp_path: Path) -> ArtifactPackager:
    """Packager whose installer command does not exist (advisory path)."""
    return ArtifactPackager(
        TemplateStore(templates_dir),
        tmp_path / "builds",
        system_version="1.0.0",
        install_command="edumanage-missing-installer --production",
        dependency_timeout=5.0,
    )


@pytest.fixture
def uploader(storage: FakeStorage) -> StorageUploader:
    return StorageUploader(storage, timeout=10.0)


@pytest.fixture
def orchestrator(builds, orders, schools, packager, uploader, notifier) -> BuildOrchestrator:
    return BuildOrchestrator(builds, orders, schools, packager, uploader, notifier)


@pytest.fixture
def build_service(builds, orders, schools, uploader, build_queue) -> BuildService:
    return BuildService(builds, orders, schools, uploader, build_queue)


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
