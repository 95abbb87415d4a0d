# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the artifact packager."""

import dataclasses
import json
import logging
import sys
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from edumanage.domains.build.entity import PackageTier
from edumanage.domains.build.exceptions import TemplateNotFoundError
from edumanage.domains.build.packager import ArtifactPackager
from edumanage.domains.build.templates import TemplateStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestWorkspace:
    """Tests for workspace handling."""

    @pytest.mark.asyncio
    async def test_prepare_workspace_starts_clean(self, packager: ArtifactPackager) -> None:
        first = await packager.prepare_workspace("BLD-1-ABCDEF")
        (first / "leftover.txt").write_text("from a failed run")

        second = await packager.prepare_workspace("BLD-1-ABCDEF")

        assert second == first
        assert list(second.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cleanup_removes_workspace_and_archive(self, packager: ArtifactPackager) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        archive = packager.archive_path("BLD-1-ABCDEF")
        archive.write_bytes(b"zip")

        await packager.cleanup(workspace, archive)

        assert not workspace.exists()
        assert not archive.exists()

    @pytest.mark.asyncio
    async def test_cleanup_of_missing_workspace_is_quiet(self, packager: ArtifactPackager, tmp_path: Path) -> None:
        await packager.cleanup(tmp_path / "never-created")


class TestStages:
    """Tests for the individual packaging stages."""

    @pytest.mark.asyncio
    async def test_copy_template_for_tier(self, packager: ArtifactPackager, templates_dir: Path) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")

        template = await packager.copy_template(PackageTier.MEDIUM, workspace)

        assert template == templates_dir / "medium"
        assert (workspace / "src" / "server.js").is_file()
        assert (workspace / "uploads").is_dir()

    @pytest.mark.asyncio
    async def test_copy_template_missing_everything(self, tmp_path: Path) -> None:
        packager = ArtifactPackager(TemplateStore(tmp_path / "none"), tmp_path / "builds")
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")

        with pytest.raises(TemplateNotFoundError):
            await packager.copy_template(PackageTier.SMALL, workspace)

    @pytest.mark.asyncio
    async def test_configure_system_writes_config(
        self, packager: ArtifactPackager, sample_school, sample_order
    ) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        await packager.configure_system(workspace, sample_school, sample_order, NOW)

        config = json.loads((workspace / "config" / "school.json").read_text())
        assert config["school"]["name"] == "Greenwood Academy"
        assert config["package"]["type"] == "medium"
        assert config["package"]["expires"] == "2026-01-01T00:00:00+00:00"
        assert config["admin"]["email"] == "admin@greenwood.example"
        assert config["system"]["buildDate"] == NOW.isoformat()

        manifest = json.loads((workspace / "package.json").read_text())
        assert manifest["name"] == "school-system-greenwood-academy"
        assert manifest["description"] == "School Management System for Greenwood Academy"

    def test_lifetime_package_never_expires(
        self, packager: ArtifactPackager, sample_school, sample_order
    ) -> None:
        order = dataclasses.replace(sample_order, package_duration="lifetime")

        config = packager.build_school_config(sample_school, order, NOW)

        assert config["package"]["expires"] is None

    @pytest.mark.asyncio
    async def test_env_file_has_fresh_secret(
        self, packager: ArtifactPackager, sample_school, sample_order, caplog
    ) -> None:
        secrets_seen = []
        for build_id in ("BLD-1-AAAAAA", "BLD-2-BBBBBB"):
            workspace = await packager.prepare_workspace(build_id)
            with caplog.at_level(logging.DEBUG):
                await packager.configure_system(workspace, sample_school, sample_order, NOW)
            env = (workspace / ".env.example").read_text()
            secret = next(line.split("=", 1)[1] for line in env.splitlines() if line.startswith("JWT_SECRET="))
            secrets_seen.append(secret)
            assert "CLIENT_URL=https://greenwood-academy.schoolsystem.com" in env

        assert all(len(s) == 64 for s in secrets_seen)
        assert secrets_seen[0] != secrets_seen[1]
        assert not any(s in caplog.text for s in secrets_seen)

    @pytest.mark.asyncio
    async def test_generate_database_seed(
        self, packager: ArtifactPackager, sample_school, sample_order
    ) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")

        seed_path = await packager.generate_database(workspace, sample_school, sample_order, NOW)

        seed = json.loads(seed_path.read_text())
        assert seed_path == workspace / "database" / "initial-data.json"
        assert seed["users"][0]["role"] == "admin"
        assert seed["users"][0]["email"] == "admin@greenwood.example"
        assert seed["school"]["creator"] == "user-1"
        assert seed["settings"]["gradingSystem"] == "letter"
        assert seed["system"]["package"] == "medium"


class TestDependencies:
    """Tests for the advisory dependency installation."""

    @pytest.mark.asyncio
    async def test_missing_manifest_is_skipped(self, packager: ArtifactPackager) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")

        result = await packager.install_dependencies(workspace)

        assert result.skipped
        assert not result.installed

    @pytest.mark.asyncio
    async def test_missing_installer_is_advisory(self, packager: ArtifactPackager, caplog) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        with caplog.at_level(logging.WARNING):
            result = await packager.install_dependencies(workspace)

        assert not result.installed
        assert not result.skipped
        assert "AdvisoryWarning" in caplog.text

    @pytest.mark.asyncio
    async def test_failing_installer_is_advisory(
        self, templates_dir: Path, tmp_path: Path
    ) -> None:
        packager = ArtifactPackager(
            TemplateStore(templates_dir),
            tmp_path / "builds",
            install_command=f'"{sys.executable}" -c "import sys; sys.exit(3)"',
        )
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        result = await packager.install_dependencies(workspace)

        assert not result.installed
        assert "exited with 3" in result.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("install_command", ["", "   "])
    async def test_blank_install_command_is_skipped(
        self, templates_dir: Path, tmp_path: Path, install_command: str
    ) -> None:
        packager = ArtifactPackager(
            TemplateStore(templates_dir),
            tmp_path / "builds",
            install_command=install_command,
        )
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        result = await packager.install_dependencies(workspace)

        assert result.skipped
        assert not result.installed
        assert result.message == "No install command configured"

    @pytest.mark.asyncio
    async def test_successful_installer(self, templates_dir: Path, tmp_path: Path) -> None:
        packager = ArtifactPackager(
            TemplateStore(templates_dir),
            tmp_path / "builds",
            install_command=f'"{sys.executable}" -c "pass"',
        )
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        result = await packager.install_dependencies(workspace)

        assert result.installed

    @pytest.mark.asyncio
    async def test_read_dependencies(self, packager: ArtifactPackager) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)

        assert await packager.read_dependencies(workspace) == ["express", "mongoose"]


class TestPackaging:
    """Tests for archive creation."""

    @pytest.mark.asyncio
    async def test_archive_contains_workspace(
        self, packager: ArtifactPackager, sample_school, sample_order
    ) -> None:
        workspace = await packager.prepare_workspace("BLD-1-ABCDEF")
        await packager.copy_template(PackageTier.MEDIUM, workspace)
        await packager.configure_system(workspace, sample_school, sample_order, NOW)

        archive_path = await packager.create_package("BLD-1-ABCDEF", workspace)

        assert archive_path == packager.archive_path("BLD-1-ABCDEF")
        with zipfile.ZipFile(archive_path) as archive:
            names = archive.namelist()
            assert "config/school.json" in names
            assert "src/server.js" in names
            assert "uploads/" in names
            assert archive.testzip() is None
        assert await packager.file_size(archive_path) > 0
        assert not archive_path.with_name(archive_path.name + ".partial").exists()

    @pytest.mark.asyncio
    async def test_file_size_of_missing_file(self, packager: ArtifactPackager, tmp_path: Path) -> None:
        assert await packager.file_size(tmp_path / "missing.zip") == 0
