# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Artifact packager: turns a tier template into a customer package.

Each build owns an isolated workspace at <builds_dir>/<build_id>. The
packager copies the tier template into it, writes the school's
configuration and seed data, optionally installs dependencies, and
compresses the workspace into <builds_dir>/<build_id>.zip.

Blocking filesystem work runs in worker threads so the event loop stays
free while large templates are copied or compressed.
"""

import asyncio
import json
import logging
import os
import secrets
import shlex
import shutil
import zipfile
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from edumanage.domains.build.entity import PackageTier
from edumanage.domains.build.exceptions import AdvisoryWarning
from edumanage.domains.build.repository import OrderSnapshot, SchoolSnapshot
from edumanage.domains.build.templates import TemplateStore
from edumanage.utils.datetime import utc_now

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = "zip"
CONFIG_DIR = "config"
SCHOOL_CONFIG_FILE = "school.json"
ENV_FILE = ".env.example"
DATABASE_DIR = "database"
SEED_FILE = "initial-data.json"

# 32 bytes = 256 bits of entropy for the generated application secret
SECRET_BYTES = 32


@dataclass(frozen=True)
class DependencyInstallResult:
    """Outcome of the advisory dependency installation step."""

    installed: bool
    skipped: bool = False
    message: str = ""


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")


def _copy_tree(source: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination, dirs_exist_ok=True)


def _zip_directory(source: Path, archive_path: Path) -> None:
    partial = archive_path.with_name(archive_path.name + ".partial")
    with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for root, dirs, files in os.walk(source):
            dirs.sort()
            root_path = Path(root)
            relative_root = root_path.relative_to(source)
            if not files and not dirs and relative_root != Path("."):
                # Keep empty directories so the extracted tree matches the workspace
                archive.writestr(f"{relative_root.as_posix()}/", "")
            for name in sorted(files):
                file_path = root_path / name
                archive.write(file_path, arcname=(relative_root / name).as_posix())
    partial.replace(archive_path)


class ArtifactPackager:
    """Builds customer packages inside per-build workspaces.

    Attributes:
        templates: Template store used to resolve tiers.
        builds_dir: Directory holding workspaces and archives.
    """

    def __init__(
        self,
        templates: TemplateStore,
        builds_dir: Path | str,
        system_version: str = "1.0.0",
        api_base_url: str = "http://localhost:5000",
        support_email: str = "support@edumanage.pro",
        client_domain: str = "schoolsystem.com",
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        dependency_manifest: str = "package.json",
        install_command: str = "npm install --production",
        dependency_timeout: float | None = 600.0,
    ) -> None:
        self.templates = templates
        self.builds_dir = Path(builds_dir)
        self._system_version = system_version
        self._api_base_url = api_base_url
        self._support_email = support_email
        self._client_domain = client_domain
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._manifest = dependency_manifest
        self._install_command = install_command
        self._dependency_timeout = dependency_timeout

    @property
    def system_version(self) -> str:
        """Version tag stamped into generated packages."""
        return self._system_version

    def workspace_for(self, build_id: str) -> Path:
        """Workspace directory owned by a build."""
        return self.builds_dir / build_id

    def archive_path(self, build_id: str) -> Path:
        """Local archive path for a build."""
        return self.builds_dir / f"{build_id}.{ARCHIVE_EXTENSION}"

    async def prepare_workspace(self, build_id: str) -> Path:
        """Create a clean workspace for a run.

        Leftovers from an earlier failed run of the same build are removed
        so a retry always starts from the template.
        """
        workspace = self.workspace_for(build_id)

        def _prepare() -> None:
            if workspace.exists():
                shutil.rmtree(workspace)
            workspace.mkdir(parents=True)

        await asyncio.to_thread(_prepare)
        return workspace

    # =========================================================================
    # Stage: copy_template
    # =========================================================================

    async def copy_template(self, tier: PackageTier | str, destination: Path) -> Path:
        """Copy the tier's template into destination.

        Returns:
            The template directory that was copied.

        Raises:
            TemplateNotFoundError: If no template (not even the fallback) exists.
        """
        template = self.templates.resolve(tier)
        await asyncio.to_thread(_copy_tree, template, destination)
        logger.info("Template %s copied to %s", template.name, destination)
        return template

    # =========================================================================
    # Stage: configuration
    # =========================================================================

    def build_school_config(
        self,
        school: SchoolSnapshot,
        order: OrderSnapshot,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Configuration document embedded in the package."""
        expires = None
        if order.package_duration != "lifetime":
            expires = school.subscription_end

        return {
            "school": {
                "id": school.school_id,
                "name": school.name,
                "motto": school.motto,
                "address": dict(school.address),
                "contact": dict(school.contact),
                "logo": school.logo_url or "",
                "settings": dict(school.settings),
                "features": dict(school.features),
            },
            "package": {
                "type": order.package_tier.value,
                "name": order.package_name,
                "expires": expires,
            },
            "admin": {
                "email": school.creator.email,
                "fullName": school.creator.full_name,
            },
            "system": {
                "version": self._system_version,
                "buildDate": (now or utc_now()).isoformat(),
                "apiBaseUrl": self._api_base_url,
                "supportEmail": self._support_email,
            },
        }

    def render_env_file(self, school: SchoolSnapshot, secret: str) -> str:
        """Environment file for the generated application."""
        lines = [
            f"# School Management System - {school.name}",
            "NODE_ENV=production",
            "PORT=3000",
            f"MONGODB_URI=mongodb://localhost:27017/school_{school.school_id}",
            f"JWT_SECRET={secret}",
            "JWT_EXPIRE=7d",
            f"CLIENT_URL=https://{school.slug}.{self._client_domain}",
            f"API_URL={self._api_base_url}",
            f"EMAIL_HOST={self._smtp_host}",
            f"EMAIL_PORT={self._smtp_port}",
            "UPLOAD_PATH=./uploads",
            "MAX_FILE_SIZE=10485760",
        ]
        return "\n".join(lines) + "\n"

    async def configure_system(
        self,
        workspace: Path,
        school: SchoolSnapshot,
        order: OrderSnapshot,
        now: datetime | None = None,
    ) -> list[Path]:
        """Write the school configuration into the workspace.

        Writes config/school.json and .env.example (with a freshly generated
        secret) and renames the manifest after the school when present.

        Returns:
            Paths written.
        """
        config = self.build_school_config(school, order, now)
        # The secret only ever lives in the workspace and the archive
        env_content = self.render_env_file(school, secrets.token_hex(SECRET_BYTES))
        config_path = workspace / CONFIG_DIR / SCHOOL_CONFIG_FILE
        env_path = workspace / ENV_FILE
        manifest_path = workspace / self._manifest

        def _write() -> list[Path]:
            written = [config_path, env_path]
            _write_json(config_path, config)
            env_path.write_text(env_content, encoding="utf-8")
            if manifest_path.is_file():
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                manifest["name"] = f"school-system-{school.slug}"
                manifest["description"] = f"School Management System for {school.name}"
                _write_json(manifest_path, manifest)
                written.append(manifest_path)
            return written

        written = await asyncio.to_thread(_write)
        logger.info("System configured for school %s", school.school_id)
        return written

    # =========================================================================
    # Stage: database
    # =========================================================================

    def build_seed_document(
        self,
        school: SchoolSnapshot,
        order: OrderSnapshot,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Initial-state seed document for the generated application."""
        moment = (now or utc_now()).isoformat()
        school_data = asdict(school)
        school_data["creator"] = school.creator.user_id
        settings = school.settings

        return {
            "users": [
                {
                    "email": school.creator.email,
                    "fullName": school.creator.full_name,
                    "role": "admin",
                    "school": school.school_id,
                    "createdAt": moment,
                }
            ],
            "school": school_data,
            "settings": {
                "academicYear": settings.get("academicYear"),
                "terms": settings.get("terms"),
                "gradingSystem": settings.get("gradingSystem", "percentage"),
            },
            "system": {
                "package": order.package_tier.value,
                "installedAt": moment,
                "version": self._system_version,
            },
        }

    async def generate_database(
        self,
        workspace: Path,
        school: SchoolSnapshot,
        order: OrderSnapshot,
        now: datetime | None = None,
    ) -> Path:
        """Write database/initial-data.json into the workspace.

        Returns:
            Path of the seed file.
        """
        seed_path = workspace / DATABASE_DIR / SEED_FILE
        document = self.build_seed_document(school, order, now)
        await asyncio.to_thread(_write_json, seed_path, document)
        return seed_path

    # =========================================================================
    # Stage: dependencies
    # =========================================================================

    async def install_dependencies(self, workspace: Path) -> DependencyInstallResult:
        """Install the template's runtime dependencies, best effort.

        Never raises for installer problems: a missing installer, a
        non-zero exit or a timeout are logged as AdvisoryWarning and the
        build carries on without installed dependencies.
        """
        if not (workspace / self._manifest).is_file():
            return DependencyInstallResult(installed=False, skipped=True, message="No dependency manifest")

        command = shlex.split(self._install_command)
        if not command:
            return DependencyInstallResult(installed=False, skipped=True, message="No install command configured")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return self._advisory(f"Dependency installer unavailable: {e}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._dependency_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return self._advisory(
                f"Dependency installation timed out after {self._dependency_timeout}s"
            )

        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-500:]
            return self._advisory(
                f"Dependency installation exited with {process.returncode}: {detail}"
            )

        logger.info("Dependencies installed in %s", workspace)
        return DependencyInstallResult(installed=True, message="Dependencies installed")

    def _advisory(self, message: str) -> DependencyInstallResult:
        logger.warning("%s: %s", AdvisoryWarning.__name__, message)
        return DependencyInstallResult(installed=False, message=message)

    async def read_dependencies(self, workspace: Path) -> list[str]:
        """Dependency names declared in the workspace manifest."""
        manifest_path = workspace / self._manifest

        def _read() -> list[str]:
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                return []
            dependencies = manifest.get("dependencies") or {}
            return list(dependencies.keys()) if isinstance(dependencies, dict) else []

        return await asyncio.to_thread(_read)

    # =========================================================================
    # Stage: packaging
    # =========================================================================

    async def create_package(self, build_id: str, workspace: Path) -> Path:
        """Compress the workspace into <builds_dir>/<build_id>.zip.

        Returns:
            Path of the archive.

        Raises:
            OSError: If the archive cannot be written.
        """
        archive_path = self.archive_path(build_id)
        await asyncio.to_thread(_zip_directory, workspace, archive_path)
        size = await self.file_size(archive_path)
        logger.info("Package created: %s (%d bytes)", archive_path, size)
        return archive_path

    async def file_size(self, path: Path) -> int:
        """Size of a file in bytes, 0 if it cannot be read."""
        try:
            stat = await asyncio.to_thread(path.stat)
        except OSError:
            return 0
        return stat.st_size

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup(self, workspace: Path, archive: Path | None = None) -> None:
        """Remove a workspace and its local archive. Failures are logged."""
        try:
            if archive is not None:
                await asyncio.to_thread(archive.unlink, True)
            if workspace.exists():
                await asyncio.to_thread(shutil.rmtree, workspace)
            logger.info("Cleaned up build directory: %s", workspace)
        except OSError as e:
            logger.warning("Failed to clean up build directory %s: %s", workspace, e)
