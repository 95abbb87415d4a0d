# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Read-only store of package-tier template directories.

Layout:
    <templates_dir>/small/
    <templates_dir>/medium/
    <templates_dir>/lifetime/
    <templates_dir>/enterprise/
    <templates_dir>/base-system/   (fallback for any tier without its own)
"""

import logging
from pathlib import Path

from edumanage.domains.build.entity import PackageTier
from edumanage.domains.build.exceptions import TemplateNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE = "base-system"


class TemplateStore:
    """Resolves package tiers to template directories.

    Attributes:
        root: Directory containing one subdirectory per template.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def resolve(self, tier: PackageTier | str) -> Path:
        """Return the template directory for a tier.

        Unknown tiers and tiers without their own directory resolve to the
        fallback template.

        Args:
            tier: Package tier (enum or raw string).

        Returns:
            Path of the template directory.

        Raises:
            TemplateNotFoundError: If the fallback template is missing too.
        """
        name = tier.value if isinstance(tier, PackageTier) else str(tier)
        candidate = self.root / name
        # Guard against tier strings that escape the template root
        if candidate.parent == self.root and candidate.is_dir():
            return candidate

        fallback = self.root / FALLBACK_TEMPLATE
        if fallback.is_dir():
            logger.info("No template for tier %s, using %s", name, FALLBACK_TEMPLATE)
            return fallback

        raise TemplateNotFoundError(
            f"No template for tier {name} and fallback {FALLBACK_TEMPLATE} is missing",
            details={"templates_dir": str(self.root)},
        )

    def available_tiers(self) -> list[str]:
        """List tiers that have their own template directory."""
        if not self.root.is_dir():
            return []
        tiers = {tier.value for tier in PackageTier}
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and p.name in tiers)

    def has_fallback(self) -> bool:
        """Whether the fallback template exists."""
        return (self.root / FALLBACK_TEMPLATE).is_dir()
