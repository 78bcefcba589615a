from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FirmwareVars:
    """Mutable OVMF variable store, seeded from a read-only template."""

    path: Path
    template: Path

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    def ensure(self, *, dry_run: bool = False) -> bool:
        """Copy the template into place if the store is missing.

        Never overwrites: an existing store keeps its NVRAM state. Returns
        True when the store was created.
        """

        if self.exists:
            logger.info("Firmware vars present: %s", self.path)
            return False
        if not self.template.is_file():
            raise FileNotFoundError(str(self.template))

        if dry_run:
            logger.info("Would copy %s -> %s", self.template, self.path)
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.template, self.path)
        logger.info("Created firmware vars %s from %s", self.path, self.template)
        return True

    def discard(self, *, dry_run: bool = False) -> bool:
        """Delete the store so the next launch starts from the template."""

        if not self.exists:
            return False
        if dry_run:
            logger.info("Would remove %s", self.path)
            return True
        self.path.unlink()
        logger.info("Removed firmware vars %s", self.path)
        return True
