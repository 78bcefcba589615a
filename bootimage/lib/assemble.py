from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Default boot path UEFI firmware probes on removable media (x86_64).
LOADER_DEPLOY_PATH = Path("EFI/BOOT/BOOTx64.EFI")
KERNEL_DEPLOY_PATH = Path("kernel")


@dataclass(frozen=True)
class Deployed:
    loader: Path
    kernel: Path


def deploy_artifacts(
    *,
    loader: Path,
    kernel: Path,
    mount_point: Path,
    settle_seconds: float = 0.5,
    dry_run: bool = False,
) -> Deployed:
    """Copy loader and kernel into the mounted volume at their boot paths."""

    out = Deployed(loader=mount_point / LOADER_DEPLOY_PATH, kernel=mount_point / KERNEL_DEPLOY_PATH)

    for src in (loader, kernel):
        if not dry_run and not src.exists():
            raise FileNotFoundError(str(src))

    if dry_run:
        logger.info("Would copy %s -> %s", loader, out.loader)
        logger.info("Would copy %s -> %s", kernel, out.kernel)
        return out

    for src, dst in ((loader, out.loader), (kernel, out.kernel)):
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        logger.info("Copied %s -> %s", src, dst)

    # Host filesystems flush asynchronously; give it a moment before unmount.
    if settle_seconds > 0:
        time.sleep(settle_seconds)
    return out
