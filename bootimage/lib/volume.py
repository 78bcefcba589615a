from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..build_config import ConfigError
from .command import run_cmd
from .host import HDIUTIL, LOOP_MOUNT, HostPlatform

logger = logging.getLogger(__name__)

# FAT volume labels hold at most 11 characters.
FAT_LABEL_MAX = 11

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:?$")


@dataclass(frozen=True)
class ImageFile:
    path: Path
    size_mib: int
    label: str


@dataclass(frozen=True)
class RemovableDrive:
    drive: str

    @property
    def is_drive_letter(self) -> bool:
        return bool(_DRIVE_LETTER.match(self.drive))

    @property
    def source(self) -> str:
        if self.is_drive_letter:
            return self.drive.rstrip(":").upper() + ":"
        return self.drive


DeploymentTarget = Union[ImageFile, RemovableDrive]


@dataclass(frozen=True)
class VolumeHandle:
    """A filesystem at mount_point, backed by an image file or a device.

    attached=False (dry runs) means nothing may read or write through
    mount_point.
    """

    backing: str
    mount_point: Path
    fs_kind: str
    attached: bool = True


def require_drive(drive: Optional[str]) -> RemovableDrive:
    """Validate the drive argument for USB deployment (no side effects)."""

    if not drive:
        raise ConfigError("You have to specify the drive to install files to (e.g. `bootimage usb E`)")
    target = RemovableDrive(drive=drive)
    if not target.is_drive_letter and not Path(drive).exists():
        raise ConfigError(f"Drive {drive} does not exist")
    return target


def create_image(image: ImageFile, *, dry_run: bool = False) -> bool:
    """Allocate and format the raw FAT32 image unless it already exists."""

    if image.path.exists():
        logger.info("Reusing existing image %s", image.path)
        return False

    label = image.label.upper()[:FAT_LABEL_MAX]
    if not dry_run:
        image.path.parent.mkdir(parents=True, exist_ok=True)
    run_cmd(["qemu-img", "create", "-f", "raw", str(image.path), f"{image.size_mib}M"], dry_run=dry_run)
    # -s 2: sectors per cluster, -f 2: FAT copies, -R 32: reserved sectors
    run_cmd(
        ["mkfs.fat", "-n", label, "-s", "2", "-f", "2", "-R", "32", "-F", "32", str(image.path)],
        dry_run=dry_run,
    )
    logger.info("Created %s MiB FAT32 image %s (label=%s)", image.size_mib, image.path, label)
    return True


def _mount_drive(drive: RemovableDrive, mount_point: Path, *, host: HostPlatform, dry_run: bool) -> VolumeHandle:
    if drive.is_drive_letter:
        if host.mount_strategy != LOOP_MOUNT:
            raise ConfigError(f"Drive letters are only supported under WSL: {drive.drive}")
        handle = VolumeHandle(backing=drive.source, mount_point=mount_point, fs_kind="drvfs", attached=not dry_run)
        run_cmd(
            [*host.privileged, "mount", "-o", host.owner_options, "-t", handle.fs_kind, handle.backing, str(mount_point)],
            dry_run=dry_run,
        )
        return handle

    if host.mount_strategy == HDIUTIL:
        handle = VolumeHandle(backing=drive.source, mount_point=mount_point, fs_kind="msdos", attached=not dry_run)
        run_cmd(["diskutil", "mount", "-mountPoint", str(mount_point), handle.backing], dry_run=dry_run)
        return handle

    handle = VolumeHandle(backing=drive.source, mount_point=mount_point, fs_kind="vfat", attached=not dry_run)
    run_cmd(
        [*host.privileged, "mount", "-o", host.owner_options, handle.backing, str(mount_point)],
        dry_run=dry_run,
    )
    return handle


def attach(
    target: DeploymentTarget,
    mount_point: Path,
    *,
    host: HostPlatform,
    dry_run: bool = False,
) -> VolumeHandle:
    """Attach the deployment target at mount_point.

    Image files are created on first use. Removable drives are wiped after
    mounting.
    """

    if not dry_run:
        mount_point.mkdir(parents=True, exist_ok=True)

    if isinstance(target, RemovableDrive):
        handle = _mount_drive(target, mount_point, host=host, dry_run=dry_run)
        logger.info("Attached drive %s (%s) at %s", handle.backing, handle.fs_kind, mount_point)
        clear_contents(mount_point, dry_run=dry_run)
        return handle

    create_image(target, dry_run=dry_run)
    handle = VolumeHandle(backing=str(target.path), mount_point=mount_point, fs_kind="vfat", attached=not dry_run)
    if host.mount_strategy == HDIUTIL:
        run_cmd(["hdiutil", "attach", "-mountpoint", str(mount_point), handle.backing], dry_run=dry_run)
    else:
        run_cmd(
            [*host.privileged, "mount", "-o", host.owner_options, handle.backing, str(mount_point)],
            dry_run=dry_run,
        )
    logger.info("Attached image %s (%s) at %s", handle.backing, handle.fs_kind, mount_point)
    return handle


def clear_contents(mount_point: Path, *, dry_run: bool = False) -> None:
    """Delete everything below mount_point (destructive)."""

    if dry_run:
        logger.info("Would clear %s", mount_point)
        return

    for child in mount_point.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
    logger.info("Cleared %s", mount_point)


def is_mounted(mount_point: Path, *, dry_run: bool = False) -> bool:
    """True if mount_point is an active entry in the host mount table."""

    needle = str(mount_point.resolve())
    r = run_cmd(["mount"], check=False, dry_run=dry_run)
    for line in (r.stdout or "").splitlines():
        _, sep, rest = line.partition(" on ")
        if sep and (rest + " ").startswith(needle + " "):
            return True
    return False


def detach(mount_point: Path, *, host: HostPlatform, dry_run: bool = False) -> bool:
    """Unmount mount_point.

    Idempotent: a mount point that is not mounted (or never existed) is a
    no-op. Returns True when something was unmounted.
    """

    if not is_mounted(mount_point, dry_run=dry_run):
        logger.info("%s is not mounted", mount_point)
        return False

    if host.mount_strategy == HDIUTIL:
        run_cmd(["hdiutil", "detach", str(mount_point)], dry_run=dry_run)
    else:
        run_cmd([*host.privileged, "umount", str(mount_point)], dry_run=dry_run)
    logger.info("Detached %s", mount_point)
    return True
