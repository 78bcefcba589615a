from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

from .command import run_cmd
from .host import HostPlatform

logger = logging.getLogger(__name__)

MACHINE_OPTIONS = [
    "-monitor", "stdio",
    "-machine", "q35",
    "-cpu", "max",
    "-smp", "4",
    "-device", "nec-usb-xhci,id=xhci",
    "-m", "256M",
    # gdb stub on tcp::1234
    "-s",
]


def qemu_argv(
    *,
    host: HostPlatform,
    firmware_vars: Path,
    disk: Path,
    extra_args: Sequence[str] = (),
    emulator: str = "qemu-system-x86_64",
) -> List[str]:
    argv = [
        emulator,
        "-drive", f"if=pflash,format=raw,readonly=on,file={host.firmware_code}",
        "-drive", f"if=pflash,format=raw,file={firmware_vars}",
        "-drive", f"if=ide,index=0,media=disk,format=raw,file={disk}",
        *MACHINE_OPTIONS,
        *extra_args,
    ]
    if host.use_kvm:
        argv.append("-enable-kvm")
    return argv


def launch(
    *,
    host: HostPlatform,
    firmware_vars: Path,
    disk: Path,
    extra_args: Sequence[str] = (),
    emulator: str = "qemu-system-x86_64",
    dry_run: bool = False,
) -> int:
    """Run the emulator in the foreground and return its exit status."""

    if not dry_run and not firmware_vars.is_file():
        raise FileNotFoundError(f"Firmware vars missing: {firmware_vars}")

    argv = qemu_argv(
        host=host,
        firmware_vars=firmware_vars,
        disk=disk,
        extra_args=extra_args,
        emulator=emulator,
    )
    r = run_cmd(argv, check=False, capture=False, dry_run=dry_run)
    logger.info("Emulator exited with status %s", r.returncode)
    return r.returncode
