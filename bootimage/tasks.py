from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from .lib.assemble import deploy_artifacts
from .lib.compiler import cargo_build, cargo_lint
from .lib.debuginfo import strip_debuginfo
from .lib.emulator import launch
from .lib.nvram import FirmwareVars
from .lib.volume import DeploymentTarget, ImageFile, attach, detach, require_drive
from .orchestrator import Action, Orchestrator, RunTask, Task, TaskContext

logger = logging.getLogger(__name__)

RELEASE_ENV = {"PROFILE": "release"}
USB_ENV = {"MAKE_USB": "1"}

# Tasks that never touch the mount point and may overlap with other runs.
LOCK_FREE_TASKS = {"check", "lint"}


def _artifact(ctx: TaskContext, key: str) -> Path:
    return ctx.cfg.member(key).artifact_path(ctx.env)


def _drive_arg(ctx: TaskContext) -> Optional[str]:
    return ctx.args[0] if ctx.args else None


def _deployment_target(ctx: TaskContext) -> DeploymentTarget:
    if "MAKE_USB" in ctx.env:
        return require_drive(_drive_arg(ctx))
    return ImageFile(
        path=ctx.env.path("DISK_IMG"),
        size_mib=ctx.cfg.image_size_mib,
        label=ctx.cfg.volume_label,
    )


def _firmware_vars(ctx: TaskContext) -> FirmwareVars:
    return FirmwareVars(path=ctx.env.path("OVMF_VARS"), template=ctx.env.path("DEFAULT_OVMF_VARS"))


def build_member(key: str, *, release: bool) -> Action:
    def action(ctx: TaskContext) -> None:
        cargo_build(
            ctx.cfg.member(key),
            ctx.env,
            cargo=ctx.cfg.cargo,
            release=release,
            dry_run=ctx.dry_run,
        )

    return action


def lint_members(subcommand: str) -> Action:
    def action(ctx: TaskContext) -> int:
        assert ctx.member is not None
        return cargo_lint(
            ctx.member,
            subcommand=subcommand,
            args=ctx.args,
            cargo=ctx.cfg.cargo,
            dry_run=ctx.dry_run,
        )

    return action


def strip_kernel(ctx: TaskContext) -> None:
    strip_debuginfo(_artifact(ctx, "kernel"), dry_run=ctx.dry_run)


def check_usb_arg(ctx: TaskContext) -> None:
    require_drive(_drive_arg(ctx))


def make_image_without_umount(ctx: TaskContext) -> None:
    target = _deployment_target(ctx)
    handle = attach(target, ctx.env.path("MOUNT_POINT"), host=ctx.host, dry_run=ctx.dry_run)
    deploy_artifacts(
        loader=_artifact(ctx, "loader"),
        kernel=_artifact(ctx, "kernel"),
        mount_point=handle.mount_point,
        settle_seconds=ctx.cfg.settle_seconds,
        dry_run=not handle.attached,
    )


def umount(ctx: TaskContext) -> None:
    detach(ctx.env.path("MOUNT_POINT"), host=ctx.host, dry_run=ctx.dry_run)


def ensure_firmware_vars(ctx: TaskContext) -> None:
    _firmware_vars(ctx).ensure(dry_run=ctx.dry_run)


def clean_firmware_vars(ctx: TaskContext) -> None:
    _firmware_vars(ctx).discard(dry_run=ctx.dry_run)


def run_emulator(ctx: TaskContext) -> int:
    return launch(
        host=ctx.host,
        firmware_vars=ctx.env.path("OVMF_VARS"),
        disk=ctx.env.path("DISK_IMG"),
        extra_args=ctx.args,
        emulator=ctx.cfg.emulator,
        dry_run=ctx.dry_run,
    )


def preflight(orch: Orchestrator, name: str, args: Sequence[str]) -> None:
    """Argument checks that must fail before the run takes the lock."""

    if "usb-arg-check" in orch.closure(name):
        require_drive(args[0] if args else None)


def _image_flow(without_umount: str) -> RunTask:
    return RunTask(names=(without_umount, "umount"), fork=True)


def build_tasks() -> List[Task]:
    """The static task graph. Built once per invocation, never mutated."""

    return [
        Task(
            name="default",
            description="Alias for make-image-release.",
            run_task=RunTask(names=("make-image-release",)),
        ),
        # static analysis
        Task(
            name="check",
            description="cargo check all crates.",
            action=lint_members("check"),
            workspace=True,
        ),
        Task(
            name="lint",
            description="cargo clippy to check all crates.",
            action=lint_members("clippy"),
            workspace=True,
        ),
        # members
        Task(name="loader-build", action=build_member("loader", release=False), private=True),
        Task(name="loader-release", action=build_member("loader", release=True), env=RELEASE_ENV, private=True),
        Task(
            name="kernel-build-with-debuginfo",
            action=build_member("kernel", release=False),
            private=True,
        ),
        Task(
            name="kernel-strip-debuginfo",
            action=strip_kernel,
            dependencies=("kernel-build-with-debuginfo",),
            private=True,
        ),
        Task(name="kernel-build", dependencies=("kernel-strip-debuginfo",), private=True),
        Task(name="kernel-release", action=build_member("kernel", release=True), env=RELEASE_ENV, private=True),
        Task(
            name="build",
            description="Build loader and kernel with debug profile.",
            run_task=RunTask(names=("loader-build", "kernel-build"), fork=True, parallel=True),
        ),
        Task(
            name="release",
            description="Build loader and kernel with release profile.",
            run_task=RunTask(names=("loader-release", "kernel-release"), fork=True, parallel=True),
            env=RELEASE_ENV,
        ),
        # image / usb
        Task(
            name="make-image-without-umount",
            action=make_image_without_umount,
            dependencies=("build",),
            private=True,
        ),
        Task(
            name="make-image-release-without-umount",
            action=make_image_without_umount,
            dependencies=("release",),
            env=RELEASE_ENV,
            private=True,
        ),
        Task(
            name="make-image",
            description="Make boot image file with debug profile.",
            run_task=_image_flow("make-image-without-umount"),
            cleanup="umount",
        ),
        Task(
            name="make-image-release",
            description="Make boot image file with release profile.",
            run_task=_image_flow("make-image-release-without-umount"),
            cleanup="umount",
        ),
        Task(
            name="usb",
            description="Make a USB media a boot device with debug profile.",
            dependencies=("usb-arg-check",),
            run_task=_image_flow("make-image-without-umount"),
            cleanup="umount",
            env=USB_ENV,
        ),
        Task(
            name="release-usb",
            description="Make a USB media a boot device with release profile.",
            dependencies=("usb-arg-check",),
            run_task=_image_flow("make-image-release-without-umount"),
            cleanup="umount",
            env=USB_ENV,
        ),
        Task(name="usb-arg-check", action=check_usb_arg, private=True),
        Task(
            name="umount",
            description="Unmount boot image file from mnt directory.",
            action=umount,
        ),
        # firmware vars / emulator
        Task(name="check-firmware-vars", action=ensure_firmware_vars, private=True),
        Task(
            name="clean-firmware-vars",
            description="Remove the OVMF_VARS.fd file.",
            action=clean_firmware_vars,
        ),
        Task(
            name="run",
            description="Run kernel in qemu with debug profile.",
            action=run_emulator,
            dependencies=("make-image", "check-firmware-vars"),
        ),
        Task(
            name="release-run",
            description="Run kernel in qemu with release profile.",
            action=run_emulator,
            dependencies=("make-image-release", "check-firmware-vars"),
        ),
    ]
