from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from ..build_config import Env, TargetProfile
from .command import run_cmd

logger = logging.getLogger(__name__)


def cargo_build(
    member: TargetProfile,
    env: Env,
    *,
    cargo: str = "cargo",
    release: bool = False,
    dry_run: bool = False,
) -> Path:
    """Build one workspace member and return its artifact path."""

    argv = [cargo, "build"]
    if release:
        argv.append("--release")
    if member.cargo_config:
        argv += ["--config", member.cargo_config]

    run_cmd(argv, cwd=member.crate_dir, capture=False, dry_run=dry_run)

    artifact = member.artifact_path(env)
    logger.info("Built %s -> %s", member.key, artifact)
    return artifact


def cargo_lint(
    member: TargetProfile,
    *,
    subcommand: str,
    args: Sequence[str] = (),
    cargo: str = "cargo",
    dry_run: bool = False,
) -> int:
    """Run `cargo check` / `cargo clippy` for a member; returns its status."""

    argv = [cargo, subcommand, f"--target={member.target}", *args]
    r = run_cmd(argv, cwd=member.crate_dir, check=False, capture=False, dry_run=dry_run)
    if r.returncode != 0:
        logger.warning("cargo %s failed for %s (status=%s)", subcommand, member.key, r.returncode)
    return r.returncode
