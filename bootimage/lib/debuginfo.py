from __future__ import annotations

import logging
from pathlib import Path

from .command import run_cmd

logger = logging.getLogger(__name__)


def debug_sidecar(binary: Path) -> Path:
    return binary.with_name(binary.name + ".debug")


def has_symbols(binary: Path, *, dry_run: bool = False) -> bool:
    # A stripped binary makes nm print "no symbols" on stderr and nothing on stdout.
    r = run_cmd(["nm", str(binary)], check=False, dry_run=dry_run)
    first = (r.stdout or "").splitlines()[:1]
    return bool(first and first[0].strip())


def strip_debuginfo(binary: Path, *, dry_run: bool = False) -> bool:
    """Move symbols out of `binary` into `<binary>.debug`.

    Idempotent: a binary without symbols is left alone and so is any
    existing sidecar. Returns True when symbols were stripped.
    """

    if not has_symbols(binary, dry_run=dry_run):
        logger.info("No symbols in %s; nothing to strip", binary)
        return False

    sidecar = debug_sidecar(binary)
    run_cmd(["objcopy", "--only-keep-debug", str(binary), str(sidecar)], dry_run=dry_run)
    run_cmd(["strip", "--strip-all", str(binary)], dry_run=dry_run)
    logger.info("Stripped %s (symbols kept in %s)", binary, sidecar)
    return True
