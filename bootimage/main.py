from __future__ import annotations

import argparse
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from .build_config import DEFAULT_CONFIG_PATH, ConfigError, load_build_config
from .lib.host import HostPlatform, detect_host
from .lib.lock import RunLocked, run_lock
from .logging_utils import configure_logging
from .orchestrator import Orchestrator, TaskFailed
from .run_record import load_record, new_record, record_error, save_record
from .tasks import LOCK_FREE_TASKS, build_tasks, preflight

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def _exit_code(status: int) -> int:
    # Children killed by a signal report -N.
    if status < 0:
        return 128 - status
    return status


def run(
    *,
    task: str,
    args: Sequence[str] = (),
    config_path: str = DEFAULT_CONFIG_PATH,
    log_path: Optional[str] = None,
    record_path: Optional[str] = None,
    dry_run: bool = False,
    verbose: bool = False,
    host: Optional[HostPlatform] = None,
) -> int:
    """Run one entry point and return the process exit code."""

    cfg = load_build_config(config_path)
    target_dir = Path(cfg.target_dir)
    configure_logging(
        log_path=log_path or str(target_dir / "bootimage.log"),
        level=logging.DEBUG if verbose else logging.INFO,
    )

    host = host or detect_host(firmware_code=cfg.firmware_code)
    orch = Orchestrator(build_tasks(), cfg=cfg, host=host, dry_run=dry_run)

    record_path = record_path or str(target_dir / "bootimage-run.json")
    record = new_record(task, args, previous=load_record(record_path))
    exit_code = 1

    try:
        orch.entry(task)
        preflight(orch, task, args)
        with contextlib.ExitStack() as stack:
            if task not in LOCK_FREE_TASKS:
                stack.enter_context(run_lock(target_dir / ".bootimage.lock"))
            result = orch.run(task, args)
        exit_code = result.status
        logger.info("%s finished", task)
    except (ConfigError, RunLocked) as e:
        logger.error("%s", e)
        record_error(record, task=task, error=e)
    except TaskFailed as e:
        logger.error("%s", e)
        record_error(record, task=e.task, error=e)
        exit_code = _exit_code(e.status)
    except KeyboardInterrupt as e:
        logger.error("Interrupted; pending cleanups have run")
        record_error(record, task=task, error=e)
        exit_code = EXIT_INTERRUPTED
    except Exception as e:
        logger.exception("%s failed", task)
        record_error(record, task=task, error=e)
        raise
    finally:
        record["ran_tasks"] = list(orch.journal.ran)
        record["cleanups"] = list(orch.journal.cleanups)
        record["exit_code"] = exit_code
        save_record(record_path, record)

    return exit_code


def _raise_interrupt(signum, _frame) -> None:
    # Unwind through the orchestrator so cleanups (umount) still run.
    raise KeyboardInterrupt(f"signal {signum}")


def _print_tasks() -> int:
    for t in sorted((t for t in build_tasks() if not t.private), key=lambda t: t.name):
        print(f"{t.name:24} {t.description}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="bootimage",
        description="Build, deploy and run a UEFI loader + kernel boot image.",
    )
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to bootimage.yaml")
    p.add_argument("--log", default=None, help="Log file (default: <target_dir>/bootimage.log)")
    p.add_argument("--record", default=None, help="Run record (json|yaml, default: <target_dir>/bootimage-run.json)")
    p.add_argument("--dry-run", action="store_true", help="Log commands without executing them")
    p.add_argument("--list", action="store_true", help="List invocable tasks")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("task", nargs="?", default="default", help="Task to run (default: make-image-release)")
    p.add_argument("args", nargs=argparse.REMAINDER, help="Arguments forwarded to the task")

    args = p.parse_args(argv)

    if args.list:
        return _print_tasks()

    forwarded = list(args.args)
    if forwarded[:1] == ["--"]:
        forwarded = forwarded[1:]

    signal.signal(signal.SIGTERM, _raise_interrupt)

    try:
        return run(
            task=args.task,
            args=forwarded,
            config_path=args.config,
            log_path=args.log,
            record_path=args.record,
            dry_run=bool(args.dry_run),
            verbose=bool(args.verbose),
        )
    except ConfigError as e:
        # Config file problems surface before logging is set up.
        print(f"bootimage: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
