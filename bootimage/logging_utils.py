from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_LOG_PATH = "target/bootimage.log"

FILE_HANDLER = "bootimage-file"
CONSOLE_HANDLER = "bootimage-console"

_FILE_FORMAT = logging.Formatter(
    fmt="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)
_CONSOLE_FORMAT = logging.Formatter(fmt="%(levelname)s %(message)s")


def _installed(root: logging.Logger, name: str) -> Optional[logging.Handler]:
    for h in root.handlers:
        if h.get_name() == name:
            return h
    return None


def _open_log(log_path: Path) -> logging.FileHandler:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        # Read-only checkout or missing permissions.
        return logging.FileHandler(Path.cwd() / log_path.name, encoding="utf-8")


def configure_logging(
    log_path: str = DEFAULT_LOG_PATH,
    level: int = logging.INFO,
    also_console: bool = True,
) -> str:
    """Route every command and task decision to `log_path`, plus stderr.

    Safe to call once per run in the same process: the handlers are found by
    name, and the file handler is reopened only when the path changes.
    Returns the file actually written to.
    """

    root = logging.getLogger()
    root.setLevel(level)

    file_handler = _installed(root, FILE_HANDLER)
    if file_handler is not None and file_handler.baseFilename != os.path.abspath(log_path):
        root.removeHandler(file_handler)
        file_handler.close()
        file_handler = None
    if file_handler is None:
        file_handler = _open_log(Path(log_path))
        file_handler.set_name(FILE_HANDLER)
        file_handler.setFormatter(_FILE_FORMAT)
        root.addHandler(file_handler)

    if also_console and _installed(root, CONSOLE_HANDLER) is None:
        console = logging.StreamHandler()
        console.set_name(CONSOLE_HANDLER)
        console.setFormatter(_CONSOLE_FORMAT)
        root.addHandler(console)

    logging.getLogger(__name__).debug("Logging to %s", file_handler.baseFilename)
    return file_handler.baseFilename
