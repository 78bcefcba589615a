from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def load_record(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    if _detect_format(p) == "json":
        data = json.loads(p.read_text(encoding="utf-8"))
    else:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Run record must be an object/dict, got {type(data)}")
    return data


def save_record(path: str, record: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if _detect_format(p) == "json":
        p.write_text(json.dumps(record, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    else:
        p.write_text(yaml.safe_dump(record, sort_keys=False) + "\n", encoding="utf-8")
    logger.debug("Saved run record %s", p)


def new_record(entry: str, args: Any, previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fresh record for one invocation; a summary of the last run is kept under `previous`."""

    record: Dict[str, Any] = {
        "entry": entry,
        "args": list(args),
        "ran_tasks": [],
        "cleanups": [],
        "errors": [],
        "exit_code": None,
    }
    if previous:
        record["previous"] = {k: previous.get(k) for k in ("entry", "args", "exit_code")}
    return record


def record_error(record: Dict[str, Any], *, task: Any, error: BaseException) -> None:
    record.setdefault("errors", []).append({"task": task, "type": type(error).__name__, "error": str(error)})
