from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

DEFAULT_CONFIG_PATH = "bootimage.yaml"

_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(ValueError):
    """Bad invocation or configuration; raised before any side effect."""


class Env(Mapping):
    """Immutable key/value table with ${KEY} template references.

    Values are stored unexpanded so that a child table can shadow a key
    (e.g. PROFILE) and every template built on it follows.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None) -> None:
        self._values: Dict[str, str] = {str(k): str(v) for k, v in (values or {}).items()}

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Env({self._values!r})"

    def child(self, overrides: Optional[Mapping[str, str]]) -> "Env":
        if not overrides:
            return self
        merged = dict(self._values)
        merged.update({str(k): str(v) for k, v in overrides.items()})
        return Env(merged)

    def resolve(self, key: str) -> str:
        return self._resolve(key, ())

    def expand(self, template: str) -> str:
        return self._expand(template, ())

    def path(self, key: str) -> Path:
        return Path(self.resolve(key))

    def _resolve(self, key: str, stack: Tuple[str, ...]) -> str:
        if key in stack:
            raise ConfigError(f"Environment reference cycle: {' -> '.join(stack + (key,))}")
        if key not in self._values:
            raise ConfigError(f"Unknown environment key: {key}")
        return self._expand(self._values[key], stack + (key,))

    def _expand(self, template: str, stack: Tuple[str, ...]) -> str:
        return _REF.sub(lambda m: self._resolve(m.group(1), stack), template)


@dataclass(frozen=True)
class TargetProfile:
    """One compiled workspace member and where its artifact lands."""

    key: str
    crate_dir: str
    target: str
    artifact: str
    cargo_config: Optional[str] = None

    @property
    def path_key(self) -> str:
        return f"{self.key.upper()}_PATH"

    @property
    def path_template(self) -> str:
        return "${TARGET_DIR}/" + self.target + "/${PROFILE}/" + self.artifact

    def artifact_path(self, env: Env) -> Path:
        return env.path(self.path_key)


DEFAULT_MEMBERS: Dict[str, Dict[str, Any]] = {
    "loader": {"dir": "loader", "target": "x86_64-unknown-uefi", "name": "loader.efi"},
    "kernel": {
        "dir": "kernel",
        "target": "x86_64-unknown-none",
        "name": "kernel",
        "config": "./.cargo/config.toml",
    },
}


@dataclass(frozen=True)
class BuildConfig:
    raw: Dict[str, Any]

    @property
    def project_name(self) -> str:
        return str(self.raw.get("project_name") or Path.cwd().name)

    @property
    def volume_label(self) -> str:
        return self.project_name.upper()

    @property
    def target_dir(self) -> str:
        return str(self.raw.get("target_dir") or "target")

    @property
    def image_size_mib(self) -> int:
        return int(self.raw.get("image_size_mib") or 200)

    @property
    def settle_seconds(self) -> float:
        value = self.raw.get("settle_seconds")
        return 0.5 if value is None else float(value)

    @property
    def cargo(self) -> str:
        return str(self.raw.get("cargo") or "cargo")

    @property
    def emulator(self) -> str:
        return str(self.raw.get("emulator") or "qemu-system-x86_64")

    @property
    def firmware_code(self) -> Optional[str]:
        code = (self.raw.get("firmware") or {}).get("code")
        return str(code) if code else None

    @property
    def firmware_template(self) -> str:
        return str(((self.raw.get("firmware") or {}).get("template")) or "DEFAULT_OVMF_VARS.fd")

    @property
    def firmware_vars(self) -> str:
        return str(((self.raw.get("firmware") or {}).get("vars")) or "${TARGET_DIR}/OVMF_VARS.fd")

    @property
    def members(self) -> List[TargetProfile]:
        configured = self.raw.get("members") or {}
        if not isinstance(configured, dict):
            raise ConfigError("members must be a mapping of member name to settings")
        out: List[TargetProfile] = []
        for key in ("loader", "kernel"):
            m = dict(DEFAULT_MEMBERS[key])
            m.update(configured.get(key) or {})
            out.append(
                TargetProfile(
                    key=key,
                    crate_dir=str(m["dir"]),
                    target=str(m["target"]),
                    artifact=str(m["name"]),
                    cargo_config=str(m["config"]) if m.get("config") else None,
                )
            )
        return out

    def member(self, key: str) -> TargetProfile:
        for m in self.members:
            if m.key == key:
                return m
        raise ConfigError(f"Unknown workspace member: {key}")

    def env(self) -> Env:
        """Base environment table every task starts from."""

        values: Dict[str, str] = {
            "PROJECT_NAME": self.project_name,
            "TARGET_DIR": self.target_dir,
            "PROFILE": "debug",
            "DISK_IMG": str(self.raw.get("disk_image") or "${TARGET_DIR}/disk.img"),
            "MOUNT_POINT": str(self.raw.get("mount_point") or "${TARGET_DIR}/mnt"),
            "DEFAULT_OVMF_VARS": self.firmware_template,
            "OVMF_VARS": self.firmware_vars,
        }
        for m in self.members:
            prefix = m.key.upper()
            values[f"{prefix}_TARGET"] = m.target
            values[m.path_key] = m.path_template

        extra = self.raw.get("env") or {}
        if not isinstance(extra, dict):
            raise ConfigError("env must be a mapping")
        return Env(values).child(extra)


def load_build_config(path: str) -> BuildConfig:
    """Load bootimage.yaml; a missing file means all defaults."""

    p = Path(path)
    if not p.exists():
        return BuildConfig(raw={})

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError("build config must be YAML")

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping/object")

    return BuildConfig(raw=raw)
