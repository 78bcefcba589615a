from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from bootimage.build_config import BuildConfig
from bootimage.lib import command
from bootimage.lib.host import HostPlatform

SYMBOL_MARKER = b"<symtab>"
TEMPLATE_BYTES = b"OVMF-VARS-TEMPLATE" + bytes(range(32))


class FakeTools:
    """Stands in for cargo, nm/objcopy/strip, qemu-img, mkfs.fat, mount and qemu."""

    def __init__(self, cfg: BuildConfig) -> None:
        self.cfg = cfg
        self.calls: List[Tuple[List[str], Optional[str]]] = []
        self.mounts: Dict[str, str] = {}
        self.qemu_status = 0
        self.lint_status: Dict[str, int] = {}
        self.fail: Dict[str, int] = {}
        self.build_delay: Dict[str, float] = {}
        self._lock = threading.Lock()

    # helpers

    def commands(self) -> List[List[str]]:
        return [argv for argv, _ in self.calls]

    def names(self) -> List[str]:
        out = []
        for argv in self.commands():
            args = argv[1:] if argv[0] == "sudo" else argv
            out.append(" ".join(args[:2]) if args[0] in {"cargo", "qemu-img"} else args[0])
        return out

    def _member_for(self, cwd: Optional[str]):
        for m in self.cfg.members:
            if m.crate_dir == cwd:
                return m
        raise AssertionError(f"cargo run outside a member crate: {cwd}")

    def _artifact(self, member, profile: str) -> Path:
        return Path(self.cfg.target_dir) / member.target / profile / member.artifact

    # subprocess.run replacement

    def __call__(self, argv, text=True, stdout=None, stderr=None, cwd=None, env=None, **kw):
        with self._lock:
            self.calls.append((list(argv), cwd))
        args = list(argv[1:]) if argv[0] == "sudo" else list(argv)
        tool = args[0]
        rc, out, err = self.fail.get(tool, 0), "", ""
        if rc and not (tool == "mount" and len(args) == 1):
            return subprocess.CompletedProcess(argv, rc, stdout="", stderr=f"{tool} failed")

        if tool == "cargo":
            member = self._member_for(cwd)
            sub = args[1]
            if sub == "build":
                profile = "release" if "--release" in args else "debug"
                delay = self.build_delay.get(member.key)
                if delay:
                    time.sleep(delay)
                path = self._artifact(member, profile)
                path.parent.mkdir(parents=True, exist_ok=True)
                body = f"{member.key}-{profile}".encode()
                if member.key == "kernel":
                    body += SYMBOL_MARKER
                path.write_bytes(body)
            else:
                rc = self.lint_status.get(member.key, 0)
        elif tool == "nm":
            data = Path(args[1]).read_bytes()
            if SYMBOL_MARKER in data:
                out = "0000000000000000 T _start\n"
            else:
                err = f"nm: {args[1]}: no symbols\n"
        elif tool == "objcopy":
            src, dst = Path(args[2]), Path(args[3])
            dst.write_bytes(b"debug:" + src.read_bytes())
        elif tool == "strip":
            p = Path(args[2])
            p.write_bytes(p.read_bytes().replace(SYMBOL_MARKER, b""))
        elif tool == "qemu-img":
            with open(args[4], "wb") as fh:
                fh.truncate(int(args[5].rstrip("M")) * 1024 * 1024)
        elif tool == "mkfs.fat":
            pass
        elif tool == "mount" and len(args) == 1:
            rc = 0
            out = "".join(f"{src} on {mp} type vfat (rw)\n" for mp, src in self.mounts.items())
        elif tool == "mount":
            self.mounts[str(Path(args[-1]).resolve())] = args[-2]
        elif tool == "hdiutil" and args[1] == "attach":
            self.mounts[str(Path(args[3]).resolve())] = args[4]
        elif tool == "diskutil":
            self.mounts[str(Path(args[3]).resolve())] = args[4]
        elif tool in {"umount"} or (tool == "hdiutil" and args[1] == "detach"):
            mp = str(Path(args[-1]).resolve())
            if mp not in self.mounts:
                rc, err = 32, f"umount: {mp}: not mounted"
            self.mounts.pop(mp, None)
        elif tool == "qemu-system-x86_64":
            rc = self.qemu_status
        else:
            raise AssertionError(f"unexpected command {argv}")

        if stdout is None:
            out, err = None, None
        return subprocess.CompletedProcess(argv, rc, stdout=out, stderr=err)


@pytest.fixture
def host() -> HostPlatform:
    return HostPlatform(
        family="Linux",
        firmware_code="/usr/share/OVMF/OVMF_CODE.fd",
        uid=1000,
        gid=1000,
        is_root=False,
    )


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "DEFAULT_OVMF_VARS.fd").write_bytes(TEMPLATE_BYTES)
    return tmp_path


@pytest.fixture
def cfg(project: Path) -> BuildConfig:
    return BuildConfig(
        raw={
            "project_name": "mikanos",
            "target_dir": str(project / "target"),
            "settle_seconds": 0,
            "firmware": {"template": str(project / "DEFAULT_OVMF_VARS.fd")},
        }
    )


@pytest.fixture
def tools(cfg: BuildConfig, monkeypatch) -> FakeTools:
    fake = FakeTools(cfg)
    monkeypatch.setattr(command.subprocess, "run", fake)
    return fake
