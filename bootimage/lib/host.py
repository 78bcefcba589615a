from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from typing import Optional

DARWIN = "Darwin"

FIRMWARE_CODE_BY_FAMILY = {
    DARWIN: "/usr/local/share/OVMF-X64/OVMF_CODE-pure-efi.fd",
}
DEFAULT_FIRMWARE_CODE = "/usr/share/OVMF/OVMF_CODE.fd"

# Mount strategies
HDIUTIL = "hdiutil"
LOOP_MOUNT = "mount"


@dataclass(frozen=True)
class HostPlatform:
    """Everything host-specific, resolved once per invocation."""

    family: str
    firmware_code: str
    uid: int
    gid: int
    is_root: bool

    @property
    def is_darwin(self) -> bool:
        return self.family == DARWIN

    @property
    def mount_strategy(self) -> str:
        # hdiutil attaches images natively; everything else loop-mounts.
        return HDIUTIL if self.is_darwin else LOOP_MOUNT

    @property
    def use_kvm(self) -> bool:
        # macOS has no KVM; qemu there needs hvf instead.
        return not self.is_darwin

    @property
    def privileged(self) -> list[str]:
        return [] if self.is_root else ["sudo"]

    @property
    def owner_options(self) -> str:
        return f"uid={self.uid},gid={self.gid}"


def detect_host(*, firmware_code: Optional[str] = None, family: Optional[str] = None) -> HostPlatform:
    fam = family or platform.system()
    uid = os.getuid() if hasattr(os, "getuid") else 0
    gid = os.getgid() if hasattr(os, "getgid") else 0
    euid = os.geteuid() if hasattr(os, "geteuid") else uid
    return HostPlatform(
        family=fam,
        firmware_code=firmware_code or FIRMWARE_CODE_BY_FAMILY.get(fam, DEFAULT_FIRMWARE_CODE),
        uid=uid,
        gid=gid,
        is_root=euid == 0,
    )
