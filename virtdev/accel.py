"""QEMU accelerator selection for virtdev."""

from __future__ import annotations

import enum
import os
import sys
from pathlib import Path
from typing import Optional

from virtdev.constants import KVM_DEVICE
from virtdev.models import AcceleratorInfo


class HostPlatform(str, enum.Enum):
    LINUX = "linux"
    MACOS = "darwin"
    WINDOWS = "win32"
    OTHER = "other"

    @classmethod
    def current(cls, raw: Optional[str] = None) -> "HostPlatform":
        value = raw if raw is not None else sys.platform
        if value.startswith("linux"):
            return cls.LINUX
        if value == "darwin":
            return cls.MACOS
        if value in {"win32", "cygwin"}:
            return cls.WINDOWS
        return cls.OTHER


def _software_only(description: str, warning: Optional[str] = None) -> AcceleratorInfo:
    return AcceleratorInfo(accel="tcg", kvm_available=False, description=description, warning=warning)


def _detect_linux(kvm_path: Path) -> AcceleratorInfo:
    if not kvm_path.exists():
        return _software_only("software emulation (TCG) - KVM not available")
    if not os.access(kvm_path, os.R_OK | os.W_OK):
        return _software_only(
            "software emulation (TCG) - KVM permission denied",
            warning=(
                "KVM device exists but is not accessible. "
                'You may need to add your user to the "kvm" group: sudo usermod -aG kvm $USER'
            ),
        )
    return AcceleratorInfo(
        accel="kvm:tcg",
        kvm_available=True,
        description="KVM hardware acceleration with TCG fallback",
    )


def detect_accelerators(
    host_platform: Optional[HostPlatform] = None,
    kvm_path: Path = KVM_DEVICE,
) -> AcceleratorInfo:
    """Pick the accelerator chain QEMU should use inside the runner container.

    macOS and Windows hosts never expose HVF/WHPX to containers, so they
    always get TCG. Linux gets ``kvm:tcg`` when /dev/kvm is readable and
    writable by this process.
    """
    if host_platform is None:
        host_platform = HostPlatform.current()

    if host_platform is HostPlatform.LINUX:
        return _detect_linux(kvm_path)
    if host_platform is HostPlatform.MACOS:
        return _software_only("software emulation (TCG) - HVF not available in containers")
    if host_platform is HostPlatform.WINDOWS:
        return _software_only("software emulation (TCG) - WHPX not available in containers")
    return _software_only(f"software emulation (TCG) - unknown platform: {sys.platform}")
