"""Host and guest CPU architecture detection for virtdev."""

from __future__ import annotations

import platform
from pathlib import Path
from typing import Optional, Union

from virtdev.constants import (
    ARM64_EFI_MARKER,
    GUEST_ARCH_SCAN_BYTES,
    HOST_ARCH_ALIASES,
    SUPPORTED_HOST_ARCHES,
)
from virtdev.exceptions import ValidationError

_SCAN_CHUNK = 4 * 1024 * 1024


def detect_architecture(machine: Optional[str] = None) -> str:
    """Map the host CPU architecture onto ``x64`` or ``arm64``."""
    raw = machine if machine is not None else platform.machine()
    normalized = HOST_ARCH_ALIASES.get(raw.strip().lower())
    if normalized is None:
        supported = ", ".join(SUPPORTED_HOST_ARCHES)
        raise ValidationError(
            f"Unsupported host architecture '{raw}'.",
            hint=f"Supported architectures: {supported}",
        )
    return normalized


def detect_guest_arch(image_path: Union[str, Path]) -> str:
    """Return ``aarch64`` if the image carries an ARM64 EFI loader, else ``x86_64``.

    Only the first 100 MB are scanned; the EFI partition sits near the start
    of the disk.
    """
    overlap = len(ARM64_EFI_MARKER) - 1
    remaining = GUEST_ARCH_SCAN_BYTES
    tail = b""
    with open(image_path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(_SCAN_CHUNK, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            if ARM64_EFI_MARKER in tail + chunk:
                return "aarch64"
            tail = chunk[-overlap:]
    return "x86_64"
