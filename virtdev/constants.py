"""Global constants and fixed names for virtdev."""

from __future__ import annotations

import os
import re
from pathlib import Path

ASSETS_DIR = Path(__file__).resolve().parent / "assets"

# Every managed container is named <CONTAINER_PREFIX><ordinal>-<epoch seconds>.
CONTAINER_PREFIX = "balenaos-vm-"
DOCKER_IMAGE_NAME = "balena-qemu-runner"

DEFAULT_SSH_BASE_PORT = 22222
GUEST_SSH_PORT = 22222
GUEST_SSH_PORT_KEY = f"{GUEST_SSH_PORT}/tcp"

# In-container path the working copy is bind-mounted at.
WORKING_IMAGE_MOUNT = "/tmp/balena-os.img"
WORKING_COPY_PREFIX = "virt-working"

DEFAULT_MEMORY_MB = 2048
DEFAULT_CPUS = 4
DEFAULT_DATA_SIZE = "8G"
DEFAULT_STOP_TIMEOUT = 10
DEFAULT_CREATE_RETRIES = 3

DEFAULT_CONFIG_PATH = Path("~/.virtdev/config.yml")

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = (
    os.environ.get("VIRTDEV_LOG_VERBOSE", os.environ.get("LOG_VERBOSE", "")).lower() in TRUTHY
)

# Magic prefixes for compressed images that must be unpacked before use.
MAGIC_BYTES = {
    "gzip": b"\x1f\x8b",
    "zip": b"\x50\x4b\x03\x04",
}

DECOMPRESS_COMMANDS = {
    "gzip": "gunzip",
    "zip": "unzip",
}

SIZE_STRING_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGT]B?)?$", re.IGNORECASE)
SIZE_MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}

# Flasher images carry the real OS image in /opt of their rootA partition.
FLASHER_PARTITION_NAMES = ("flash-rootA", "resin-rootA", "balena-rootA")
FLASHER_INNER_DIR = "/opt"
FLASHER_INNER_SUFFIX = ".balenaos-img"

# Guest firmware marker: ARM64 EFI loader name.
ARM64_EFI_MARKER = b"BOOTAA64"
GUEST_ARCH_SCAN_BYTES = 100 * 1024 * 1024

HOST_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv8": "arm64",
    "armv8l": "arm64",
}
SUPPORTED_HOST_ARCHES = ("x64", "arm64")

DEVICE_TYPE_ARCH = {
    "generic-amd64": "x64",
    "generic-aarch64": "arm64",
}

# Docker platform string per host architecture.
DOCKER_PLATFORMS = {
    "x64": "linux/amd64",
    "arm64": "linux/arm64",
}

KVM_DEVICE = Path("/dev/kvm")

# Environment variables understood by the runner's entry.sh.
ENV_MEMORY = "MEMORY"
ENV_CPUS = "CPUS"
ENV_ACCEL = "QEMU_ACCEL"
ENV_GUEST_ARCH = "GUEST_ARCH"

CTRL_C = 0x03
CTRL_P = 0x10
CTRL_Q = 0x11

NOT_FOUND_HINT = "Use list_instances() to see the available virtual devices."
