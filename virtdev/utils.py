"""Utility functions for virtdev."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from virtdev.constants import (
    _LOG_VERBOSE,
    SIZE_MULTIPLIERS,
    SIZE_STRING_RE,
)
from virtdev.exceptions import ValidationError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ValidationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ValidationError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_size_string(size: str) -> int:
    """Parse ``<number>[K|M|G|T][B]`` (case-insensitive) into a byte count.

    Suffixes are binary: ``8G`` is ``8 * 1024**3``. ``16GB`` and ``16G`` are
    the same size. A bare number is taken as bytes.
    """
    match = SIZE_STRING_RE.match(size.strip())
    if not match:
        raise ValidationError(
            f'Invalid size format: "{size}".',
            hint='Expected format: <number>[K|M|G|T] (e.g. "8G", "2048M")',
        )
    value = float(match.group(1))
    unit = (match.group(2) or "").upper().replace("B", "")
    return int(value * SIZE_MULTIPLIERS[unit])


def format_size(num_bytes: int) -> str:
    """Format a byte count in decimal units, e.g. ``8.0 GB``."""
    value = float(num_bytes)
    for unit in ("B", "kB", "MB", "GB", "TB"):
        if value < 1000 or unit == "TB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1000
    return f"{value:.1f} TB"  # pragma: no cover


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def read_head(path: Path, length: int) -> bytes:
    """Return at most ``length`` bytes from the start of ``path``."""
    with open(path, "rb") as f:
        return f.read(length)
