"""Disk image preparation: validation, flasher handling, working copies, resize."""

from __future__ import annotations

import shlex
import shutil
import time
from pathlib import Path
from typing import List, Optional, Tuple, Union

from virtdev.arch import detect_architecture
from virtdev.config import Settings, get_cache_directory
from virtdev.constants import (
    DECOMPRESS_COMMANDS,
    DEVICE_TYPE_ARCH,
    FLASHER_INNER_DIR,
    FLASHER_INNER_SUFFIX,
    FLASHER_PARTITION_NAMES,
    MAGIC_BYTES,
    WORKING_COPY_PREFIX,
)
from virtdev.containers import Orchestrator
from virtdev.exceptions import EngineError, NotFoundError, ValidationError
from virtdev.models import (
    ExpandResult,
    ExtractFlasherResult,
    FlasherDetectionResult,
    ImageValidationResult,
)
from virtdev.partitions import (
    DISK_MOUNT,
    Partition,
    find_partition,
    list_directory,
    loop_script,
    read_partitions,
)
from virtdev.utils import ensure_directory, format_size, log, parse_size_string, read_head

PathLike = Union[str, Path]

_OUTPUT_MOUNT = "/tmp/output"
_RESIZE_MOUNT = "/tmp/image.img"


def validate_image_exists(path: PathLike) -> bool:
    return Path(path).is_file()


def get_file_size(path: PathLike) -> int:
    return Path(path).stat().st_size


def detect_image_format(path: PathLike) -> str:
    """Classify an image as ``gzip``, ``zip`` or ``raw`` from its first bytes."""
    head = read_head(Path(path), 4)
    for name, magic in MAGIC_BYTES.items():
        if head.startswith(magic):
            return name
    return "raw"


def validate_image_format(path: PathLike) -> None:
    fmt = detect_image_format(path)
    if fmt == "raw":
        return
    raise ValidationError(
        f"Image is {fmt}-compressed: {path}",
        hint=f'Decompress it first: {DECOMPRESS_COMMANDS[fmt]} "{path}"',
    )


def _locate_flasher(
    orchestrator: Orchestrator, path: PathLike
) -> Tuple[Optional[Partition], Optional[str]]:
    partitions = read_partitions(orchestrator, path)
    partition = find_partition(orchestrator, path, partitions, FLASHER_PARTITION_NAMES)
    if partition is None:
        return None, None
    for name in sorted(list_directory(orchestrator, path, partition, FLASHER_INNER_DIR)):
        if name.endswith(FLASHER_INNER_SUFFIX):
            return partition, name
    return partition, None


def detect_flasher_image(orchestrator: Orchestrator, path: PathLike) -> FlasherDetectionResult:
    """Report whether ``path`` is a flasher wrapping a nested OS image.

    Never raises: an unreadable table, missing partition or missing /opt all
    mean "not a flasher".
    """
    try:
        _partition, inner = _locate_flasher(orchestrator, path)
    except Exception as exc:
        log("DEBUG", f"Flasher detection failed for {path}: {exc}")
        return FlasherDetectionResult(is_flasher=False)
    if inner is None:
        return FlasherDetectionResult(is_flasher=False)
    return FlasherDetectionResult(is_flasher=True, inner_image_name=inner)


def _extraction_script(offset: int, inner_name: str) -> str:
    source = f"{FLASHER_INNER_DIR}/{inner_name}"
    target = f"{_OUTPUT_MOUNT}/extracted-{inner_name}"
    request = shlex.quote(f"dump {source} {target}")
    return loop_script(offset, f'debugfs -R {request} "$LOOP"')


def extract_flasher_image(
    orchestrator: Orchestrator,
    flasher_path: PathLike,
    dest_dir: PathLike,
) -> ExtractFlasherResult:
    """Dump the nested OS image out of a flasher using a privileged helper container.

    A partially written output file is removed when extraction fails.
    """
    flasher = Path(flasher_path).resolve()
    if not validate_image_exists(flasher):
        raise ValidationError(f"OS image not found at: {flasher}", hint="Check the path and try again.")
    dest = Path(dest_dir).resolve()
    ensure_directory(dest)

    try:
        partition, inner = _locate_flasher(orchestrator, flasher)
    except (OSError, ValueError) as exc:
        raise ValidationError(f"Cannot read partition table of {flasher}: {exc}") from exc
    if partition is None:
        raise NotFoundError(
            f"No flasher root partition ({', '.join(FLASHER_PARTITION_NAMES)}) in {flasher}"
        )
    if inner is None:
        raise NotFoundError(f"No *{FLASHER_INNER_SUFFIX} file in {FLASHER_INNER_DIR} of {flasher}")

    extracted = dest / f"extracted-{inner}"
    log("INFO", f"Extracting {inner} from flasher image (partition offset {partition.offset})")
    try:
        status, output = orchestrator.run_helper(
            ["sh", "-c", _extraction_script(partition.offset, inner)],
            binds=[f"{flasher}:{DISK_MOUNT}:ro", f"{dest}:{_OUTPUT_MOUNT}:rw"],
            privileged=True,
        )
        if status != 0:
            raise EngineError(f"Flasher extraction failed with exit code {status}", output)
        if not extracted.is_file():
            raise EngineError(f"Extraction finished but {extracted} was not created", output)
    except BaseException:
        extracted.unlink(missing_ok=True)
        raise
    log("SUCCESS", f"Extracted {inner} ({format_size(get_file_size(extracted))})")
    return ExtractFlasherResult(extracted_path=str(extracted), inner_image_name=inner)


def check_architecture_match(device_type: str, host_arch: str) -> Optional[str]:
    """Return a slowdown warning when the device type targets another CPU, else None."""
    expected = DEVICE_TYPE_ARCH.get(device_type)
    if expected is None or expected == host_arch:
        return None
    return (
        f"Device type {device_type} expects a {expected} host but this host is {host_arch}. "
        "The guest will run under full emulation and be significantly slower."
    )


def working_copy_path(source: PathLike, settings: Settings) -> Path:
    cache_dir = get_cache_directory(settings)
    millis = int(time.time() * 1000)
    return cache_dir / f"{WORKING_COPY_PREFIX}-{millis}-{Path(source).name}"


def create_working_copy(source: PathLike, settings: Settings) -> str:
    """Copy ``source`` byte-for-byte into the cache directory and return the copy's path."""
    if not validate_image_exists(source):
        raise ValidationError(f"OS image not found at: {source}")
    destination = working_copy_path(source, settings)
    log("INFO", f"Creating working copy {destination}")
    try:
        shutil.copyfile(source, destination)
    except BaseException:
        destination.unlink(missing_ok=True)
        raise
    log("SUCCESS", f"Working copy ready ({format_size(get_file_size(destination))})")
    return str(destination)


def remove_working_copy(path: PathLike) -> None:
    Path(path).unlink(missing_ok=True)


def expand_image(orchestrator: Orchestrator, path: PathLike, target_size: str) -> ExpandResult:
    """Grow a raw image in place to ``target_size``; never shrinks."""
    image = Path(path).resolve()
    if not validate_image_exists(image):
        raise ValidationError(f"OS image not found at: {image}", hint="Check the path and try again.")
    target = parse_size_string(target_size)
    current = get_file_size(image)
    if current >= target:
        message = f"Image is already {format_size(current)} (>= {target_size}); skipping expansion"
        log("INFO", message)
        return ExpandResult(expanded=False, final_size=current, message=message)

    log("INFO", f"Expanding {image.name} from {format_size(current)} to {target_size}")
    status, output = orchestrator.run_helper(
        ["qemu-img", "resize", "-f", "raw", _RESIZE_MOUNT, str(target)],
        binds=[f"{image}:{_RESIZE_MOUNT}:rw"],
    )
    if status != 0:
        raise EngineError(f"Image resize failed with exit code {status}", output)

    final = get_file_size(image)
    message = f"Expanded image from {format_size(current)} to {format_size(final)}"
    log("SUCCESS", message)
    return ExpandResult(expanded=True, final_size=final, message=message)


def validate_image(
    path: PathLike,
    settings: Settings,
    device_type: Optional[str] = None,
) -> ImageValidationResult:
    """Check a raw image and copy it into the cache; returns the copy and any warnings."""
    if not validate_image_exists(path):
        raise ValidationError(f"OS image not found at: {path}", hint="Check the path and try again.")
    validate_image_format(path)

    warnings: List[str] = []
    if device_type:
        warning = check_architecture_match(device_type, detect_architecture())
        if warning:
            log("WARN", warning)
            warnings.append(warning)
    return ImageValidationResult(working_copy_path=create_working_copy(path, settings), warnings=warnings)
