"""Partition and filesystem inspection of raw disk images.

The image is bind-mounted read-only into a helper container built from the
runner image, where util-linux (``sfdisk``, ``blkid``, ``losetup``) and
e2fsprogs (``debugfs``) do the parsing.
"""

from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from virtdev.containers import Orchestrator
from virtdev.utils import log

DISK_MOUNT = "/tmp/flasher.img"
SECTOR_SIZE = 512
# sfdisk prints dos types without the 0x prefix
EXTENDED_TYPES = {"5", "f", "85"}


@dataclass
class Partition:
    index: int  # 1-4 primary, 5+ logical (MBR); 1..n (GPT)
    offset: int  # bytes from start of image
    size: int  # bytes
    type: str  # dos type or GPT type GUID, as sfdisk reports it
    name: Optional[str] = None  # GPT partition name

    @property
    def is_extended(self) -> bool:
        return self.type.lower() in EXTENDED_TYPES


def _disk_bind(image: Union[str, Path]) -> str:
    return f"{Path(image).resolve()}:{DISK_MOUNT}:ro"


def parse_partition_table(output: str) -> List[Partition]:
    """Decode ``sfdisk --json`` output.

    Raises ValueError when the output holds no partition table.
    """
    start, end = output.find("{"), output.rfind("}")
    if start < 0 or end < start:
        raise ValueError(f"No partition table found: {output.strip()}")
    try:
        table = json.loads(output[start:end + 1])["partitiontable"]
    except (ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"Unreadable partition table: {exc}") from exc

    sector_size = int(table.get("sectorsize", SECTOR_SIZE))
    partitions: List[Partition] = []
    for position, entry in enumerate(table.get("partitions") or [], start=1):
        match = re.search(r"(\d+)$", entry.get("node", ""))
        partitions.append(
            Partition(
                index=int(match.group(1)) if match else position,
                offset=int(entry["start"]) * sector_size,
                size=int(entry["size"]) * sector_size,
                type=str(entry.get("type", "")),
                name=entry.get("name") or None,
            )
        )
    return partitions


def parse_labels(output: str) -> Dict[int, str]:
    """Map partition offsets to filesystem labels from ``<offset> <label>`` lines."""
    labels: Dict[int, str] = {}
    for line in output.splitlines():
        offset, _, label = line.strip().partition(" ")
        if offset.isdigit() and label.strip():
            labels[int(offset)] = label.strip()
    return labels


def parse_directory_listing(output: str) -> List[str]:
    """Entry names from ``debugfs -R "ls -p"`` output, without ``.`` and ``..``."""
    names = []
    for line in output.splitlines():
        # /inode/mode/uid/gid/name/size/
        fields = line.strip().split("/")
        if len(fields) < 7 or fields[0] != "":
            continue
        if fields[5] not in ("", ".", ".."):
            names.append(fields[5])
    return names


def read_partitions(orchestrator: Orchestrator, image: Union[str, Path]) -> List[Partition]:
    status, output = orchestrator.run_helper(
        ["sfdisk", "--json", DISK_MOUNT], binds=[_disk_bind(image)]
    )
    if status != 0:
        raise ValueError(f"No partition table found in {image}: {output.strip()}")
    return parse_partition_table(output)


def read_labels(
    orchestrator: Orchestrator, image: Union[str, Path], partitions: Iterable[Partition]
) -> Dict[int, str]:
    """Filesystem labels of every non-extended partition, keyed by byte offset."""
    offsets = [str(p.offset) for p in partitions if not p.is_extended]
    if not offsets:
        return {}
    script = (
        f"for o in {' '.join(offsets)}; do "
        f'printf "%s %s\\n" "$o" "$(blkid -p -O "$o" -o value -s LABEL {DISK_MOUNT} 2>/dev/null)"; '
        "done"
    )
    _status, output = orchestrator.run_helper(["sh", "-c", script], binds=[_disk_bind(image)])
    return parse_labels(output)


def find_partition(
    orchestrator: Orchestrator,
    image: Union[str, Path],
    partitions: List[Partition],
    names: Iterable[str],
) -> Optional[Partition]:
    """Return the first partition whose GPT name or filesystem label is in ``names``."""
    wanted = set(names)
    for partition in partitions:
        if partition.name in wanted:
            return partition
    labels = read_labels(orchestrator, image, partitions)
    for partition in partitions:
        if labels.get(partition.offset) in wanted:
            return partition
    return None


def loop_script(offset: int, command: str) -> str:
    """Shell that exposes the partition at ``offset`` as ``$LOOP`` (read-only) around ``command``."""
    return (
        "set -e; "
        f"LOOP=$(losetup -r -f --show -o {offset} {DISK_MOUNT}); "
        "trap 'losetup -d \"$LOOP\"' EXIT; "
        f"{command}"
    )


def list_directory(
    orchestrator: Orchestrator, image: Union[str, Path], partition: Partition, path: str
) -> List[str]:
    """Names in ``path`` of the ext filesystem on ``partition``; empty when ``path`` is missing."""
    request = shlex.quote(f"ls -p {path}")
    status, output = orchestrator.run_helper(
        ["sh", "-c", loop_script(partition.offset, f'debugfs -R {request} "$LOOP"')],
        binds=[_disk_bind(image)],
        privileged=True,
    )
    if status != 0:
        log("DEBUG", f"Listing {path} on partition {partition.index} failed: {output.strip()}")
        return []
    return parse_directory_listing(output)
