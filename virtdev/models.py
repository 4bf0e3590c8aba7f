"""Data models for virtdev."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class ContainerStatus(str, enum.Enum):
    RUNNING = "running"
    EXITED = "exited"
    PAUSED = "paused"
    CREATED = "created"

    @classmethod
    def from_engine(cls, state: Optional[str]) -> "ContainerStatus":
        """Map an engine state string onto the closed status set.

        Unknown states ("restarting", "removing", ...) are transitional and
        are treated as running.
        """
        normalized = (state or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.RUNNING


@dataclass
class Instance:
    name: str
    container_id: str
    status: ContainerStatus
    ssh_port: int
    created: str


@dataclass
class AcceleratorInfo:
    accel: str  # e.g. "kvm:tcg" or "tcg"
    kvm_available: bool
    description: str
    warning: Optional[str] = None


@dataclass
class FlasherDetectionResult:
    is_flasher: bool
    inner_image_name: Optional[str] = None


@dataclass
class ExtractFlasherResult:
    extracted_path: str
    inner_image_name: str


@dataclass
class ImageValidationResult:
    working_copy_path: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class ExpandResult:
    expanded: bool
    final_size: int
    message: str


@dataclass
class LaunchResult:
    instance: Instance
    accelerator: AcceleratorInfo

    @property
    def kvm_available(self) -> bool:
        return self.accelerator.kvm_available


@dataclass
class FindResult:
    instance: Optional[Instance]
    working_copy_path: Optional[str]


@dataclass
class CleanupResult:
    name: str
    working_copy_removed: bool


@dataclass
class StopAllResult:
    stopped_count: int
    cleaned_count: int


class AttachOutcome(str, enum.Enum):
    STOPPED = "stopped"
    DETACHED = "detached"
    ERRORED = "errored"


@dataclass
class AttachResult:
    outcome: AttachOutcome
    error: Optional[BaseException] = None


@dataclass
class StartResult:
    instance: Instance
    working_copy_path: Optional[str]
    accelerator: Optional[AcceleratorInfo] = None
    attach: Optional[AttachResult] = None
    warnings: List[str] = field(default_factory=list)
