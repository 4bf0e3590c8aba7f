"""Tests for virtdev.models and virtdev.exceptions."""

from __future__ import annotations

import pytest

from virtdev.exceptions import (
    EngineError,
    NameCollisionError,
    NotFoundError,
    ValidationError,
    VirtDeviceError,
)
from virtdev.models import (
    AcceleratorInfo,
    ContainerStatus,
    Instance,
    LaunchResult,
)


class TestContainerStatus:
    @pytest.mark.parametrize("state", ["running", "exited", "paused", "created"])
    def test_known_states(self, state):
        assert ContainerStatus.from_engine(state).value == state

    @pytest.mark.parametrize("state", ["restarting", "removing", "dead", "", None])
    def test_unknown_states_are_running(self, state):
        assert ContainerStatus.from_engine(state) is ContainerStatus.RUNNING

    def test_case_insensitive(self):
        assert ContainerStatus.from_engine("Exited") is ContainerStatus.EXITED


class TestLaunchResult:
    def test_kvm_available_mirrors_accelerator(self):
        instance = Instance("balenaos-vm-1-1", "abc", ContainerStatus.RUNNING, 22222, "now")
        accel = AcceleratorInfo(accel="kvm:tcg", kvm_available=True, description="KVM")
        assert LaunchResult(instance=instance, accelerator=accel).kvm_available is True


class TestExceptions:
    def test_hierarchy(self):
        for cls in (ValidationError, NotFoundError, EngineError, NameCollisionError):
            assert issubclass(cls, VirtDeviceError)
        assert issubclass(VirtDeviceError, RuntimeError)
        assert issubclass(NameCollisionError, EngineError)

    def test_validation_hint_rendered(self):
        err = ValidationError("Bad size", hint="Use 8G")
        assert str(err) == "Bad size\nUse 8G"
        assert err.hint == "Use 8G"

    def test_validation_without_hint(self):
        assert str(ValidationError("Bad size")) == "Bad size"

    def test_not_found_hint(self):
        assert str(NotFoundError("gone", hint="list")) == "gone\nlist"

    def test_engine_output_appended(self):
        assert str(EngineError("resize failed", "  qemu-img: error\n")) == "resize failed: qemu-img: error"

    def test_engine_blank_output_ignored(self):
        assert str(EngineError("resize failed", "   ")) == "resize failed"
