"""High-level virtual device flows: start, restart, stop and remove."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

try:
    import docker  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("docker (Docker SDK for Python) is required but not installed") from exc

from virtdev.arch import detect_architecture
from virtdev.config import Settings, get_cache_directory, load_settings
from virtdev.console import attach_to_container
from virtdev.constants import NOT_FOUND_HINT
from virtdev.containers import Orchestrator, describe_instance, extract_instance_id
from virtdev.exceptions import EngineError, NotFoundError, ValidationError, VirtDeviceError
from virtdev.image import (
    check_architecture_match,
    create_working_copy,
    detect_flasher_image,
    expand_image,
    extract_flasher_image,
    remove_working_copy,
    validate_image_exists,
    validate_image_format,
    working_copy_path,
)
from virtdev.models import (
    AttachOutcome,
    CleanupResult,
    ContainerStatus,
    Instance,
    StartResult,
    StopAllResult,
)
from virtdev.utils import log

FLASHER_REMEDIATION = (
    "Flasher images wrap the real OS image and cannot boot as a virtual device.\n"
    "Download the non-flasher variant for your device type, or pass "
    "unwrap_flasher=True to extract the nested image first."
)


def _prepare_working_copy(
    orchestrator: Orchestrator, image: Path, settings: Settings, unwrap_flasher: bool
) -> str:
    flasher = detect_flasher_image(orchestrator, image)
    if not flasher.is_flasher:
        return create_working_copy(image, settings)
    if not unwrap_flasher:
        raise ValidationError(
            f"{image} is a flasher image (contains {flasher.inner_image_name})",
            hint=FLASHER_REMEDIATION,
        )
    log("INFO", f"Flasher image detected; unwrapping {flasher.inner_image_name}")
    extracted = extract_flasher_image(orchestrator, image, get_cache_directory(settings))
    destination = working_copy_path(extracted.inner_image_name, settings)
    try:
        Path(extracted.extracted_path).rename(destination)
    except OSError:
        remove_working_copy(extracted.extracted_path)
        raise
    return str(destination)


def _attach_and_settle(orchestrator: Orchestrator, instance: Instance):
    result = attach_to_container(
        orchestrator.client,
        instance.container_id,
        on_stop=lambda: orchestrator.stop(instance.container_id),
        on_detach=lambda: log(
            "INFO",
            f"Detached from {instance.name}; it keeps running. "
            f"SSH: ssh root@localhost -p {instance.ssh_port}",
        ),
    )
    if result.outcome is AttachOutcome.ERRORED:
        log("ERROR", f"Console for {instance.name} failed; stopping it")
        orchestrator.stop(instance.container_id)
        raise EngineError(f"Console attachment to {instance.name} failed", str(result.error))
    return result


def start_new_instance(
    client: "docker.DockerClient",
    image_path: str,
    device_type: Optional[str] = None,
    data_size: Optional[str] = None,
    ssh_port: Optional[int] = None,
    memory: Optional[int] = None,
    cpus: Optional[int] = None,
    detached: bool = False,
    unwrap_flasher: bool = False,
    settings: Optional[Settings] = None,
) -> StartResult:
    """Validate an OS image, copy and grow it, and boot it in a new container.

    Unless ``detached`` is set the call blocks in the console until the user
    stops or detaches. A failure after the working copy exists removes the
    copy before the error propagates.
    """
    settings = settings or load_settings()
    orchestrator = Orchestrator(client, settings)
    image = Path(image_path).expanduser()

    log("INFO", f"Validating {image}")
    if not validate_image_exists(image):
        raise ValidationError(f"OS image not found at: {image}", hint="Check the path and try again.")
    validate_image_format(image)

    warnings: List[str] = []
    host_arch = detect_architecture()
    if device_type:
        warning = check_architecture_match(device_type, host_arch)
        if warning:
            log("WARN", warning)
            warnings.append(warning)

    orchestrator.build_image()
    working_copy = _prepare_working_copy(orchestrator, image, settings, unwrap_flasher)

    try:
        expand_image(orchestrator, working_copy, data_size or settings.data_size)
        launch = orchestrator.launch(
            working_copy, ssh_port=ssh_port, memory=memory, cpus=cpus, interactive=not detached
        )
    except (VirtDeviceError, OSError):
        log("WARN", f"Start failed; removing working copy {working_copy}")
        remove_working_copy(working_copy)
        raise

    accelerator = launch.accelerator
    log("INFO", f"Acceleration: {accelerator.description}")
    if accelerator.warning:
        log("WARN", accelerator.warning)
        warnings.append(accelerator.warning)

    instance = launch.instance
    result = StartResult(
        instance=instance,
        working_copy_path=working_copy,
        accelerator=accelerator,
        warnings=warnings,
    )
    if detached:
        instance_id = extract_instance_id(instance.name, settings.container_prefix)
        log("SUCCESS", f"Virtual device {instance.name} running in the background")
        log("INFO", f"SSH: ssh root@localhost -p {instance.ssh_port}")
        log("INFO", f"Stop it with stop_instances('{instance_id}')")
        return result

    result.attach = _attach_and_settle(orchestrator, instance)
    return result


def restart_instance(
    client: "docker.DockerClient",
    identifier: str,
    detached: bool = False,
    settings: Optional[Settings] = None,
) -> StartResult:
    """Start a stopped instance again, keeping its working copy."""
    orchestrator = Orchestrator(client, settings or load_settings())
    found = orchestrator.find(identifier)
    if found.instance is None:
        raise NotFoundError(f"Virtual device not found: {identifier}", hint=NOT_FOUND_HINT)
    if found.instance.status is ContainerStatus.RUNNING:
        raise ValidationError(
            f"Virtual device {found.instance.name} is already running",
            hint=f"SSH: ssh root@localhost -p {found.instance.ssh_port}",
        )

    log("INFO", f"Restarting {found.instance.name}")
    instance = orchestrator.start(found.instance.container_id)
    result = StartResult(instance=instance, working_copy_path=found.working_copy_path)
    if detached:
        log("SUCCESS", f"Virtual device {instance.name} running (SSH port {instance.ssh_port})")
        return result
    result.attach = _attach_and_settle(orchestrator, instance)
    return result


def stop_instances(
    client: "docker.DockerClient",
    identifier: Optional[str] = None,
    all_instances: bool = False,
    settings: Optional[Settings] = None,
) -> int:
    """Stop one or every running instance without removing it; returns how many stopped."""
    if not identifier and not all_instances:
        raise ValidationError(
            "Specify an instance name or number, or all_instances=True.", hint=NOT_FOUND_HINT
        )
    orchestrator = Orchestrator(client, settings or load_settings())

    if all_instances:
        running = [i for i in orchestrator.list_instances() if i.status is ContainerStatus.RUNNING]
        if not running:
            log("INFO", "No running virtual devices to stop.")
            return 0
        stopped = 0
        for instance in running:
            try:
                orchestrator.stop(instance.container_id)
                stopped += 1
            except VirtDeviceError as exc:
                log("WARN", f"Failed to stop {instance.name}: {exc}")
        log("SUCCESS", f"Stopped {stopped} virtual device(s)")
        return stopped

    found = orchestrator.find(identifier)
    if found.instance is None:
        raise NotFoundError(f"Virtual device not found: {identifier}", hint=NOT_FOUND_HINT)
    if found.instance.status is not ContainerStatus.RUNNING:
        log("INFO", f"Virtual device {found.instance.name} is already stopped.")
        return 0
    orchestrator.stop(found.instance.container_id)
    log("SUCCESS", f"Stopped virtual device {found.instance.name}")
    return 1


def remove_instances(
    client: "docker.DockerClient",
    identifier: Optional[str] = None,
    all_instances: bool = False,
    settings: Optional[Settings] = None,
):
    """Stop, remove and clean up one instance or all of them.

    Returns a CleanupResult for a single instance, a StopAllResult for all.
    """
    if not identifier and not all_instances:
        raise ValidationError(
            "Specify an instance name or number, or all_instances=True.", hint=NOT_FOUND_HINT
        )
    orchestrator = Orchestrator(client, settings or load_settings())

    if all_instances:
        result: StopAllResult = orchestrator.stop_all_with_cleanup()
        log("SUCCESS", f"Removed {result.stopped_count} virtual device(s)")
        if result.cleaned_count:
            log("INFO", f"Cleaned up {result.cleaned_count} working copy image(s)")
        return result

    cleanup: CleanupResult = orchestrator.stop_with_cleanup(identifier)
    log("SUCCESS", f"Removed virtual device {cleanup.name}")
    if not cleanup.working_copy_removed:
        log("WARN", "Working copy image could not be removed automatically")
    return cleanup


def list_instances(client: "docker.DockerClient", settings: Optional[Settings] = None) -> List[dict]:
    """Display rows for every managed instance, sorted by name."""
    settings = settings or load_settings()
    orchestrator = Orchestrator(client, settings)
    return [describe_instance(i, settings.container_prefix) for i in orchestrator.list_instances()]
