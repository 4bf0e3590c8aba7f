"""Container lifecycle management for virtdev.

The container engine is the only record of instances: every listing is
rebuilt from the engine, and names and ports are allocated from a fresh
scan right before each create.
"""

from __future__ import annotations

import io
import re
import tarfile
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

try:
    import docker  # type: ignore
    from docker.errors import APIError, DockerException, ImageNotFound, NotFound  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("docker (Docker SDK for Python) is required but not installed") from exc

from virtdev.accel import detect_accelerators
from virtdev.arch import detect_architecture, detect_guest_arch
from virtdev.config import Settings, load_settings
from virtdev.constants import (
    ASSETS_DIR,
    CONTAINER_PREFIX,
    DOCKER_PLATFORMS,
    ENV_ACCEL,
    ENV_CPUS,
    ENV_GUEST_ARCH,
    ENV_MEMORY,
    GUEST_SSH_PORT,
    GUEST_SSH_PORT_KEY,
    KVM_DEVICE,
    NOT_FOUND_HINT,
    WORKING_IMAGE_MOUNT,
)
from virtdev.exceptions import (
    EngineError,
    NameCollisionError,
    NotFoundError,
    ValidationError,
    VirtDeviceError,
)
from virtdev.models import (
    CleanupResult,
    ContainerStatus,
    FindResult,
    Instance,
    LaunchResult,
    StopAllResult,
)
from virtdev.utils import log

_PORT_IN_USE_MARKERS = ("port is already allocated", "address already in use")


def get_docker_client() -> "docker.DockerClient":
    """Connect using DOCKER_HOST or the default engine socket."""
    try:
        return docker.from_env()
    except DockerException as exc:
        raise EngineError(f"Cannot connect to the Docker engine: {exc}") from exc


def extract_ssh_port(port_map: Optional[Dict[str, Optional[List[Dict[str, str]]]]]) -> int:
    """Return the host port bound to the guest SSH port, or 0."""
    if not port_map:
        return 0
    bindings = port_map.get(GUEST_SSH_PORT_KEY) or []
    for binding in bindings:
        host_port = (binding or {}).get("HostPort")
        if host_port:
            try:
                return int(host_port)
            except ValueError:
                continue
    return 0


def _ssh_port_from_inspection(inspection: Dict) -> int:
    # Stopped containers lose NetworkSettings.Ports; the requested binding stays.
    port = extract_ssh_port((inspection.get("NetworkSettings") or {}).get("Ports"))
    if port:
        return port
    return extract_ssh_port((inspection.get("HostConfig") or {}).get("PortBindings"))


def extract_working_copy_path(binds: Optional[Iterable[str]]) -> Optional[str]:
    """Return the host side of the bind mounted at the working-image path."""
    marker = f":{WORKING_IMAGE_MOUNT}"
    for bind in binds or []:
        host, sep, rest = bind.rpartition(marker)
        if sep and host and (rest == "" or rest.startswith(":")):
            return host
    return None


def extract_instance_id(name: str, prefix: str = CONTAINER_PREFIX) -> str:
    """``balenaos-vm-3-1700000000`` -> ``3``; other names are returned unchanged."""
    match = re.match(rf"^{re.escape(prefix)}(\d+)", name)
    return match.group(1) if match else name


def describe_instance(instance: Instance, prefix: str = CONTAINER_PREFIX) -> Dict[str, object]:
    """Flatten an instance into the fields a listing shows."""
    return {
        "id": extract_instance_id(instance.name, prefix),
        "name": instance.name,
        "ssh_port": instance.ssh_port,
        "status": instance.status.value,
        "created": instance.created,
        "ssh_command": f"ssh root@localhost -p {instance.ssh_port}",
    }


def next_free_ordinal(names: Iterable[str], prefix: str) -> int:
    used = set()
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)")
    for name in names:
        match = pattern.match(name)
        if match:
            used.add(int(match.group(1)))
    ordinal = 1
    while ordinal in used:
        ordinal += 1
    return ordinal


def next_free_port(ports: Iterable[int], base_port: int) -> int:
    used = {p for p in ports if p > 0}
    port = base_port
    while port in used:
        port += 1
    return port


def _is_name_conflict(exc: APIError) -> bool:
    return getattr(exc, "status_code", None) == 409


def _is_port_conflict(exc: APIError) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _PORT_IN_USE_MARKERS)


def _instance_from_inspection(inspection: Dict, fallback_name: str = "") -> Instance:
    name = (inspection.get("Name") or fallback_name).lstrip("/")
    return Instance(
        name=name,
        container_id=inspection.get("Id", ""),
        status=ContainerStatus.from_engine((inspection.get("State") or {}).get("Status")),
        ssh_port=_ssh_port_from_inspection(inspection),
        created=inspection.get("Created", ""),
    )


def build_context(dockerfile: str, entry_script: str) -> io.BytesIO:
    """Pack the runner assets into an in-memory tar build context."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content, mode in (
            ("Dockerfile", dockerfile, 0o644),
            ("entry.sh", entry_script, 0o755),
        ):
            payload = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = mode
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(payload))
    buf.seek(0)
    return buf


class Orchestrator:
    """Runs virtual devices as containers of the QEMU runner image."""

    def __init__(self, client: "docker.DockerClient", settings: Optional[Settings] = None) -> None:
        self.client = client
        self.api = client.api
        self.settings = settings or load_settings()

    @property
    def prefix(self) -> str:
        return self.settings.container_prefix

    @property
    def image_name(self) -> str:
        return self.settings.image_name

    # Runner image

    def image_exists(self, image_name: Optional[str] = None) -> bool:
        try:
            self.api.inspect_image(image_name or self.image_name)
        except (ImageNotFound, NotFound):
            return False
        return True

    def require_image(self) -> None:
        if not self.image_exists():
            raise NotFoundError(
                f"Docker image '{self.image_name}' not found. Build it first with build_image()."
            )

    def build_image(self, assets_dir: Path = ASSETS_DIR) -> str:
        """(Re)build the runner image; layer caching keeps unchanged builds fast."""
        dockerfile = (assets_dir / "Dockerfile").read_text()
        entry_script = (assets_dir / "entry.sh").read_text()
        context = build_context(dockerfile, entry_script)
        platform = DOCKER_PLATFORMS[detect_architecture()]

        log("INFO", f"Building runner image {self.image_name} ({platform})")
        try:
            for event in self.api.build(
                fileobj=context,
                custom_context=True,
                tag=self.image_name,
                rm=True,
                decode=True,
                platform=platform,
            ):
                if event.get("stream"):
                    log("DEBUG", event["stream"].rstrip())
                if event.get("error"):
                    raise EngineError(f"Failed to build {self.image_name}: {event['error'].strip()}")
        except (APIError, DockerException) as exc:
            raise EngineError(f"Failed to build {self.image_name}: {exc}") from exc
        log("SUCCESS", f"Runner image {self.image_name} ready")
        return self.image_name

    # Listing

    def list_instances(self) -> List[Instance]:
        """All managed containers, running or not, sorted by name."""
        try:
            summaries = self.api.containers(all=True, filters={"name": self.prefix})
        except (APIError, DockerException) as exc:
            raise EngineError(f"Failed to list containers: {exc}") from exc

        instances: List[Instance] = []
        for summary in summaries:
            names = summary.get("Names") or []
            name = names[0].lstrip("/") if names else ""
            # The engine filter is a substring match.
            if not name.startswith(self.prefix):
                continue
            try:
                inspection = self.api.inspect_container(summary["Id"])
            except NotFound:
                continue
            instance = _instance_from_inspection(inspection, fallback_name=name)
            instance.name = name
            instance.container_id = summary["Id"]
            instances.append(instance)
        instances.sort(key=lambda i: i.name)
        return instances

    def generate_name(self, instances: Optional[List[Instance]] = None) -> str:
        if instances is None:
            instances = self.list_instances()
        ordinal = next_free_ordinal((i.name for i in instances), self.prefix)
        return f"{self.prefix}{ordinal}-{int(time.time())}"

    def next_available_port(self, instances: Optional[List[Instance]] = None) -> int:
        if instances is None:
            instances = self.list_instances()
        return next_free_port((i.ssh_port for i in instances), self.settings.ssh_base_port)

    # Launch

    def _create_options(
        self,
        name: str,
        os_image_path: str,
        ssh_port: int,
        environment: List[str],
        use_kvm: bool,
        interactive: bool,
    ) -> Dict:
        host_config = self.api.create_host_config(
            privileged=True,
            port_bindings={GUEST_SSH_PORT: ssh_port},
            binds=[f"{os_image_path}:{WORKING_IMAGE_MOUNT}:rw"],
            devices=[f"{KVM_DEVICE}:{KVM_DEVICE}:rwm"] if use_kvm else None,
        )
        return {
            "image": self.image_name,
            "name": name,
            "environment": environment,
            "ports": [GUEST_SSH_PORT],
            "host_config": host_config,
            "tty": interactive,
            "stdin_open": interactive,
            "detach": not interactive,
        }

    def _create_and_start(self, options: Dict) -> Dict:
        try:
            created = self.api.create_container(**options)
        except APIError as exc:
            if _is_name_conflict(exc):
                raise NameCollisionError(f"Container name {options['name']} already in use", str(exc)) from exc
            raise EngineError(f"Failed to create container {options['name']}: {exc}") from exc
        container_id = created["Id"]
        try:
            self.api.start(container_id)
            return self.api.inspect_container(container_id)
        except APIError as exc:
            self._discard(container_id)
            if _is_port_conflict(exc):
                raise NameCollisionError(f"Host port for {options['name']} already allocated", str(exc)) from exc
            raise EngineError(f"Failed to start container {options['name']}: {exc}") from exc

    def _discard(self, container_id: str) -> None:
        try:
            self.api.remove_container(container_id, v=True, force=True)
        except (APIError, DockerException) as exc:
            log("WARN", f"Could not remove failed container {container_id[:12]}: {exc}")

    def launch(
        self,
        os_image_path: str,
        ssh_port: Optional[int] = None,
        memory: Optional[int] = None,
        cpus: Optional[int] = None,
        interactive: bool = False,
    ) -> LaunchResult:
        """Create and start a runner container for a prepared working copy."""
        self.require_image()
        image_path = Path(os_image_path).resolve()
        if not image_path.is_file():
            raise ValidationError(f"OS image not found at: {os_image_path}")

        accelerator = detect_accelerators()
        guest_arch = detect_guest_arch(image_path)
        environment = [
            f"{ENV_MEMORY}={memory or self.settings.memory_mb}",
            f"{ENV_CPUS}={cpus or self.settings.cpus}",
            f"{ENV_ACCEL}={accelerator.accel}",
            f"{ENV_GUEST_ARCH}={guest_arch}",
        ]
        log("DEBUG", f"Guest architecture: {guest_arch}; accelerator: {accelerator.accel}")

        attempts = self.settings.create_retries
        last_error: Optional[NameCollisionError] = None
        for attempt in range(1, attempts + 1):
            instances = self.list_instances()
            port = ssh_port or self.next_available_port(instances)
            name = self.generate_name(instances)
            options = self._create_options(
                name, str(image_path), port, environment, accelerator.kvm_available, interactive
            )
            try:
                inspection = self._create_and_start(options)
            except NameCollisionError as exc:
                last_error = exc
                if ssh_port is not None and "port" in exc.message.lower():
                    raise EngineError(f"Host port {ssh_port} is already allocated", exc.output) from exc
                log("WARN", f"{exc.message}; retrying ({attempt}/{attempts})")
                continue
            instance = Instance(
                name=name,
                container_id=inspection.get("Id", ""),
                status=ContainerStatus.RUNNING,
                ssh_port=port,
                created=inspection.get("Created", ""),
            )
            log("SUCCESS", f"Started {instance.name} (SSH port {instance.ssh_port})")
            return LaunchResult(instance=instance, accelerator=accelerator)

        assert last_error is not None
        raise last_error

    # Lifecycle

    def stop(self, container: str, timeout: Optional[int] = None) -> None:
        """Stop a container; a missing container counts as stopped."""
        if timeout is None:
            timeout = self.settings.stop_timeout
        try:
            inspection = self.api.inspect_container(container)
            if (inspection.get("State") or {}).get("Running"):
                log("INFO", f"Stopping {inspection.get('Name', container).lstrip('/')}")
                self.api.stop(container, timeout=timeout)
        except NotFound:
            log("DEBUG", f"Container {container} already gone")
        except APIError as exc:
            raise EngineError(f"Failed to stop {container}: {exc}") from exc

    def start(self, container: str) -> Instance:
        """Start a stopped container and return its refreshed state."""
        try:
            inspection = self.api.inspect_container(container)
        except NotFound:
            raise NotFoundError(f"Virtual device not found: {container}", hint=NOT_FOUND_HINT) from None
        if (inspection.get("State") or {}).get("Running"):
            raise ValidationError(f"Container is already running: {container}")
        try:
            self.api.start(container)
            inspection = self.api.inspect_container(container)
        except APIError as exc:
            raise EngineError(f"Failed to start {container}: {exc}") from exc
        instance = _instance_from_inspection(inspection)
        instance.status = ContainerStatus.RUNNING
        return instance

    def remove(self, container: str) -> None:
        """Force-remove a container and its anonymous volumes; missing is fine."""
        try:
            self.api.remove_container(container, v=True, force=True)
        except NotFound:
            log("DEBUG", f"Container {container} already removed")
        except APIError as exc:
            raise EngineError(f"Failed to remove {container}: {exc}") from exc

    def stop_and_remove(self, container: str) -> None:
        self.stop(container)
        self.remove(container)

    # Lookup

    def find(self, identifier: str) -> FindResult:
        """Resolve a name, ordinal or container-ID prefix to an instance."""
        instances = self.list_instances()
        found = next((i for i in instances if i.name == identifier), None)
        if found is None and identifier.isdigit():
            pattern = re.compile(rf"^{re.escape(self.prefix)}{identifier}-\d+$")
            found = next((i for i in instances if pattern.match(i.name)), None)
        if found is None and identifier:
            found = next((i for i in instances if i.container_id.startswith(identifier)), None)
        if found is None:
            return FindResult(instance=None, working_copy_path=None)
        return FindResult(instance=found, working_copy_path=self.working_copy_of(found.container_id))

    def working_copy_of(self, container: str) -> Optional[str]:
        try:
            inspection = self.api.inspect_container(container)
        except NotFound:
            log("DEBUG", f"Container {container} vanished before inspection")
            return None
        return extract_working_copy_path((inspection.get("HostConfig") or {}).get("Binds"))

    # Cleanup

    @staticmethod
    def delete_working_copy(path: Optional[str]) -> bool:
        """Best-effort delete; an already-missing file counts as removed."""
        if not path:
            return False
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return True
        except OSError as exc:
            log("WARN", f"Could not remove working copy {path}: {exc}")
            return False
        log("DEBUG", f"Removed working copy {path}")
        return True

    def stop_with_cleanup(self, identifier: str) -> CleanupResult:
        found = self.find(identifier)
        if found.instance is None:
            raise NotFoundError(f"Virtual device not found: {identifier}", hint=NOT_FOUND_HINT)
        self.stop_and_remove(found.instance.container_id)
        removed = self.delete_working_copy(found.working_copy_path)
        return CleanupResult(name=found.instance.name, working_copy_removed=removed)

    def _teardown(self, instance: Instance) -> Tuple[bool, bool]:
        try:
            working_copy = self.working_copy_of(instance.container_id)
            if instance.status is ContainerStatus.RUNNING:
                self.stop(instance.container_id)
            self.remove(instance.container_id)
        except (VirtDeviceError, APIError, DockerException) as exc:
            log("WARN", f"Failed to remove {instance.name}: {exc}")
            return False, False
        if working_copy is None:
            return True, False
        try:
            Path(working_copy).unlink()
        except OSError as exc:
            log("WARN", f"Could not remove working copy {working_copy}: {exc}")
            return True, False
        return True, True

    def stop_all_with_cleanup(self) -> StopAllResult:
        """Stop and remove every instance concurrently; one failure never blocks the rest."""
        instances = self.list_instances()
        if not instances:
            return StopAllResult(stopped_count=0, cleaned_count=0)
        with ThreadPoolExecutor(max_workers=min(8, len(instances))) as pool:
            results = list(pool.map(self._teardown, instances))
        return StopAllResult(
            stopped_count=sum(1 for stopped, _ in results if stopped),
            cleaned_count=sum(1 for _, cleaned in results if cleaned),
        )

    # Helper containers

    def run_helper(
        self,
        command: List[str],
        binds: List[str],
        privileged: bool = False,
    ) -> Tuple[int, str]:
        """Run a one-shot command in the runner image; return (exit status, output)."""
        self.require_image()
        log("DEBUG", f"Running helper: {' '.join(command)}")
        host_config = self.api.create_host_config(privileged=privileged, binds=binds)
        try:
            created = self.api.create_container(image=self.image_name, command=command, host_config=host_config)
        except APIError as exc:
            raise EngineError(f"Failed to create helper container: {exc}") from exc
        container_id = created["Id"]
        try:
            self.api.start(container_id)
            result = self.api.wait(container_id)
            status = int(result.get("StatusCode", 1)) if isinstance(result, dict) else int(result)
            output = b""
            try:
                output = self.api.logs(container_id, stdout=True, stderr=True)
            except APIError as exc:
                log("DEBUG", f"Could not read helper output: {exc}")
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            return status, output
        except APIError as exc:
            raise EngineError(f"Helper container failed: {exc}") from exc
        finally:
            self._discard(container_id)
