"""Shared test fixtures: settings, environment and an in-memory Docker API double."""

from __future__ import annotations

import itertools
import json
import os
import re
import struct
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from virtdev.config import Settings
from virtdev.constants import DOCKER_IMAGE_NAME, GUEST_SSH_PORT_KEY


def api_error(status_code: int, explanation: str) -> APIError:
    response = SimpleNamespace(status_code=status_code, url="http+docker://localhost", reason="error")
    return APIError(f"{status_code} error", response=response, explanation=explanation)


class FakeDockerAPI:
    """Enough of ``docker.APIClient`` for the orchestrator, kept in memory."""

    def __init__(self) -> None:
        self.containers_by_id: Dict[str, dict] = {}
        self.images = {DOCKER_IMAGE_NAME}
        self.build_events: List[dict] = [{"stream": "Step 1/4 : FROM debian\n"}, {"stream": "Successfully built abc\n"}]
        self.build_calls: List[dict] = []
        self.create_errors: List[Exception] = []
        self.start_errors: List[Exception] = []
        self.stop_calls: List[str] = []
        self.removed: List[str] = []
        # helper(command, binds) -> (exit status, output)
        self.helper: Optional[Callable[[List[str], List[str]], Tuple[int, str]]] = None
        self.helper_calls: List[dict] = []
        self._ids = itertools.count(1)

    # images

    def inspect_image(self, name):
        if name not in self.images:
            raise ImageNotFound(f"No such image: {name}")
        return {"Id": f"sha256:{name}"}

    def build(self, **kwargs):
        self.build_calls.append(kwargs)
        self.images.add(kwargs["tag"])
        return iter(self.build_events)

    # containers

    def add_container(
        self,
        name: str,
        ssh_port: int = 0,
        running: bool = True,
        binds: Optional[List[str]] = None,
        tty: bool = False,
    ) -> str:
        container_id = f"{next(self._ids):04d}" + "ab" * 30
        bindings = {GUEST_SSH_PORT_KEY: [{"HostIp": "", "HostPort": str(ssh_port)}]} if ssh_port else {}
        self.containers_by_id[container_id] = {
            "Id": container_id,
            "Name": f"/{name}",
            "Created": "2026-10-19T10:00:00.000000000Z",
            "State": {"Status": "running" if running else "exited", "Running": running},
            "Config": {"Tty": tty, "Env": [], "Cmd": None},
            "HostConfig": {"Binds": binds or [], "PortBindings": bindings, "Privileged": True},
            "NetworkSettings": {"Ports": dict(bindings) if running else {}},
        }
        return container_id

    def _get(self, ref: str) -> dict:
        for container in list(self.containers_by_id.values()):
            if container["Id"] == ref or container["Name"] == f"/{ref}":
                return container
        raise NotFound(f"No such container: {ref}")

    def containers(self, all=False, filters=None):
        needle = (filters or {}).get("name", "")
        return [
            {"Id": c["Id"], "Names": [c["Name"]]}
            for c in list(self.containers_by_id.values())
            if needle in c["Name"] and (all or c["State"]["Running"])
        ]

    def inspect_container(self, ref):
        return self._get(ref)

    def create_host_config(self, **kwargs):
        return kwargs

    def create_container(self, image, command=None, name=None, environment=None, ports=None,
                         host_config=None, tty=False, stdin_open=False, detach=False):
        if self.create_errors:
            raise self.create_errors.pop(0)
        if name and any(c["Name"] == f"/{name}" for c in list(self.containers_by_id.values())):
            raise api_error(409, f'Conflict. The container name "/{name}" is already in use')
        host_config = host_config or {}
        bindings = {
            f"{port}/tcp": [{"HostIp": "", "HostPort": str(host_port)}]
            for port, host_port in (host_config.get("port_bindings") or {}).items()
        }
        container_id = f"{next(self._ids):04d}" + "cd" * 30
        self.containers_by_id[container_id] = {
            "Id": container_id,
            "Name": f"/{name or container_id[:12]}",
            "Created": "2026-10-19T10:00:00.000000000Z",
            "Image": image,
            "State": {"Status": "created", "Running": False},
            "Config": {"Tty": tty, "OpenStdin": stdin_open, "Env": environment or [], "Cmd": command},
            "HostConfig": {
                "Binds": host_config.get("binds") or [],
                "PortBindings": bindings,
                "Privileged": host_config.get("privileged", False),
                "Devices": host_config.get("devices"),
            },
            "NetworkSettings": {"Ports": {}},
        }
        return {"Id": container_id, "Warnings": []}

    def start(self, ref):
        if self.start_errors:
            raise self.start_errors.pop(0)
        container = self._get(ref)
        container["State"] = {"Status": "running", "Running": True}
        container["NetworkSettings"]["Ports"] = dict(container["HostConfig"]["PortBindings"])

    def stop(self, ref, timeout=None):
        container = self._get(ref)
        self.stop_calls.append(container["Id"])
        container["State"] = {"Status": "exited", "Running": False}
        container["NetworkSettings"]["Ports"] = {}

    def remove_container(self, ref, v=False, force=False):
        container = self._get(ref)
        self.removed.append(container["Id"])
        del self.containers_by_id[container["Id"]]

    def wait(self, ref):
        container = self._get(ref)
        command = container["Config"]["Cmd"]
        binds = container["HostConfig"]["Binds"]
        self.helper_calls.append({"command": command, "binds": binds,
                                  "privileged": container["HostConfig"]["Privileged"]})
        status, output = self.helper(command, binds) if self.helper else (0, "")
        container["_output"] = output
        container["State"] = {"Status": "exited", "Running": False}
        return {"StatusCode": status}

    def logs(self, ref, stdout=True, stderr=True):
        return self._get(ref).get("_output", "").encode()

    def attach_socket(self, ref, params=None):
        raise NotImplementedError


def frame(stream: int, payload: bytes) -> bytes:
    """Encode one multiplexed attach frame."""
    return struct.pack(">BxxxL", stream, len(payload)) + payload


@pytest.fixture
def fake_api() -> FakeDockerAPI:
    return FakeDockerAPI()


@pytest.fixture
def fake_client(fake_api):
    return SimpleNamespace(api=fake_api)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(cache_dir=tmp_path / "cache")


@pytest.fixture
def raw_image(tmp_path) -> Path:
    path = tmp_path / "balena.img"
    path.write_bytes(b"\x00" * 4096)
    return path


_VIRTDEV_ENV_VARS = [
    "VIRTDEV_CONFIG",
    "VIRTDEV_CACHE_DIR",
    "VIRTDEV_MEMORY",
    "VIRTDEV_CPUS",
    "VIRTDEV_DATA_SIZE",
    "VIRTDEV_SSH_BASE_PORT",
    "XDG_CACHE_HOME",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every variable settings loading reads and point HOME at tmp_path."""
    for key in _VIRTDEV_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


def host_path(binds: List[str], container_path: str) -> Path:
    """Host side of the bind mounted at exactly ``container_path``."""
    for bind in binds:
        for suffix in (f":{container_path}:rw", f":{container_path}:ro", f":{container_path}"):
            if bind.endswith(suffix):
                return Path(bind[: -len(suffix)])
    raise AssertionError(f"{container_path} not bound in {binds}")


def sfdisk_table(*entries, label: str = "dos", sector_size: int = 512) -> dict:
    """``sfdisk --json`` document; entries are (start sector, sectors, type, GPT name or None)."""
    partitions = []
    for number, (start, sectors, ptype, name) in enumerate(entries, start=1):
        entry = {"node": f"/tmp/flasher.img{number}", "start": start, "size": sectors, "type": ptype}
        if name:
            entry["name"] = name
        partitions.append(entry)
    return {
        "partitiontable": {
            "label": label,
            "id": "0x2f1e6a3b",
            "device": "/tmp/flasher.img",
            "unit": "sectors",
            "sectorsize": sector_size,
            "partitions": partitions,
        }
    }


def debugfs_listing(names: List[str]) -> str:
    lines = ["debugfs 1.47.0 (5-Feb-2023)", "/2/040755/0/0/.//", "/2/040755/0/0/..//"]
    lines += [f"/{12 + i}/100644/0/0/{name}/{len(name)}/" for i, name in enumerate(names)]
    return "\n".join(lines) + "\n"


class FakeDiskTools:
    """Answers the disk-inspection helper commands with canned tool output.

    ``labels`` maps partition byte offsets to filesystem labels and
    ``listings`` maps offsets to the names in /opt (absent means no /opt).
    """

    def __init__(self, table: Optional[dict] = None, labels: Optional[Dict[int, str]] = None,
                 listings: Optional[Dict[int, List[str]]] = None, dump: Optional[bytes] = b"inner image",
                 dump_status: int = 0) -> None:
        self.table = table
        self.labels = labels or {}
        self.listings = listings or {}
        self.dump = dump
        self.dump_status = dump_status

    def __call__(self, command: List[str], binds: List[str]) -> Tuple[int, str]:
        if command[0] == "sfdisk":
            if self.table is None:
                return 1, "sfdisk: /tmp/flasher.img: does not contain a recognized partition table\n"
            return 0, json.dumps(self.table)
        if command[0] == "qemu-img":
            os.truncate(host_path(binds, "/tmp/image.img"), int(command[-1]))
            return 0, "Image resized.\n"
        script = command[-1]
        if "blkid" in script:
            offsets = re.search(r"for o in ([\d ]+); do", script).group(1).split()
            return 0, "".join(f"{o} {self.labels.get(int(o), '')}\n" for o in offsets)
        offset = int(re.search(r"--show -o (\d+) ", script).group(1))
        if "ls -p" in script:
            if offset not in self.listings:
                return 0, "debugfs 1.47.0 (5-Feb-2023)\n/opt: File not found by ext2_lookup\n"
            return 0, debugfs_listing(self.listings[offset])
        target = re.search(r"dump \S+ /tmp/output/(\S+?)'", script).group(1)
        if self.dump is not None:
            (host_path(binds, "/tmp/output") / target).write_bytes(self.dump)
        return self.dump_status, "" if self.dump_status == 0 else "debugfs: Short write\n"


# Flasher layout: resin-boot, flash-rootA (ROOT_A), resin-rootB
ROOT_A = 46137344
FLASHER_TABLE = sfdisk_table((8192, 81920, "c", None), (90112, 40960, "83", None), (131072, 40960, "83", None))


def flasher_tools(label="flash-rootA", names=("app.balenaos-img", "other"), **kwargs) -> FakeDiskTools:
    return FakeDiskTools(
        table=FLASHER_TABLE,
        labels={4194304: "resin-boot", ROOT_A: label, 67108864: "resin-rootB"},
        listings={ROOT_A: list(names)} if names is not None else {},
        **kwargs,
    )
