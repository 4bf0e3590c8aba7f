"""Interactive console attachment to a running virtual device.

Keys handled locally (never sent to the guest):

* ``Ctrl+C`` stops the session; the caller normally stops the container.
* ``Ctrl+P`` then ``Ctrl+Q`` detaches and leaves the container running.

A ``Ctrl+P`` followed by anything but ``Ctrl+Q`` or ``Ctrl+C`` is passed
through unchanged; before ``Ctrl+C`` the buffered ``Ctrl+P`` is dropped.
"""

from __future__ import annotations

import os
import select
import socket
import struct
import sys
from typing import BinaryIO, Callable, List, Optional, Tuple

try:
    import termios
    import tty
except ImportError:  # Windows: no POSIX terminal control
    termios = None
    tty = None

try:
    import docker  # type: ignore
    from docker.errors import APIError, NotFound  # type: ignore
    from docker.utils.socket import STDERR  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("docker (Docker SDK for Python) is required but not installed") from exc

from virtdev.constants import CTRL_C, CTRL_P, CTRL_Q, NOT_FOUND_HINT
from virtdev.exceptions import EngineError, NotFoundError, ValidationError
from virtdev.models import AttachOutcome, AttachResult
from virtdev.utils import log

_READ_SIZE = 4096
_FRAME_HEADER = struct.Struct(">BxxxL")


class ConsoleSession:
    """Filters local keystrokes; ``outcome`` is set once the user stops or detaches."""

    def __init__(self) -> None:
        self.pending_ctrl_p = False
        self.outcome: Optional[AttachOutcome] = None

    def feed(self, chunk: bytes) -> bytes:
        """Return the bytes to forward to the container for one stdin chunk."""
        if self.outcome is not None or not chunk:
            return b""
        forward = b""
        if self.pending_ctrl_p:
            self.pending_ctrl_p = False
            if chunk == bytes([CTRL_Q]):
                self.outcome = AttachOutcome.DETACHED
                return b""
            forward = bytes([CTRL_P])

        if chunk == bytes([CTRL_C]):
            self.outcome = AttachOutcome.STOPPED
            return b""
        if chunk == bytes([CTRL_P]):
            self.pending_ctrl_p = True
            return forward
        return forward + chunk


class StreamDemuxer:
    """Splits the engine's multiplexed stdout/stderr framing incrementally."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes) -> List[Tuple[int, bytes]]:
        self._buffer += data
        frames: List[Tuple[int, bytes]] = []
        while len(self._buffer) >= _FRAME_HEADER.size:
            stream, length = _FRAME_HEADER.unpack_from(self._buffer)
            end = _FRAME_HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append((stream, self._buffer[_FRAME_HEADER.size:end]))
            self._buffer = self._buffer[end:]
        return frames


class RawTerminal:
    """Puts a TTY into raw mode for the duration of a ``with`` block.

    Does nothing when ``fd`` is not a terminal or the platform has no
    POSIX terminal control.
    """

    def __init__(self, fd: Optional[int]) -> None:
        self.fd = fd
        self._saved = None

    def __enter__(self) -> "RawTerminal":
        if termios is not None and self.fd is not None and os.isatty(self.fd):
            self._saved = termios.tcgetattr(self.fd)
            tty.setraw(self.fd)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._saved is not None:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
            self._saved = None
        return False


def _write(stream: BinaryIO, data: bytes) -> None:
    stream.write(data)
    stream.flush()


def _close_write_side(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_WR)
    except OSError as exc:
        log("DEBUG", f"Console stream already closed: {exc}")


def _pump(
    sock: socket.socket,
    stdin_fd: Optional[int],
    stdout: BinaryIO,
    stderr: BinaryIO,
    combined_tty: bool,
) -> Tuple[AttachResult, bool]:
    """Shuttle bytes until the session ends; the flag is True for a user stop or detach."""
    session = ConsoleSession()
    demuxer = None if combined_tty else StreamDemuxer()
    sources: List[object] = [sock]
    if stdin_fd is not None:
        sources.append(stdin_fd)

    try:
        while True:
            readable, _, _ = select.select(sources, [], [])
            if stdin_fd is not None and stdin_fd in readable:
                chunk = os.read(stdin_fd, 1024)
                if not chunk:
                    # Local EOF: keep showing output until the stream ends.
                    sources.remove(stdin_fd)
                    stdin_fd = None
                else:
                    forward = session.feed(chunk)
                    if forward:
                        sock.sendall(forward)
                    if session.outcome is not None:
                        _close_write_side(sock)
                        return AttachResult(outcome=session.outcome), True
            if sock in readable:
                data = sock.recv(_READ_SIZE)
                if not data:
                    return AttachResult(outcome=AttachOutcome.STOPPED), False
                if demuxer is None:
                    _write(stdout, data)
                    continue
                for stream, payload in demuxer.feed(data):
                    _write(stderr if stream == STDERR else stdout, payload)
    except OSError as exc:
        if session.outcome is not None:
            return AttachResult(outcome=session.outcome), True
        return AttachResult(outcome=AttachOutcome.ERRORED, error=exc), False


def attach_to_container(
    client: "docker.DockerClient",
    container_id: str,
    on_stop: Optional[Callable[[], None]] = None,
    on_detach: Optional[Callable[[], None]] = None,
    stdin_fd: Optional[int] = None,
    stdout: Optional[BinaryIO] = None,
    stderr: Optional[BinaryIO] = None,
) -> AttachResult:
    """Connect the local terminal to a running container's console.

    Blocks until the user stops (``Ctrl+C``) or detaches (``Ctrl+P Ctrl+Q``),
    or the console stream ends or fails. The callbacks run after the
    terminal has been restored. A stream that simply ends counts as
    ``STOPPED`` without calling ``on_stop``.
    """
    api = client.api
    try:
        inspection = api.inspect_container(container_id)
    except NotFound:
        raise NotFoundError(f"Virtual device not found: {container_id}", hint=NOT_FOUND_HINT) from None
    if not (inspection.get("State") or {}).get("Running"):
        raise ValidationError(f"Container {container_id} is not running")
    combined_tty = bool((inspection.get("Config") or {}).get("Tty"))

    if termios is None:
        log("WARN", "Keyboard input is not forwarded on this platform; the console is read-only.")
        stdin_fd = None
    elif stdin_fd is None:
        stdin_fd = sys.stdin.fileno()
    stdout = stdout or sys.stdout.buffer
    stderr = stderr or sys.stderr.buffer

    try:
        handle = api.attach_socket(
            container_id, params={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1}
        )
    except APIError as exc:
        raise EngineError(f"Failed to attach to {container_id}: {exc}") from exc
    sock = getattr(handle, "_sock", handle)

    log("INFO", "Attached to console. Ctrl+C stops the device, Ctrl+P Ctrl+Q detaches.")
    try:
        with RawTerminal(stdin_fd):
            result, requested = _pump(sock, stdin_fd, stdout, stderr, combined_tty)
    finally:
        try:
            sock.close()
        except OSError as exc:
            log("DEBUG", f"Error closing console stream: {exc}")

    if requested and result.outcome is AttachOutcome.STOPPED and on_stop is not None:
        on_stop()
    elif requested and result.outcome is AttachOutcome.DETACHED and on_detach is not None:
        on_detach()
    return result
