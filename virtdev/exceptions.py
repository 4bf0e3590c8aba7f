"""Custom exceptions for virtdev."""

from __future__ import annotations

from typing import Optional


class VirtDeviceError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(VirtDeviceError):
    """Bad input: missing file, wrong format, bad size string, unsupported host."""

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class NotFoundError(VirtDeviceError):
    """A container, image or partition could not be located."""

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class EngineError(VirtDeviceError):
    """The container engine rejected or failed an operation."""

    def __init__(self, message: str, output: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.output = output

    def __str__(self) -> str:
        if self.output and self.output.strip():
            return f"{self.message}: {self.output.strip()}"
        return self.message


class NameCollisionError(EngineError):
    """Create failed because a scanned name or port was taken in the meantime."""
