"""virtdev package: run OS disk images as short-lived QEMU containers."""

__all__ = [
    "accel",
    "arch",
    "config",
    "console",
    "constants",
    "containers",
    "exceptions",
    "image",
    "models",
    "partitions",
    "utils",
    "workflow",
]
