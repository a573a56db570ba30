"""Driver layer - container runtime abstraction."""

from berth.drivers.base import (
    ContainerInfo,
    ContainerSpec,
    ContainerStatus,
    Driver,
    Mount,
    PortBinding,
)
from berth.drivers.docker import DockerCliDriver

__all__ = [
    "ContainerInfo",
    "ContainerSpec",
    "ContainerStatus",
    "DockerCliDriver",
    "Driver",
    "Mount",
    "PortBinding",
]
