"""Docker driver."""

from berth.drivers.docker.docker import DockerCliDriver

__all__ = ["DockerCliDriver"]
