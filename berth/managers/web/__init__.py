"""Static web preview provisioning."""

from berth.managers.web.nginx import ContentKind
from berth.managers.web.provisioner import WebErrorCode, WebServerProvisioner, WebServerResult

__all__ = ["ContentKind", "WebErrorCode", "WebServerProvisioner", "WebServerResult"]
