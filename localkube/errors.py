"""
Error taxonomy of the lifecycle controller.

Every error carries a stable ``kind`` (rendered in REST responses) and the
HTTP status the REST adapter maps it to.
"""
from typing import Any, Optional


class LocalKubeError(Exception):
    """Base class for all controller errors."""

    kind = "LocalKubeError"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidArgument(LocalKubeError):
    kind = "InvalidArgument"
    status_code = 400


class NotFound(LocalKubeError):
    kind = "NotFound"
    status_code = 404


class RegistryConflict(LocalKubeError):
    kind = "RegistryConflict"
    status_code = 409


class DuplicateId(RegistryConflict):
    kind = "DuplicateId"


class NoFreePort(LocalKubeError):
    kind = "NoFreePort"


class ContainerStartFailed(LocalKubeError):
    kind = "ContainerStartFailed"


class ServicePortInUse(ContainerStartFailed):
    """The engine could not publish the service port; another port may work."""

    kind = "ServicePortInUse"


class ContainerStopFailed(LocalKubeError):
    kind = "ContainerStopFailed"


class ListenerAttachFailed(LocalKubeError):
    kind = "ListenerAttachFailed"


class ListenerDetachFailed(LocalKubeError):
    kind = "ListenerDetachFailed"


class TimeoutExceeded(LocalKubeError):
    kind = "TimeoutExceeded"


class TeardownIncomplete(LocalKubeError):
    """
    A stop removed the application from the registry but one or more teardown
    steps failed. ``errors`` holds every failure in the order encountered.
    """

    kind = "TeardownIncomplete"

    def __init__(self, app, errors: list[LocalKubeError]):
        self.app = app
        self.errors = list(errors)
        super().__init__(
            f"application {app.id} removed with {len(self.errors)} teardown error(s)",
            {"id": app.id, "errors": [e.to_dict() for e in self.errors]},
        )
