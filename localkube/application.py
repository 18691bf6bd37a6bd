import re
import time
from dataclasses import dataclass, replace
from typing import Optional

from localkube.errors import InvalidArgument

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class Application:
    """
    A registered application. Immutable: the registry stamps ``start_time`` by
    building a new value on insert.
    """

    id: int
    name: str
    port_app: int
    port_service: int
    instance: str
    start_time: Optional[float] = None

    @property
    def app(self) -> str:
        return f"{self.name}:{self.port_app}"

    def started(self, now: Optional[float] = None) -> "Application":
        return replace(self, start_time=time.monotonic() if now is None else now)

    def elapsed_time(self, now: Optional[float] = None) -> str:
        if self.start_time is None:
            return format_elapsed(0)
        now = time.monotonic() if now is None else now
        return format_elapsed(now - self.start_time)


def format_elapsed(seconds: float) -> str:
    """``<minutes>m<seconds>s``, each field modulo 60."""
    total = max(0, int(seconds))
    return f"{(total // 60) % 60}m{total % 60}s"


def instance_name(name: str, port_app: int) -> str:
    return f"{name}_{port_app}"


def _check_port(port: int, what: str) -> int:
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidArgument(f"{what} must be a TCP port in [1, 65535]", {what: port})
    return port


def parse_app(value: Optional[str]) -> tuple[str, int]:
    """
    Split ``<name>:<port>`` into its name and public port.

    Raises InvalidArgument for a missing value, an empty or unsafe name, or a
    port outside [1, 65535].
    """
    if value is None:
        raise InvalidArgument("app identifier is required")
    if not isinstance(value, str):
        raise InvalidArgument("app identifier must be a string", {"app": repr(value)})
    raw = value.strip()
    name, sep, port_str = raw.rpartition(":")
    if not sep or not name:
        raise InvalidArgument("app identifier must look like <name>:<port>", {"app": value})
    if not _NAME_RE.match(name):
        raise InvalidArgument("app name may only contain letters, digits, '_', '.' and '-'", {"app": value})
    # ASCII digits only, at most 5 of them
    if not (port_str.isascii() and port_str.isdigit()) or len(port_str) > 5:
        raise InvalidArgument("app port must be a number", {"app": value})
    return name, _check_port(int(port_str), "port")


def new_application(app_id: int, name: str, port_app: int, port_service: int) -> Application:
    if isinstance(app_id, bool) or not isinstance(app_id, int) or app_id <= 0:
        raise InvalidArgument("id must be a positive integer", {"id": app_id})
    if not name:
        raise InvalidArgument("name must not be empty")
    _check_port(port_app, "port")
    _check_port(port_service, "service-port")
    return Application(
        id=app_id,
        name=name,
        port_app=port_app,
        port_service=port_service,
        instance=instance_name(name, port_app),
    )

