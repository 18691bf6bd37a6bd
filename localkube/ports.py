import logging
import socket

from localkube import settings
from localkube.errors import InvalidArgument, NoFreePort

log = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """True if a TCP socket could bind ``(host, port)`` right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """
    Finds a bindable TCP port by probing upward from ``low``.

    A probed port is released immediately, so another process may take it
    before the caller binds it; callers must treat a later bind failure on the
    returned port as retryable.
    """

    def __init__(
        self,
        low: int = settings.LOCALKUBE_SERVICE_PORT_MIN,
        high: int = settings.LOCALKUBE_SERVICE_PORT_MAX,
        host: str = "127.0.0.1",
    ):
        if not 1 <= low <= high <= 65535:
            raise InvalidArgument("invalid service port range", {"low": low, "high": high})
        self.low = low
        self.high = high
        self.host = host

    def acquire(self, start: int | None = None) -> int:
        first = self.low if start is None else max(self.low, start)
        for port in range(first, self.high + 1):
            if is_port_free(port, self.host):
                return port
        log.warning("no free service port in [%s, %s]", first, self.high)
        raise NoFreePort(
            "no available service port found",
            {"low": first, "high": self.high},
        )
