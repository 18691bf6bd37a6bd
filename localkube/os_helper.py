import platform
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class OsKind(str, Enum):
    UNIX = "unix"
    WINDOWS = "windows"


@dataclass(frozen=True)
class OperatingSystem:
    kind: OsKind
    separator: str
    parent: str
    cmd: str  # shell binary
    option: str  # flag that makes the shell run one command string
    host_option: str  # extra `docker run` flag so containers can reach the host

    def shell_args(self, command: str) -> List[str]:
        return [self.cmd, self.option, command]


UNIX = OperatingSystem(
    kind=OsKind.UNIX,
    separator="/",
    parent="..",
    cmd="bash",
    option="-c",
    host_option="--add-host=host.docker.internal:host-gateway",
)

WINDOWS = OperatingSystem(
    kind=OsKind.WINDOWS,
    separator="\\",
    parent="..",
    cmd="cmd.exe",
    option="/c",
    # Docker Desktop resolves host.docker.internal on its own.
    host_option="",
)


def detect(system_name: Optional[str] = None) -> OperatingSystem:
    name = platform.system() if system_name is None else system_name
    if name.lower().startswith("windows"):
        return WINDOWS
    return UNIX
