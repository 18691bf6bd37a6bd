import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from localkube import settings

log = logging.getLogger(__name__)

# exit code reported when a command ran past its timeout (same as coreutils `timeout`)
TIMEOUT_CODE = 124


@dataclass(frozen=True)
class CmdResult:
    code: int
    out: str
    err: str

    @property
    def ok(self) -> bool:
        return self.code == 0

    @property
    def message(self) -> str:
        return (self.err or self.out or "").strip()


def run(cmd: List[str], timeout_sec: float = 60, stdin: Optional[str] = None) -> CmdResult:
    try:
        p = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            input=stdin,
            timeout=timeout_sec,
            shell=False,
            check=False,
        )
        return CmdResult(code=p.returncode, out=p.stdout or "", err=p.stderr or "")
    except FileNotFoundError as e:
        # binary missing / not on PATH
        return CmdResult(code=127, out="", err=str(e))
    except subprocess.TimeoutExpired:
        log.warning("command timed out after %ss: %s", timeout_sec, cmd[:3])
        return CmdResult(code=TIMEOUT_CODE, out="", err=f"timed out after {timeout_sec}s")
    except OSError as e:
        return CmdResult(code=1, out="", err=str(e))


def docker_bin_name() -> str:
    """
    Return the container engine binary name (docker/podman).
    """
    return (settings.LOCALKUBE_DOCKER_BIN or "docker").strip()


def docker(*args: str, timeout_sec: Optional[float] = None, stdin: Optional[str] = None) -> CmdResult:
    timeout = settings.LOCALKUBE_DOCKER_TIMEOUT_SECONDS if timeout_sec is None else timeout_sec
    return run([docker_bin_name(), *args], timeout_sec=timeout, stdin=stdin)


def is_podman() -> bool:
    return "podman" in docker_bin_name().lower()
