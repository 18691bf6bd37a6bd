import logging
import time
from typing import List, Optional

from localkube import settings
from localkube.application import Application
from localkube.docker_ops import TIMEOUT_CODE, CmdResult, docker, docker_bin_name, is_podman, run
from localkube.errors import (
    ContainerStartFailed,
    ContainerStopFailed,
    ServicePortInUse,
    TimeoutExceeded,
)
from localkube.labels import labels_for_app, node_filter
from localkube.os_helper import OperatingSystem, detect

log = logging.getLogger(__name__)

_PORT_TAKEN_HINTS = ("port is already allocated", "address already in use", "bind for")


def _is_missing(r: CmdResult) -> bool:
    msg = r.message.lower()
    return "no such container" in msg or "no such object" in msg or "not found" in msg


class DockerContainerDriver:
    """
    Launches one container per application through the docker (or podman) CLI.

    The container publishes its service port on loopback only; public traffic
    reaches it through the listener attached on the application port.
    """

    def __init__(
        self,
        os_info: Optional[OperatingSystem] = None,
        image_template: str = settings.LOCALKUBE_IMAGE_TEMPLATE,
        build_command: Optional[str] = settings.LOCALKUBE_BUILD_COMMAND,
        network: Optional[str] = settings.LOCALKUBE_DOCKER_NETWORK,
        node: str = settings.LOCALKUBE_NODE_NAME,
        start_check_seconds: float = 2,
    ):
        self.os = os_info or detect()
        self.image_template = image_template
        self.build_command = build_command or ""
        self.network = network or ""
        self.node = node
        self.start_check_seconds = start_check_seconds

    def image_for(self, app: Application) -> str:
        return self.image_template.format(name=app.name, port=app.port_app)

    def _build(self, app: Application) -> None:
        if not self.build_command:
            return
        cmd = self.build_command.format(name=app.name, port=app.port_app, sep=self.os.separator, parent=self.os.parent)
        log.info("prepare image: app=%s cmd=%s", app.app, cmd)
        r = run(self.os.shell_args(cmd), timeout_sec=settings.LOCALKUBE_DOCKER_TIMEOUT_SECONDS)
        if r.code == TIMEOUT_CODE:
            raise TimeoutExceeded(f"image preparation timed out for {app.app}", {"instance": app.instance})
        if not r.ok:
            raise ContainerStartFailed(
                f"image preparation failed for {app.app}: {r.message}",
                {"instance": app.instance, "code": r.code},
            )

    def run_args(self, app: Application) -> List[str]:
        args = ["run", "-d", "--name", app.instance]
        args += ["-p", f"127.0.0.1:{app.port_service}:{app.port_service}"]
        args += ["-e", f"SERVICE_PORT={app.port_service}"]
        args += ["-e", f"APP_PORT={app.port_app}"]
        args += ["-e", f"APP_NAME={app.name}"]
        if self.network:
            args += ["--network", self.network]
        # podman has no host-gateway alias; it exposes host.containers.internal itself
        if self.os.host_option and not is_podman():
            args.append(self.os.host_option)
        for k, v in labels_for_app(app, self.node).items():
            args += ["--label", f"{k}={v}"]
        args.append(self.image_for(app))
        return args

    def exists(self, instance: str) -> bool:
        return docker("inspect", instance, timeout_sec=10).ok

    def is_running(self, instance: str) -> bool:
        r = docker("inspect", "-f", "{{.State.Running}}", instance, timeout_sec=10)
        return r.ok and r.out.strip().lower() == "true"

    def start(self, app: Application) -> None:
        name = app.instance
        # never replace a live container: the name is owned by whoever started it
        if self.exists(name):
            raise ContainerStartFailed(
                f"container {name} already exists (engine={docker_bin_name()})",
                {"instance": name},
            )

        self._build(app)

        r = docker(*self.run_args(app))
        if r.code == TIMEOUT_CODE:
            self._remove_quietly(name)
            raise TimeoutExceeded(f"docker run timed out for {name}", {"instance": name})
        if not r.ok:
            # `docker run` may have created the container before failing to start it
            self._remove_quietly(name)
            msg = r.message
            details = {"instance": name, "service-port": app.port_service, "code": r.code}
            if any(h in msg.lower() for h in _PORT_TAKEN_HINTS):
                raise ServicePortInUse(f"service port {app.port_service} is taken: {msg}", details)
            raise ContainerStartFailed(f"docker run failed for {name}: {msg}", details)

        self._assert_running(name)
        log.info("container started: instance=%s service-port=%s", name, app.port_service)

    def _inspect_field(self, name: str, go_template: str) -> str:
        r = docker("inspect", "-f", go_template, name, timeout_sec=10)
        if not r.ok:
            return ""
        return r.out.strip()

    def _assert_running(self, name: str) -> None:
        """
        Wait briefly for the container to stay up. A container that exits right
        away is removed and reported with the tail of its logs.
        """
        deadline = time.monotonic() + max(0.0, self.start_check_seconds)
        while True:
            if self.is_running(name):
                return
            status = self._inspect_field(name, "{{.State.Status}}") or "unknown"
            if status in ("exited", "dead") or time.monotonic() >= deadline:
                exit_code = self._inspect_field(name, "{{.State.ExitCode}}")
                logs = docker("logs", "--tail", "80", name, timeout_sec=10)
                tail = (logs.out or logs.err or "").strip()
                self._remove_quietly(name)
                raise ContainerStartFailed(
                    f"container {name} is not running after start: status={status}, exitCode={exit_code}",
                    {"instance": name, "logsTail": tail[-2000:]},
                )
            time.sleep(0.2)

    def stop(self, instance: str) -> None:
        r = docker("rm", "-f", instance, timeout_sec=30)
        if r.ok or _is_missing(r):
            log.info("container removed: instance=%s", instance)
            return
        if r.code == TIMEOUT_CODE:
            raise TimeoutExceeded(f"docker rm timed out for {instance}", {"instance": instance})
        raise ContainerStopFailed(f"docker rm failed for {instance}: {r.message}", {"instance": instance, "code": r.code})

    def _remove_quietly(self, name: str) -> None:
        r = docker("rm", "-f", name, timeout_sec=30)
        if not r.ok and not _is_missing(r):
            log.warning("cleanup of container %s failed: %s", name, r.message)

    def list_managed(self) -> List[str]:
        """Names of all containers (running or not) labelled for this node."""
        r = docker("ps", "-a", "--filter", node_filter(self.node), "--format", "{{.Names}}", timeout_sec=10)
        if not r.ok:
            log.warning("listing managed containers failed: %s", r.message)
            return []
        return [line.strip() for line in r.out.splitlines() if line.strip()]

    def remove_orphans(self) -> List[str]:
        removed = []
        for name in self.list_managed():
            try:
                self.stop(name)
                removed.append(name)
            except (ContainerStopFailed, TimeoutExceeded) as e:
                log.warning("orphan container %s not removed: %s", name, e)
        if removed:
            log.info("removed %d orphan container(s): %s", len(removed), removed)
        return removed
