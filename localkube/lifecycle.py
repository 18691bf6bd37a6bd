"""
Application lifecycle controller.

Coordinates the port allocator, the container driver, the listener manager
and the registry so that a registered application always has a live
container and an attached listener. ``start`` undoes its side effects in
reverse order when a later step fails; ``stop`` tears down greedily and
reports every failure at the end.

The driver is any object with ``start(app)``, ``stop(instance)`` and
``remove_orphans()``; the listener manager any object with
``attach(port, target_port)``, ``detach(port)``, ``is_attached(port)`` and
``close()``.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional

from localkube import settings
from localkube.application import Application, new_application, parse_app
from localkube.errors import (
    ContainerStartFailed,
    ContainerStopFailed,
    InvalidArgument,
    ListenerAttachFailed,
    ListenerDetachFailed,
    LocalKubeError,
    NoFreePort,
    NotFound,
    RegistryConflict,
    ServicePortInUse,
    TeardownIncomplete,
    TimeoutExceeded,
)
from localkube.log_sink import LoggingLogSink, LogSink
from localkube.ports import PortAllocator
from localkube.registry import ApplicationRegistry

log = logging.getLogger(__name__)


class AppPhase(str, Enum):
    LIVE = "LIVE"
    STOPPING = "STOPPING"


class KeyedLocks:
    """
    One mutex per key, created on demand and dropped when unused. ``hold``
    takes several keys in sorted order so overlapping holders cannot deadlock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, list] = {}

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        entries = []
        with self._guard:
            for key in sorted(set(keys)):
                entry = self._locks.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
                entries.append((key, entry))
        acquired = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        self._locks.pop(key, None)


def _valid_id(app_id: Any) -> int:
    if isinstance(app_id, bool) or not isinstance(app_id, int) or app_id <= 0:
        raise InvalidArgument("id must be a positive integer", {"id": app_id})
    return app_id


class LifecycleController:
    def __init__(
        self,
        registry: ApplicationRegistry,
        driver,
        listeners,
        allocator: Optional[PortAllocator] = None,
        log_sink: Optional[LogSink] = None,
        call_timeout: float = settings.LOCALKUBE_CALL_TIMEOUT_SECONDS,
        port_attempts: int = settings.LOCALKUBE_PORT_ATTEMPTS,
        sweep_orphans: bool = settings.LOCALKUBE_SWEEP_ORPHANS_ON_START,
    ):
        self.registry = registry
        self.driver = driver
        self.listeners = listeners
        self.allocator = allocator or PortAllocator()
        self.log_sink = log_sink or LoggingLogSink()
        self.call_timeout = call_timeout
        self.port_attempts = max(1, port_attempts)
        self.sweep_orphans = sweep_orphans

        self._executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="localkube-call")
        self._locks = KeyedLocks()
        self._reserve_lock = threading.Lock()
        self._reserved_ids: set[int] = set()
        self._reserved_ports: set[int] = set()
        self._stopping: set[int] = set()

    # ------------------------------------------------------------------
    # external calls
    # ------------------------------------------------------------------

    def _call(
        self,
        step: str,
        fn: Callable,
        *args: Any,
        error: type = LocalKubeError,
        on_late_success: Optional[Callable[[], None]] = None,
    ) -> Any:
        """
        Run ``fn`` with the per-call deadline. Errors that are not already
        LocalKubeError are wrapped in ``error``. If the deadline passes and the
        call later succeeds, ``on_late_success`` undoes its effect.
        """
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeout:
            if on_late_success is not None:
                def _undo(f):
                    if not f.cancelled() and f.exception() is None:
                        log.warning("%s finished after its deadline, undoing it", step)
                        on_late_success()

                future.add_done_callback(_undo)
            raise TimeoutExceeded(
                f"{step} did not finish within {self.call_timeout}s", {"step": step}
            ) from None
        except LocalKubeError:
            raise
        except Exception as e:
            raise error(f"{step} failed: {e}", {"step": step}) from e

    def _best_effort(self, what: str, fn: Callable, *args: Any) -> None:
        """Call ``fn`` without a deadline, logging instead of raising. Runs off the request path."""
        try:
            fn(*args)
        except Exception as e:
            log.warning("%s failed: %s", what, e)

    def _stop_quietly(self, instance: str) -> None:
        try:
            self._call("container stop", self.driver.stop, instance, error=ContainerStopFailed)
        except LocalKubeError as e:
            log.warning("rollback: container %s not stopped: %s", instance, e)

    def _detach_quietly(self, port: int) -> None:
        try:
            self._call("listener detach", self.listeners.detach, port, error=ListenerDetachFailed)
        except LocalKubeError as e:
            log.warning("rollback: listener on port %s not detached: %s", port, e)

    # ------------------------------------------------------------------
    # reservations held by in-flight starts
    # ------------------------------------------------------------------

    def _reserve_id(self) -> int:
        with self._reserve_lock:
            app_id = self.registry.next_id()
            while app_id in self._reserved_ids:
                app_id += 1
            self._reserved_ids.add(app_id)
            return app_id

    def _release_id(self, app_id: int) -> None:
        with self._reserve_lock:
            self._reserved_ids.discard(app_id)

    def _reserve_service_port(self, port_app: int, start: Optional[int] = None) -> int:
        candidate = start
        for _ in range(self.port_attempts):
            port = self._call("port allocation", self.allocator.acquire, candidate, error=NoFreePort)
            with self._reserve_lock:
                if (
                    port != port_app
                    and port not in self._reserved_ports
                    and port not in self.registry.service_ports()
                ):
                    self._reserved_ports.add(port)
                    return port
            log.info("service port %s already claimed, probing further", port)
            candidate = port + 1
        raise NoFreePort(
            f"no unclaimed service port after {self.port_attempts} attempts",
            {"attempts": self.port_attempts},
        )

    def _release_service_port(self, port: int) -> None:
        with self._reserve_lock:
            self._reserved_ports.discard(port)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def start(self, value: Optional[str]) -> Application:
        name, port_app = parse_app(value)
        with self._locks.hold(("port", port_app)):
            owner = self.registry.find_by_port(port_app)
            if owner is not None or self.listeners.is_attached(port_app):
                raise ListenerAttachFailed(
                    f"port {port_app} is already attached",
                    {"port": port_app, "id": owner.id if owner else None},
                )
            app_id = self._reserve_id()
            try:
                return self._start_reserved(app_id, name, port_app)
            except LocalKubeError as e:
                self.log_sink.write(app_id, "start_failed", app=f"{name}:{port_app}", error=e.kind, message=e.message)
                raise
            finally:
                self._release_id(app_id)

    def _start_reserved(self, app_id: int, name: str, port_app: int) -> Application:
        last_error: Optional[LocalKubeError] = None
        start_from: Optional[int] = None
        for attempt in range(1, self.port_attempts + 1):
            port_service = self._reserve_service_port(port_app, start_from)
            try:
                app = new_application(app_id, name, port_app, port_service)
                log.info("starting %s: id=%s instance=%s service-port=%s", app.app, app_id, app.instance, port_service)
                try:
                    self._call(
                        "container start",
                        self.driver.start,
                        app,
                        error=ContainerStartFailed,
                        on_late_success=lambda: self._best_effort("late container stop", self.driver.stop, app.instance),
                    )
                except ServicePortInUse as e:
                    log.warning("attempt %s/%s for %s lost service port %s: %s", attempt, self.port_attempts, app.app, port_service, e)
                    last_error = e
                    start_from = port_service + 1
                    continue
                return self._attach_and_register(app)
            finally:
                self._release_service_port(port_service)
        raise last_error

    def _attach_and_register(self, app: Application) -> Application:
        try:
            self._call(
                "listener attach",
                self.listeners.attach,
                app.port_app,
                app.port_service,
                error=ListenerAttachFailed,
                on_late_success=lambda: self._best_effort("late listener detach", self.listeners.detach, app.port_app),
            )
        except LocalKubeError as e:
            log.warning("listener attach failed for %s, stopping container %s: %s", app.app, app.instance, e)
            self._stop_quietly(app.instance)
            raise

        try:
            stored = self.registry.insert(app)
        except RegistryConflict as e:
            log.warning("registry rejected %s, rolling back: %s", app.app, e)
            self._detach_quietly(app.port_app)
            self._stop_quietly(app.instance)
            raise RegistryConflict(e.message, e.details) from e

        log.info("application %s started: id=%s", stored.app, stored.id)
        self.log_sink.write(
            stored.id,
            "started",
            app=stored.app,
            servicePort=stored.port_service,
            instance=stored.instance,
        )
        return stored

    def stop(self, app_id: int) -> Application:
        _valid_id(app_id)
        while True:
            app = self.registry.find_by_id(app_id)
            if app is None:
                raise NotFound(f"application {app_id} not found", {"id": app_id})
            with self._locks.hold(("id", app_id), ("port", app.port_app)):
                current = self.registry.find_by_id(app_id)
                if current is None:
                    raise NotFound(f"application {app_id} not found", {"id": app_id})
                if current is not app:
                    # id was reused by a different application meanwhile; lock its port instead
                    continue
                return self._teardown(app, surface_detach_errors=True)

    def _teardown(self, app: Application, surface_detach_errors: bool) -> Application:
        errors: List[LocalKubeError] = []
        with self._reserve_lock:
            self._stopping.add(app.id)
        log.info("stopping application %s: id=%s instance=%s", app.app, app.id, app.instance)
        try:
            try:
                self._call("container stop", self.driver.stop, app.instance, error=ContainerStopFailed)
            except LocalKubeError as e:
                log.warning("container stop failed for %s: %s", app.instance, e)
                errors.append(e)

            try:
                self._call("listener detach", self.listeners.detach, app.port_app, error=ListenerDetachFailed)
            except LocalKubeError as e:
                log.warning("listener detach failed for port %s: %s", app.port_app, e)
                if surface_detach_errors:
                    errors.append(e)

            removed = self.registry.remove(app)
        finally:
            with self._reserve_lock:
                self._stopping.discard(app.id)

        if errors:
            self.log_sink.write(removed.id, "stop_incomplete", app=removed.app, errors=[e.kind for e in errors])
            raise TeardownIncomplete(removed, errors)
        self.log_sink.write(removed.id, "stopped", app=removed.app, elapsed=removed.elapsed_time())
        return removed

    def shutdown(self) -> List[LocalKubeError]:
        """
        Stop every registered application, whatever happens to the others.
        Listener detach failures are only logged since the HTTP server may
        already be going down. Returns the errors that were encountered.
        """
        errors: List[LocalKubeError] = []
        apps = self.registry.snapshot()
        log.info("shutdown: stopping %d application(s)", len(apps))
        for app in apps:
            try:
                with self._locks.hold(("id", app.id), ("port", app.port_app)):
                    if self.registry.find_by_id(app.id) is not app:
                        continue
                    self._teardown(app, surface_detach_errors=False)
            except TeardownIncomplete as e:
                errors.extend(e.errors)
            except LocalKubeError as e:
                log.warning("shutdown: application %s not stopped cleanly: %s", app.id, e)
                errors.append(e)
        self.listeners.close()
        if errors:
            log.warning("shutdown finished with %d error(s)", len(errors))
        return errors

    def recover(self) -> List[str]:
        """Remove containers left behind by a previous process of this node."""
        if not self.sweep_orphans:
            return []
        try:
            return self._call("orphan sweep", self.driver.remove_orphans, error=ContainerStopFailed)
        except LocalKubeError as e:
            log.warning("orphan sweep failed: %s", e)
            return []

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.log_sink.close()

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def list(self) -> List[Application]:
        return self.registry.snapshot()

    def get(self, app_id: int) -> Application:
        _valid_id(app_id)
        app = self.registry.find_by_id(app_id)
        if app is None:
            raise NotFound(f"application {app_id} not found", {"id": app_id})
        return app

    def phase(self, app_id: int) -> Optional[AppPhase]:
        if self.registry.find_by_id(app_id) is None:
            return None
        with self._reserve_lock:
            return AppPhase.STOPPING if app_id in self._stopping else AppPhase.LIVE
