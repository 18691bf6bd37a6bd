"""
Shared test doubles: in-memory container driver, listener manager, port
allocator and event sink, plus a random application builder.
"""
import random
import threading
import time
from typing import Optional

from localkube.application import Application, new_application
from localkube.errors import ContainerStartFailed, ContainerStopFailed, ListenerAttachFailed, ListenerDetachFailed, NoFreePort
from localkube.log_sink import LogSink


def random_application(rng: Optional[random.Random] = None, app_id: Optional[int] = None) -> Application:
    rng = rng or random.Random()
    return new_application(
        app_id if app_id is not None else rng.randint(1, 100_000),
        "hello",
        rng.randint(1, 65535),
        rng.randint(49152, 65535),
    )


class FakeDriver:
    """Containers live in a dict keyed by instance name."""

    def __init__(self):
        self.lock = threading.Lock()
        self.running: dict[str, Application] = {}
        self.calls: list[tuple[str, str]] = []
        self.start_errors: list[Exception] = []
        self.stop_error: Optional[Exception] = None
        self.start_delay = 0.0
        self.stop_gate: Optional[threading.Event] = None
        self.stopping = threading.Event()

    def start(self, app: Application) -> None:
        with self.lock:
            self.calls.append(("start", app.instance))
            err = self.start_errors.pop(0) if self.start_errors else None
        if self.start_delay:
            time.sleep(self.start_delay)
        if err is not None:
            raise err
        with self.lock:
            if app.instance in self.running:
                raise ContainerStartFailed(f"container {app.instance} already exists")
            self.running[app.instance] = app

    def stop(self, instance: str) -> None:
        with self.lock:
            self.calls.append(("stop", instance))
        self.stopping.set()
        if self.stop_gate is not None:
            self.stop_gate.wait(5)
        if self.stop_error is not None:
            raise self.stop_error
        with self.lock:
            self.running.pop(instance, None)

    def remove_orphans(self) -> list[str]:
        with self.lock:
            names = list(self.running)
            self.running.clear()
        return names

    def service_ports(self) -> set[int]:
        with self.lock:
            return {a.port_service for a in self.running.values()}

    def started(self) -> list[str]:
        return [name for op, name in self.calls if op == "start"]


class FakeListeners:
    def __init__(self):
        self.lock = threading.Lock()
        self.attached: dict[int, int] = {}
        self.attach_error: Optional[Exception] = None
        self.detach_error: Optional[Exception] = None
        self.closed = False

    def attach(self, port: int, target_port: int) -> None:
        with self.lock:
            if self.attach_error is not None:
                raise self.attach_error
            if port in self.attached:
                raise ListenerAttachFailed(f"port {port} already attached")
            self.attached[port] = target_port

    def detach(self, port: int) -> None:
        with self.lock:
            if self.detach_error is not None:
                raise self.detach_error
            if self.attached.pop(port, None) is None:
                raise ListenerDetachFailed(f"no listener on port {port}")

    def is_attached(self, port: int) -> bool:
        with self.lock:
            return port in self.attached

    def close(self) -> None:
        with self.lock:
            self.attached.clear()
            self.closed = True


class FakeAllocator:
    """Hands out the lowest port not published by a fake container."""

    def __init__(self, driver: FakeDriver, low: int = 49152, high: int = 65535):
        self.driver = driver
        self.low = low
        self.high = high
        self.exhausted = False
        self.busy: set[int] = set()

    def acquire(self, start: Optional[int] = None) -> int:
        if self.exhausted:
            raise NoFreePort("no available service port found")
        taken = self.driver.service_ports() | self.busy
        for port in range(max(self.low, start or self.low), self.high + 1):
            if port not in taken:
                return port
        raise NoFreePort("no available service port found")


class RecordingSink(LogSink):
    def __init__(self):
        self.lock = threading.Lock()
        self.events: list[tuple[int, str, dict]] = []

    def write(self, app_id, event, **fields):
        with self.lock:
            self.events.append((app_id, event, fields))

    def names(self) -> list[str]:
        return [e for _, e, _ in self.events]
