import pytest
from fastapi.testclient import TestClient

from localkube.lifecycle import LifecycleController
from localkube.registry import ApplicationRegistry
from tests.helpers import FakeAllocator, FakeDriver, FakeListeners, RecordingSink


@pytest.fixture
def registry():
    return ApplicationRegistry()


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def listeners():
    return FakeListeners()


@pytest.fixture
def allocator(driver):
    return FakeAllocator(driver)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def controller(registry, driver, listeners, allocator, sink):
    ctl = LifecycleController(
        registry=registry,
        driver=driver,
        listeners=listeners,
        allocator=allocator,
        log_sink=sink,
        call_timeout=5,
        port_attempts=3,
        sweep_orphans=True,
    )
    yield ctl
    ctl.close()


@pytest.fixture
def client(controller):
    from localkube.main import create_app

    return TestClient(create_app(controller))
