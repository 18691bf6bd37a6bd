import random
import re
import threading
import time

import pytest

from localkube.errors import (
    ContainerStartFailed,
    ContainerStopFailed,
    DuplicateId,
    InvalidArgument,
    ListenerAttachFailed,
    ListenerDetachFailed,
    NoFreePort,
    NotFound,
    RegistryConflict,
    ServicePortInUse,
    TeardownIncomplete,
    TimeoutExceeded,
)
from localkube.application import new_application
from localkube.lifecycle import AppPhase, KeyedLocks, LifecycleController
from localkube.registry import ApplicationRegistry
from tests.helpers import FakeAllocator, FakeDriver, FakeListeners, RecordingSink

ELAPSED_RE = re.compile(r"^\d+m\d+s$")


def assert_clean(registry, driver, listeners):
    assert registry.size() == 0
    assert driver.running == {}
    assert listeners.attached == {}


class TestStart:
    def test_basic_lifecycle(self, controller, registry, driver, listeners):
        app = controller.start("hello:8080")

        assert (app.id, app.name, app.port_app, app.instance) == (1, "hello", 8080, "hello_8080")
        assert 49152 <= app.port_service <= 65535
        assert list(driver.running) == ["hello_8080"]
        assert listeners.attached == {8080: app.port_service}
        assert controller.list() == [app]

        stopped = controller.stop(app.id)

        assert stopped == app
        assert ELAPSED_RE.match(stopped.elapsed_time())
        assert controller.list() == []
        assert_clean(registry, driver, listeners)

    def test_id_sequencing_reuses_max_plus_one(self, controller):
        a = controller.start("a:1")
        b = controller.start("b:2")
        controller.stop(a.id)
        c = controller.start("c:3")

        assert (a.id, b.id, c.id) == (1, 2, 3)

        controller.stop(b.id)
        controller.stop(c.id)
        assert controller.start("d:4").id == 1

    def test_id_sequence_after_stopping_highest(self, controller):
        controller.start("a:1")
        controller.start("b:2")
        controller.stop(2)

        assert controller.start("c:3").id == 2

    def test_service_ports_are_unique(self, controller):
        apps = [controller.start(f"svc{i}:{8000 + i}") for i in range(6)]

        ports = [a.port_service for a in apps]
        assert len(set(ports)) == len(ports)
        assert all(49152 <= p <= 65535 for p in ports)

    @pytest.mark.parametrize("value", [None, "", "nope", "x:0", "x:70000", ":80", "x:\u00b2", "x:\u0663", "x:" + "9" * 5000])
    def test_invalid_identifier_has_no_side_effects(self, controller, registry, driver, listeners, value):
        with pytest.raises(InvalidArgument):
            controller.start(value)

        assert driver.calls == []
        assert_clean(registry, driver, listeners)

    def test_no_free_port(self, controller, registry, driver, listeners, allocator):
        allocator.exhausted = True

        with pytest.raises(NoFreePort):
            controller.start("hello:8080")

        assert driver.calls == []
        assert_clean(registry, driver, listeners)

    def test_claimed_ports_are_skipped_up_to_the_attempt_bound(self, registry, driver, listeners, sink):
        class StickyAllocator:
            """Ignores the start hint, like a prober racing other allocators."""

            def acquire(self, start=None):
                return 49152

        registry.insert(new_application(9, "taken", 1, 49152))
        ctl = LifecycleController(registry, driver, listeners, allocator=StickyAllocator(), log_sink=sink, port_attempts=3)
        try:
            with pytest.raises(NoFreePort):
                ctl.start("hello:8080")
        finally:
            ctl.close()
        assert driver.calls == []

    def test_service_port_never_equals_the_public_port(self, controller, driver, listeners):
        app = controller.start("x:49152")

        assert app.port_service == 49153
        assert driver.running["x_49152"].port_service == 49153
        assert listeners.attached[49152] == 49153

    def test_container_start_failure(self, controller, registry, driver, listeners, sink):
        driver.start_errors = [ContainerStartFailed("image not found")]

        with pytest.raises(ContainerStartFailed):
            controller.start("hello:8080")

        assert_clean(registry, driver, listeners)
        assert sink.names() == ["start_failed"]

    def test_unexpected_driver_error_is_wrapped(self, controller, registry, driver, listeners):
        driver.start_errors = [OSError("docker socket gone")]

        with pytest.raises(ContainerStartFailed, match="docker socket gone"):
            controller.start("hello:8080")

        assert_clean(registry, driver, listeners)

    def test_service_port_race_is_retried_with_a_new_port(self, controller, driver):
        driver.start_errors = [ServicePortInUse("port is already allocated")]

        app = controller.start("hello:8080")

        assert driver.started() == ["hello_8080", "hello_8080"]
        assert app.port_service == 49153
        assert driver.running["hello_8080"].port_service == 49153

    def test_service_port_race_gives_up_after_bound(self, controller, registry, driver, listeners):
        driver.start_errors = [ServicePortInUse("taken") for _ in range(3)]

        with pytest.raises(ServicePortInUse):
            controller.start("hello:8080")

        assert len(driver.started()) == 3
        assert_clean(registry, driver, listeners)

    def test_listener_failure_stops_container(self, controller, registry, driver, listeners, sink):
        listeners.attach_error = ListenerAttachFailed("address already in use")

        with pytest.raises(ListenerAttachFailed):
            controller.start("hello:8080")

        assert driver.calls == [("start", "hello_8080"), ("stop", "hello_8080")]
        assert_clean(registry, driver, listeners)
        assert [e for _, e, _ in sink.events] == ["start_failed"]

    def test_port_already_attached_fails_before_side_effects(self, controller, driver, listeners):
        listeners.attached[8080] = 1

        with pytest.raises(ListenerAttachFailed):
            controller.start("hello:8080")

        assert driver.calls == []

    def test_registry_conflict_rolls_back_listener_and_container(self, driver, listeners, allocator, sink):
        class RacingRegistry(ApplicationRegistry):
            def insert(self, app):
                raise DuplicateId(f"application id {app.id} already registered", {"id": app.id})

        registry = RacingRegistry()
        ctl = LifecycleController(registry, driver, listeners, allocator=allocator, log_sink=sink)
        try:
            with pytest.raises(RegistryConflict) as exc:
                ctl.start("hello:8080")
        finally:
            ctl.close()

        assert type(exc.value) is RegistryConflict
        assert listeners.attached == {}
        assert driver.running == {}
        assert driver.calls[-1] == ("stop", "hello_8080")

    def test_container_start_deadline(self, registry, driver, listeners, allocator, sink):
        driver.start_delay = 0.3
        ctl = LifecycleController(registry, driver, listeners, allocator=allocator, log_sink=sink, call_timeout=0.05)
        try:
            with pytest.raises(TimeoutExceeded):
                ctl.start("slow:8080")

            # the container came up after the deadline and must be taken down again
            deadline = time.monotonic() + 3
            while time.monotonic() < deadline and (("stop", "slow_8080") not in driver.calls or driver.running):
                time.sleep(0.02)
        finally:
            ctl.close()

        assert ("stop", "slow_8080") in driver.calls
        assert driver.running == {}
        assert listeners.attached == {}
        assert registry.size() == 0

    def test_parallel_starts_on_same_port(self, controller, registry, driver, listeners):
        driver.start_delay = 0.05
        barrier = threading.Barrier(2)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(controller.start("x:9000"))
            except ListenerAttachFailed as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert registry.snapshot() == results
        assert list(driver.running) == ["x_9000"]
        assert driver.started() == ["x_9000"]
        assert list(listeners.attached) == [9000]

    def test_parallel_starts_on_distinct_ports_get_distinct_ids(self, controller, registry):
        barrier = threading.Barrier(3)
        results, errors = [], []

        def worker(i):
            barrier.wait()
            try:
                results.append(controller.start(f"app{i}:{7000 + i}"))
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(a.id for a in results) == [1, 2, 3]
        assert len({a.port_service for a in registry.snapshot()}) == 3


class TestStop:
    def test_unknown_id(self, controller):
        with pytest.raises(NotFound):
            controller.stop(999)

    @pytest.mark.parametrize("app_id", [0, -4, "1", None])
    def test_invalid_id(self, controller, app_id):
        with pytest.raises(InvalidArgument):
            controller.stop(app_id)

    def test_second_stop_is_not_found(self, controller):
        app = controller.start("hello:8080")
        controller.stop(app.id)

        with pytest.raises(NotFound):
            controller.stop(app.id)

    def test_container_stop_failure_still_tears_down(self, controller, registry, listeners, driver, sink):
        app = controller.start("hello:8080")
        driver.stop_error = ContainerStopFailed("daemon unreachable")

        with pytest.raises(TeardownIncomplete) as exc:
            controller.stop(app.id)

        assert exc.value.app == app
        assert [e.kind for e in exc.value.errors] == ["ContainerStopFailed"]
        assert registry.find_by_id(app.id) is None
        assert listeners.attached == {}
        assert sink.names()[-1] == "stop_incomplete"

    def test_every_teardown_error_is_reported(self, controller, registry, driver, listeners):
        app = controller.start("hello:8080")
        driver.stop_error = ContainerStopFailed("daemon unreachable")
        listeners.detach_error = ListenerDetachFailed("connector not found")

        with pytest.raises(TeardownIncomplete) as exc:
            controller.stop(app.id)

        assert [e.kind for e in exc.value.errors] == ["ContainerStopFailed", "ListenerDetachFailed"]
        assert registry.size() == 0

    def test_stopping_application_stays_visible(self, controller, driver):
        app = controller.start("hello:8080")
        driver.stop_gate = threading.Event()
        stopper = threading.Thread(target=controller.stop, args=(app.id,))
        stopper.start()
        try:
            assert driver.stopping.wait(2)
            assert controller.phase(app.id) == AppPhase.STOPPING
            assert controller.list() == [app]
        finally:
            driver.stop_gate.set()
            stopper.join(2)

        assert controller.list() == []
        assert controller.phase(app.id) is None


class TestShutdown:
    def test_stops_everything(self, controller, registry, driver, listeners):
        for v in ["a:8001", "b:8002", "c:8003"]:
            controller.start(v)

        assert controller.shutdown() == []

        assert_clean(registry, driver, listeners)
        assert sorted(n for op, n in driver.calls if op == "stop") == ["a_8001", "b_8002", "c_8003"]
        assert listeners.closed

    def test_continues_after_failures(self, controller, registry, driver, listeners):
        for v in ["a:8001", "b:8002"]:
            controller.start(v)
        driver.stop_error = ContainerStopFailed("boom")

        errors = controller.shutdown()

        assert [e.kind for e in errors] == ["ContainerStopFailed", "ContainerStopFailed"]
        assert registry.size() == 0

    def test_listener_detach_failures_are_not_reported(self, controller, registry, driver, listeners):
        controller.start("a:8001")
        listeners.detach_error = ListenerDetachFailed("server shutting down")

        assert controller.shutdown() == []
        assert registry.size() == 0
        assert driver.running == {}


class TestRecover:
    def test_removes_orphans(self, controller, driver):
        from tests.helpers import random_application

        driver.running["old_80"] = random_application(app_id=1)

        assert controller.recover() == ["old_80"]
        assert driver.running == {}

    def test_sweep_can_be_disabled(self, registry, driver, listeners, allocator):
        driver.running["old_80"] = None
        ctl = LifecycleController(registry, driver, listeners, allocator=allocator, sweep_orphans=False)
        try:
            assert ctl.recover() == []
        finally:
            ctl.close()
        assert "old_80" in driver.running


class TestQueries:
    def test_get(self, controller):
        app = controller.start("hello:8080")

        assert controller.get(app.id) is app
        with pytest.raises(NotFound):
            controller.get(app.id + 1)

    def test_events_are_written(self, controller, sink):
        app = controller.start("hello:8080")
        controller.stop(app.id)

        assert [(i, e) for i, e, _ in sink.events] == [(1, "started"), (1, "stopped")]
        assert sink.events[0][2]["instance"] == "hello_8080"


def test_random_sequences_keep_invariants():
    rng = random.Random(2024)
    for _ in range(5):
        registry, driver, listeners = ApplicationRegistry(), FakeDriver(), FakeListeners()
        ctl = LifecycleController(registry, driver, listeners, allocator=FakeAllocator(driver), log_sink=RecordingSink())
        started = {}
        try:
            for _ in range(40):
                live = registry.snapshot()
                if live and rng.random() < 0.4:
                    victim = rng.choice(live)
                    assert ctl.stop(victim.id) == started.pop(victim.id)
                    assert registry.find_by_id(victim.id) is None
                else:
                    port = rng.randint(1, 60)
                    try:
                        app = ctl.start(f"app{port}:{port}")
                    except ListenerAttachFailed:
                        assert registry.find_by_port(port) is not None
                        continue
                    started[app.id] = app

                live = registry.snapshot()
                ids = [a.id for a in live]
                service_ports = [a.port_service for a in live]
                assert len(set(ids)) == len(ids) and all(i > 0 for i in ids)
                assert len(set(service_ports)) == len(service_ports)
                assert all(49152 <= p <= 65535 for p in service_ports)
                assert registry.next_id() == max(ids, default=0) + 1
                assert set(driver.running) == {a.instance for a in live}
                assert set(listeners.attached) == {a.port_app for a in live}
        finally:
            ctl.close()


def test_keyed_locks_serialize_same_key_only():
    locks = KeyedLocks()
    order = []
    inside = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold(("port", 1)):
            inside.set()
            release.wait(2)
            order.append("first")

    t = threading.Thread(target=holder)
    t.start()
    assert inside.wait(2)

    # a disjoint key is not blocked
    with locks.hold(("port", 2), ("id", 9)):
        order.append("disjoint")

    def waiter():
        with locks.hold(("id", 1), ("port", 1)):
            order.append("second")

    w = threading.Thread(target=waiter)
    w.start()
    time.sleep(0.05)
    release.set()
    t.join(2)
    w.join(2)

    assert order == ["disjoint", "first", "second"]
    assert locks._locks == {}

