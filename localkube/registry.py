import threading
from collections import OrderedDict
from typing import Optional

from localkube.application import Application
from localkube.errors import DuplicateId, InvalidArgument, NotFound, RegistryConflict


class ApplicationRegistry:
    """
    In-memory set of live applications, indexed by id and kept in insertion
    order. Every operation takes the same lock, so reads and writes are
    linearizable with respect to each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._apps: "OrderedDict[int, Application]" = OrderedDict()

    def next_id(self) -> int:
        with self._lock:
            return max(self._apps, default=0) + 1

    def insert(self, app: Application) -> Application:
        """Store ``app`` stamped with the current start time and return the stored value."""
        if app is None:
            raise InvalidArgument("application is required")
        with self._lock:
            if app.id in self._apps:
                raise DuplicateId(f"application id {app.id} already registered", {"id": app.id})
            for other in self._apps.values():
                if other.port_service == app.port_service:
                    raise RegistryConflict(
                        f"service port {app.port_service} already used by application {other.id}",
                        {"id": app.id, "service-port": app.port_service},
                    )
            stored = app.started()
            self._apps[stored.id] = stored
            return stored

    def remove(self, app: Application) -> Application:
        if app is None:
            raise InvalidArgument("application is required")
        with self._lock:
            removed = self._apps.pop(app.id, None)
        if removed is None:
            raise NotFound(f"application {app.id} not found", {"id": app.id})
        return removed

    def find_by_id(self, app_id: int) -> Optional[Application]:
        with self._lock:
            return self._apps.get(app_id)

    def find_by_port(self, port_app: int) -> Optional[Application]:
        with self._lock:
            for app in self._apps.values():
                if app.port_app == port_app:
                    return app
        return None

    def service_ports(self) -> set[int]:
        with self._lock:
            return {a.port_service for a in self._apps.values()}

    def snapshot(self) -> list[Application]:
        with self._lock:
            return list(self._apps.values())

    def size(self) -> int:
        with self._lock:
            return len(self._apps)

    def __len__(self) -> int:
        return self.size()
