import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from localkube import settings

log = logging.getLogger(__name__)


class LogSink:
    """Write-only event sink keyed by application id."""

    def write(self, app_id: int, event: str, **fields: Any) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class LoggingLogSink(LogSink):
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("localkube.events")

    def write(self, app_id: int, event: str, **fields: Any) -> None:
        extra = " ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.info("app=%s event=%s %s", app_id, event, extra)


def mongodb_uri() -> str:
    host = (settings.LOCALKUBE_MONGO_HOST or "").strip()
    if not host:
        return ""
    port = int(settings.LOCALKUBE_MONGO_PORT or 27017)
    user = (settings.LOCALKUBE_MONGO_USERNAME or "").strip()
    pwd = (settings.LOCALKUBE_MONGO_PASSWORD or "").strip()
    auth_source = (settings.LOCALKUBE_MONGO_AUTH_SOURCE or "admin").strip()
    if user and pwd:
        return f"mongodb://{user}:{pwd}@{host}:{port}/?authSource={auth_source}"
    return f"mongodb://{host}:{port}/"


class MongoLogSink(LogSink):
    """
    Appends one document per event to a MongoDB collection.

    Best-effort: a write failure is logged and never propagated, so an
    unreachable database cannot break start/stop.
    """

    def __init__(self, collection=None, uri: str = "", db_name: str = "", collection_name: str = ""):
        self._client = None
        self._lock = threading.Lock()
        if collection is None:
            self._client = MongoClient(
                uri or mongodb_uri(),
                serverSelectionTimeoutMS=int(settings.LOCALKUBE_MONGO_TIMEOUT_SECONDS * 1000),
            )
            collection = self._client.get_database(db_name or settings.LOCALKUBE_MONGO_DB).get_collection(
                collection_name or settings.LOCALKUBE_MONGO_COLLECTION
            )
        self.collection = collection

    def write(self, app_id: int, event: str, **fields: Any) -> None:
        doc = {"appId": app_id, "event": event, "at": datetime.now(timezone.utc).isoformat()}
        doc.update(fields)
        try:
            self.collection.insert_one(doc)
        except PyMongoError as e:
            log.warning("event not persisted: app=%s event=%s error=%s", app_id, event, e)

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def build_log_sink() -> LogSink:
    if (settings.LOCALKUBE_MONGO_HOST or "").strip():
        log.info("event log sink: mongodb %s/%s", settings.LOCALKUBE_MONGO_DB, settings.LOCALKUBE_MONGO_COLLECTION)
        return MongoLogSink()
    return LoggingLogSink()
