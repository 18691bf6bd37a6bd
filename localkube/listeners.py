"""
Public application listeners.

Each attached port gets its own uvicorn server, started on a socket that was
bound before the server thread starts, so a port conflict fails ``attach``
synchronously and leaves nothing behind. The server runs a small reverse
proxy that forwards every request to the application's service port.
"""

import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests
import uvicorn
from fastapi import FastAPI, Request, Response
from starlette.concurrency import run_in_threadpool

from localkube import settings
from localkube.errors import ListenerAttachFailed, ListenerDetachFailed

log = logging.getLogger(__name__)

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# not forwarded in either direction; requests already decoded the body
_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
}


def make_proxy_app(target_port: int, timeout: float = settings.LOCALKUBE_PROXY_TIMEOUT_SECONDS) -> FastAPI:
    upstream = f"http://127.0.0.1:{target_port}"
    session = requests.Session()
    app = FastAPI(title=f"localkube-proxy-{target_port}", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=_METHODS)
    async def forward(path: str, request: Request) -> Response:
        url = f"{upstream}/{path}"
        if request.url.query:
            url += "?" + request.url.query
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS}
        body = await request.body()
        try:
            r = await run_in_threadpool(
                session.request,
                request.method,
                url,
                headers=headers,
                data=body or None,
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.RequestException as e:
            log.warning("proxy to %s failed: %s", url, e)
            return Response(content=f"upstream unavailable: {e}", status_code=502, media_type="text/plain")
        out_headers = {k: v for k, v in r.headers.items() if k.lower() not in _HOP_HEADERS}
        return Response(content=r.content, status_code=r.status_code, headers=out_headers)

    return app


@dataclass
class _Listener:
    port: int
    target_port: int
    server: uvicorn.Server
    thread: threading.Thread
    sock: socket.socket


class ListenerManager:
    """Attach and detach port-bound HTTP listeners at runtime. Thread-safe."""

    def __init__(
        self,
        host: str = settings.LOCALKUBE_LISTENER_HOST,
        start_timeout: float = settings.LOCALKUBE_LISTENER_START_TIMEOUT_SECONDS,
        stop_timeout: float = 5,
        proxy_timeout: float = settings.LOCALKUBE_PROXY_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self.proxy_timeout = proxy_timeout
        self._lock = threading.Lock()
        self._listeners: Dict[int, _Listener] = {}
        self._pending: set[int] = set()

    def is_attached(self, port: int) -> bool:
        with self._lock:
            return port in self._listeners or port in self._pending

    def attached_ports(self) -> List[int]:
        with self._lock:
            return sorted(self._listeners)

    def _bind(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
        except OSError as e:
            sock.close()
            raise ListenerAttachFailed(f"cannot bind port {port}: {e}", {"port": port}) from e
        return sock

    def attach(self, port: int, target_port: int) -> None:
        with self._lock:
            if port in self._listeners or port in self._pending:
                raise ListenerAttachFailed(f"a listener is already attached on port {port}", {"port": port})
            self._pending.add(port)
        try:
            listener = self._start(port, target_port)
        finally:
            with self._lock:
                self._pending.discard(port)
        with self._lock:
            self._listeners[port] = listener
        log.info("listener attached: port=%s -> 127.0.0.1:%s", port, target_port)

    def _start(self, port: int, target_port: int) -> _Listener:
        sock = self._bind(port)
        config = uvicorn.Config(
            make_proxy_app(target_port, self.proxy_timeout),
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [sock]},
            name=f"listener-{port}",
            daemon=True,
        )
        thread.start()

        deadline = time.monotonic() + self.start_timeout
        while not server.started and thread.is_alive() and time.monotonic() < deadline:
            time.sleep(0.02)
        if not server.started:
            server.should_exit = True
            thread.join(timeout=self.stop_timeout)
            sock.close()
            raise ListenerAttachFailed(f"listener on port {port} did not start", {"port": port})
        return _Listener(port=port, target_port=target_port, server=server, thread=thread, sock=sock)

    def detach(self, port: int) -> None:
        with self._lock:
            listener = self._listeners.pop(port, None)
        if listener is None:
            raise ListenerDetachFailed(f"no listener attached on port {port}", {"port": port})

        listener.server.should_exit = True
        listener.thread.join(timeout=self.stop_timeout)
        if listener.thread.is_alive():
            listener.server.force_exit = True
            listener.thread.join(timeout=self.stop_timeout)
        listener.sock.close()
        if listener.thread.is_alive():
            log.warning("listener thread for port %s still running after detach", port)
        log.info("listener detached: port=%s", port)

    def close(self) -> None:
        for port in self.attached_ports():
            try:
                self.detach(port)
            except ListenerDetachFailed as e:
                log.warning("listener close: %s", e)
