import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from localkube.container_driver import DockerContainerDriver
from localkube.errors import InvalidArgument, LocalKubeError, TeardownIncomplete
from localkube.lifecycle import AppPhase, LifecycleController
from localkube.listeners import ListenerManager
from localkube.log_sink import build_log_sink
from localkube.logging_setup import setup_logging
from localkube.models import AppStatusView, AppView, HealthResponse, StartAppRequest, StopAppRequest
from localkube.ports import PortAllocator
from localkube.registry import ApplicationRegistry

log = logging.getLogger(__name__)


def build_controller() -> LifecycleController:
    return LifecycleController(
        registry=ApplicationRegistry(),
        driver=DockerContainerDriver(),
        listeners=ListenerManager(),
        allocator=PortAllocator(),
        log_sink=build_log_sink(),
    )


def create_app(controller: Optional[LifecycleController] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        ctl = _app.state.controller
        removed = await run_in_threadpool(ctl.recover)
        if removed:
            log.info("startup: removed orphan containers %s", removed)
        try:
            yield
        finally:
            try:
                errors = await run_in_threadpool(ctl.shutdown)
                for e in errors:
                    log.warning("shutdown error: %s", e)
            finally:
                ctl.close()

    app = FastAPI(title="localkube", lifespan=lifespan)
    app.state.controller = controller or build_controller()

    def _ctl() -> LifecycleController:
        return app.state.controller

    @app.exception_handler(TeardownIncomplete)
    async def teardown_incomplete_handler(request: Request, exc: TeardownIncomplete):
        body = exc.to_dict()
        body["app"] = AppStatusView.of(exc.app).model_dump(by_alias=True)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(LocalKubeError)
    async def localkube_error_handler(request: Request, exc: LocalKubeError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        err = InvalidArgument("invalid request body", {"errors": [e.get("msg", "") for e in exc.errors()]})
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    # sync handlers: the controller blocks on docker and sockets, FastAPI runs these in its threadpool
    @app.post("/app/start", response_model=AppView)
    def start(req: StartAppRequest):
        return AppView.of(_ctl().start(req.app))

    @app.post("/app/stop", response_model=AppStatusView)
    def stop(req: StopAppRequest):
        return AppStatusView.of(_ctl().stop(req.id))

    @app.get("/app/list", response_model=List[AppStatusView])
    def list_apps():
        return [AppStatusView.of(a) for a in _ctl().list()]

    @app.get("/app/{app_id}", response_model=AppStatusView)
    def get_app(app_id: int):
        return AppStatusView.of(_ctl().get(app_id))

    @app.get("/health", response_model=HealthResponse)
    def health():
        ctl = _ctl()
        apps = ctl.list()
        stopping = sum(1 for a in apps if ctl.phase(a.id) == AppPhase.STOPPING)
        return HealthResponse(ok=True, apps=len(apps), stopping=stopping)

    return app


setup_logging("localkube")

app = create_app()
