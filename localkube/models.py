from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from localkube.application import Application


class StartAppRequest(BaseModel):
    app: str = Field(min_length=1, description="<name>:<port>")


class StopAppRequest(BaseModel):
    id: int


class AppView(BaseModel):
    """Application as returned by /app/start."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    app: str
    port: int
    service_port: int = Field(alias="service-port")
    docker_instance: str = Field(alias="docker-instance")

    @classmethod
    def of(cls, a: Application) -> "AppView":
        return cls(id=a.id, app=a.app, port=a.port_app, service_port=a.port_service, docker_instance=a.instance)


class AppStatusView(AppView):
    """Application as returned by /app/list and /app/stop, with the time since start."""

    elapsed_time: str = Field(alias="elapsed-time")

    @classmethod
    def of(cls, a: Application, now: Optional[float] = None) -> "AppStatusView":
        return cls(
            id=a.id,
            app=a.app,
            port=a.port_app,
            service_port=a.port_service,
            docker_instance=a.instance,
            elapsed_time=a.elapsed_time(now),
        )


class HealthResponse(BaseModel):
    ok: bool
    apps: int
    stopping: int = 0
