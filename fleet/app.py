from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .api_models import InstanceStatsOut, OtpRequest
from .connection import ConnectionService
from .docker_ops import DockerCli
from .errors import NotConnectedError, RelayError, RuntimeCommandError, UnknownInstanceError
from .licenses import LicenseStore
from .reconciler import Orchestrator
from .runtime import InstanceStats
from .security import SecurityService
from .settings import Settings, settings as default_settings


logger = logging.getLogger(__name__)

DEV_USER: dict[str, Any] = {
    "_id": "dev",
    "username": "Dev User",
    "email": "dev@localhost",
    "roles": [{"name": "ADMIN", "permissions": []}],
}


@dataclass
class Services:
    orchestrator: Orchestrator
    connection: ConnectionService
    http: httpx.Client


def build_services(config: Settings) -> Services:
    """Wire the daemon's collaborators together from one Settings object."""
    licenses = LicenseStore(config.licenses_path)
    security = SecurityService(licenses)
    http = httpx.Client(base_url=config.control_plane_url, timeout=config.cloud_timeout_s)
    docker = DockerCli(
        binary=config.runtime_bin,
        image=config.image,
        control_socket=config.control_socket,
    )
    connection = ConnectionService(
        licenses,
        security,
        http,
        interval_s=config.conn_interval_s,
        backoff_s=config.register_backoff_s,
        local=config.local,
    )
    orchestrator = Orchestrator(
        docker,
        licenses,
        config,
        incident_reporter=None if config.local else connection.log_incident,
    )
    connection.probe = orchestrator.probe
    return Services(orchestrator=orchestrator, connection=connection, http=http)


def _stats_out(stats: InstanceStats) -> InstanceStatsOut:
    return InstanceStatsOut(**stats.__dict__)


def create_app(config: Settings | None = None, services: Services | None = None, run_loops: bool = True) -> FastAPI:
    config = config or default_settings
    svc = services or build_services(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if run_loops:
            if config.local:
                logger.warning(
                    "Shim is started with LOCAL DEVELOPMENT FLAG. Do not forget to remove it in production."
                )
            svc.orchestrator.init()
            svc.orchestrator.start()
            svc.connection.start()
        try:
            yield
        finally:
            svc.orchestrator.stop()
            svc.connection.stop()
            svc.http.close()

    app = FastAPI(title="Fleet shim", lifespan=lifespan)
    app.state.services = svc

    @app.exception_handler(NotConnectedError)
    async def _not_connected(_req: Request, exc: NotConnectedError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(RelayError)
    async def _relay_failed(_req: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": "Failed to send a request."})

    @app.exception_handler(UnknownInstanceError)
    async def _unknown(_req: Request, exc: UnknownInstanceError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RuntimeCommandError)
    async def _runtime_failed(_req: Request, exc: RuntimeCommandError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": exc.stderr.strip() or str(exc)})

    @app.get("/health")
    def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/instances", response_model=list[InstanceStatsOut])
    def list_instances() -> list[InstanceStatsOut]:
        return [_stats_out(s) for s in svc.orchestrator.list_instances()]

    @app.get("/instances/{instance_id}", response_model=InstanceStatsOut)
    def get_instance(instance_id: str) -> InstanceStatsOut:
        stats = svc.orchestrator.get_instance(instance_id)
        if stats is None:
            raise HTTPException(status_code=404, detail=f"Unknown instance '{instance_id}'")
        return _stats_out(stats)

    @app.get("/instances/{instance_id}/logs")
    def instance_logs(instance_id: str, tail: int = Query(100, ge=1, le=10000)) -> dict[str, str]:
        return {"logs": svc.orchestrator.container_logs(instance_id, tail)}

    @app.post("/instances/{instance_id}/{action}", response_model=InstanceStatsOut)
    def instance_action(instance_id: str, action: str) -> InstanceStatsOut:
        handlers = {
            "start": svc.orchestrator.start_instance,
            "stop": svc.orchestrator.stop_instance,
            "restart": svc.orchestrator.restart_instance,
            "run": svc.orchestrator.run_instance,
            "remove": svc.orchestrator.remove_instance,
        }
        handler = handlers.get(action)
        if handler is None:
            raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
        return _stats_out(handler(instance_id))

    # Instance-facing user endpoints, answered by the control plane through the relay.
    @app.post("/shim/instance/user/verify/otp")
    def verify_otp(body: OtpRequest, bcms_iid: str = Header(...)) -> Any:
        if config.local:
            return {"ok": True, "user": DEV_USER}
        return svc.connection.send(bcms_iid, "/user/verify/otp", {"otp": body.otp})

    @app.post("/shim/instance/user/all")
    def all_users(bcms_iid: str = Header(...)) -> Any:
        if config.local:
            return {"user": [DEV_USER]}
        return svc.connection.send(bcms_iid, "/user/all", {})

    return app
