from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from hostsync.enums import Feature
from hostsync.observability import configure_logging, install_http_observability
from hostsync.schemas import (
    AgentHealthResponse,
    ChangeEventEnvelope,
    ChangeEventResponse,
    RpcResponse,
    SetCurrentDatetimeRequest,
    SystemStateResponse,
)
from hostsync.security import require_agent_token
from hostsync.settings import Settings, ensure_agent_dirs, get_settings

from . import operational
from .context import AgentContext
from .events import ChangeEvent
from .handlers import HANDLERS, HandlerError, dispatch_event
from .operational import RpcError
from .startup import StartupError, reconcile_startup
from .system import SystemStateError

logger = logging.getLogger(__name__)

# Change events are applied one at a time, in arrival order.
_DISPATCH_LOCK = threading.Lock()


def _app_version() -> str:
    try:
        return pkg_version("hostsync")
    except PackageNotFoundError:
        return "dev"


def init_agent(settings: Settings) -> tuple[AgentContext, str]:
    """Build the process context and run startup reconciliation. Any failure fails initialization."""
    try:
        ensure_agent_dirs(settings)
        ctx = AgentContext.from_settings(settings)
    except Exception as exc:
        logger.error("Error occured while initializing the agent: %s", exc)
        raise RuntimeError("initialization failed") from exc

    ctx.features.log_status(settings.schema_module)
    try:
        direction = reconcile_startup(ctx, ctx.running, ctx.startup)
    except StartupError as exc:
        logger.error("Error occured while initializing the agent: %s", exc)
        ctx.close()
        raise RuntimeError("initialization failed") from exc
    except Exception as exc:
        logger.exception("Unexpected error while initializing the agent")
        ctx.close()
        raise RuntimeError("initialization failed") from exc
    return ctx, direction


def build_app(ctx: AgentContext, direction: str) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):  # noqa: ANN202
        yield
        if not ctx.closed:
            ctx.close()

    app = FastAPI(title="hostsync agent", version=_app_version(), lifespan=lifespan)
    app.state.ctx = ctx
    app.state.startup_direction = direction
    install_http_observability(app, component="agent")

    @app.post("/v1/changes", response_model=ChangeEventResponse, dependencies=[Depends(require_agent_token)])
    def receive_change(envelope: ChangeEventEnvelope, request: Request) -> ChangeEventResponse:
        agent_ctx: AgentContext = request.app.state.ctx
        try:
            event = ChangeEvent(
                identity=envelope.identity,
                operation=envelope.operation,
                previous_value=envelope.previous_value,
                new_value=envelope.new_value,
            )
            if event.item not in HANDLERS:
                raise ValueError(f"no handler registered for {event.identity}")
            request.state.config_item = event.item.name.lower()
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"callback failed: {exc}") from exc

        with _DISPATCH_LOCK:
            try:
                message = dispatch_event(agent_ctx, event)
            except HandlerError as exc:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST, detail=f"callback failed: {exc}"
                ) from exc
        return ChangeEventResponse(accepted=True, message=message)

    def _run_rpc(fn, *args) -> None:  # noqa: ANN001
        with _DISPATCH_LOCK:
            try:
                fn(*args)
            except RpcError as exc:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"rpc failed: {exc}") from exc

    @app.post(
        "/v1/rpc/set-current-datetime",
        response_model=RpcResponse,
        dependencies=[Depends(require_agent_token)],
    )
    def rpc_set_current_datetime(body: SetCurrentDatetimeRequest, request: Request) -> RpcResponse:
        _run_rpc(operational.set_current_datetime, request.app.state.ctx, body.current_datetime)
        return RpcResponse(accepted=True, message=f"clock set to {body.current_datetime}")

    @app.post("/v1/rpc/restart", response_model=RpcResponse, dependencies=[Depends(require_agent_token)])
    def rpc_restart(request: Request) -> RpcResponse:
        _run_rpc(operational.restart, request.app.state.ctx)
        return RpcResponse(accepted=True, message="restart requested")

    @app.post("/v1/rpc/shutdown", response_model=RpcResponse, dependencies=[Depends(require_agent_token)])
    def rpc_shutdown(request: Request) -> RpcResponse:
        _run_rpc(operational.shutdown, request.app.state.ctx)
        return RpcResponse(accepted=True, message="shutdown requested")

    @app.get("/v1/state", response_model=SystemStateResponse, dependencies=[Depends(require_agent_token)])
    def system_state(request: Request) -> SystemStateResponse:
        try:
            state = operational.system_state(request.app.state.ctx)
        except SystemStateError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"state unavailable: {exc}"
            ) from exc
        return SystemStateResponse.model_validate(state.to_data())

    @app.get("/v1/health", response_model=AgentHealthResponse)
    def health(request: Request) -> AgentHealthResponse:
        agent_ctx: AgentContext = request.app.state.ctx
        return AgentHealthResponse(
            status="ok",
            startup_direction=request.app.state.startup_direction,
            features={feature.value: agent_ctx.features.enabled(feature) for feature in Feature},
        )

    @app.get("/metrics", dependencies=[Depends(require_agent_token)])
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.agent_auth_token:
        raise RuntimeError("AGENT_AUTH_TOKEN is required")
    ctx, direction = init_agent(settings)
    return build_app(ctx, direction)


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "hostsync.agent.main:create_app",
        factory=True,
        host=settings.agent_host,
        port=settings.agent_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
