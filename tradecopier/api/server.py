import asyncio
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from tradecopier import __version__
from tradecopier.api.auth import optional_client, require_master
from tradecopier.api.state import RelayState
from tradecopier.core.errors import (
    AuthorizationFailed,
    CopierError,
    PersistenceError,
    ValidationFailed,
)
from tradecopier.core.ingress import PushRequest, validate_group
from tradecopier.infrastructure.logging import LogContext, clear_context, get_logger

logger = get_logger(__name__)


# --- Data Models ---

class PushBody(BaseModel):
    """Master push. Missing fields fall back to neutral values; the core validates."""
    model_config = ConfigDict(extra="ignore")

    group: str = ""
    type: str = ""
    uid: str = ""
    master_ticket: int = 0
    open_time: int = 0
    symbol: str = ""
    cmd: int = 0
    lots: float = 0.0
    price: float = 0.0
    sl: float = 0.0
    tp: float = 0.0
    magic: int = 0
    comment: str = ""
    master_equity: float = 0.0

    @field_validator("group", "type", "uid", "symbol", "comment", mode="before")
    @classmethod
    def coerce_text(cls, v):
        # Terminals send numeric uids and occasional nulls
        return "" if v is None else str(v)


class AckBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    group: str = ""
    slave_id: str = Field("", validation_alias=AliasChoices("slaveId", "slave_id"))
    event_id: int = Field(0, validation_alias=AliasChoices("event_id", "eventId"))
    status: str = ""
    err: str = Field("", validation_alias=AliasChoices("err", "error"))

    @field_validator("group", "slave_id", "status", "err", mode="before")
    @classmethod
    def coerce_text(cls, v):
        return "" if v is None else str(v)


class RegisterBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    group: str = ""
    slave_id: str = Field("", validation_alias=AliasChoices("slaveId", "slave_id"))


class PushResponse(BaseModel):
    ok: bool = True
    id: int | None
    duplicated: bool = False
    reason: str | None = None


class AckResponse(BaseModel):
    ok: bool = True
    gone: bool = False
    last_ack_id: int


# --- API Implementation ---

async def _sweep_loop(state: RelayState, interval: int) -> None:
    """Periodic retention pass for groups that stopped pushing and acking."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(state.store.sweep)
        except PersistenceError as e:
            logger.error("Retention sweep failed to persist", error=str(e))
            continue
        if removed:
            logger.info("Retention sweep", removed=removed)


def create_app(state: RelayState) -> FastAPI:
    """Build the relay app around an already-loaded state."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Copier relay starting",
            backend=state.store.backend.name,
            environment=state.config.environment,
        )
        sweep_task = None
        interval = state.config.retention.sweep_interval_seconds
        if interval > 0:
            sweep_task = asyncio.create_task(_sweep_loop(state, interval))
        yield
        if sweep_task:
            sweep_task.cancel()
        logger.info("Copier relay shutting down")

    app = FastAPI(title="Trade Copier Relay", version=__version__, lifespan=lifespan)
    app.state.relay = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=state.config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def reset_log_context(request: Request, call_next):
        clear_context()
        return await call_next(request)

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed):
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": f"malformed fields: {', '.join(fields)}"},
        )

    @app.exception_handler(AuthorizationFailed)
    async def authorization_failed_handler(request: Request, exc: AuthorizationFailed):
        logger.warning("Request rejected", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc)})

    @app.exception_handler(CopierError)
    async def copier_error_handler(request: Request, exc: CopierError):
        # PersistenceError lands here: fatal for this request, caller retries
        logger.error("Request failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions (500 errors)."""
        logger.error(
            "Unhandled API Exception",
            path=request.url.path,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        detail = "See logs for details" if state.config.is_production else str(exc)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": "internal server error", "detail": detail},
        )

    @app.get("/health")
    async def health_check():
        return {"ok": True, "now": state.store.clock()}

    @app.get("/copier/health")
    def copier_health():
        return {"ok": True, "clients": state.clients.count(), **state.store.health()}

    @app.post("/copier/push", response_model=PushResponse)
    def push(body: PushBody, request: Request):
        """Master pushes OPEN/MODIFY/CLOSE."""
        require_master(request, state.secrets.master_key)

        with LogContext(group=body.group):
            result = state.ingress.push(PushRequest(**body.model_dump()))

        return PushResponse(
            id=result.id,
            duplicated=result.duplicated,
            reason=result.reason.value if result.reason else None,
        )

    @app.post("/copier/registerSlave")
    def register_slave(body: RegisterBody, request: Request):
        if not body.group or not body.slave_id:
            raise ValidationFailed("missing group/slaveId")
        # Reject a bad group before a client gets bound to it
        validate_group(body.group)

        client = optional_client(request, state.clients, body.group)
        bound = state.clients.bind(client, body.slave_id) if client else ""

        with LogContext(group=body.group, slave_id=body.slave_id):
            state.delivery.register(body.group, body.slave_id)

        return {"ok": True, "boundSlaveId": bound}

    @app.get("/copier/events")
    def poll_events(
        request: Request,
        group: str = "",
        slave_id: str = Query("", alias="slaveId"),
        since: int = 0,
        limit: int | None = None,
    ):
        """Slave polls events above its cursor that it has not acked."""
        if not group or not slave_id:
            raise ValidationFailed("missing group/slaveId")
        validate_group(group)

        client = optional_client(request, state.clients, group)
        if client:
            state.clients.bind(client, slave_id)

        with LogContext(group=group, slave_id=slave_id):
            result = state.delivery.poll(group, slave_id, since=since, limit=limit)

        return {
            "ok": True,
            "now": result.now,
            "max_event_id": result.max_event_id,
            "events": [e.to_dict() for e in result.events],
        }

    @app.post("/copier/ack", response_model=AckResponse)
    def ack(body: AckBody, request: Request):
        """Slave reports DONE/ERR/SKIP for one event."""
        if not body.group or not body.slave_id or not body.event_id or not body.status:
            raise ValidationFailed("missing fields")
        validate_group(body.group)

        client = optional_client(request, state.clients, body.group)
        if client:
            state.clients.check_binding(client, body.slave_id)

        with LogContext(group=body.group, slave_id=body.slave_id):
            result = state.acks.ack(
                body.group, body.slave_id, body.event_id, body.status, body.err,
            )

        return AckResponse(gone=result.gone, last_ack_id=result.last_ack_id)

    return app
