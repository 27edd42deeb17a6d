import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import socketio
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .api import chat, operators
from .bot.telegram_bot import build_dispatcher, run_polling
from .config import Settings
from .container import Services
from .errors import ChatError, ConflictError, InputError, NotFoundError, StorageError
from .models import OperatorStatus, utcnow
from .realtime.gateway import OPERATOR_STATUS_CHANGED, Outbound
from .schemas import OperatorStatusChanged
from .telemetry import configure_logging, get_logger

logger = get_logger(__name__)


async def run_sweep(services: Services) -> dict:
    """Time out idle chats and take idle operators offline."""
    settings = services.settings
    cutoff = utcnow() - timedelta(days=settings.chat_inactive_days)
    timed_out = await services.sessions.timeout_inactive(cutoff)
    offline = await services.operators.cleanup_inactive(settings.operator_inactive_minutes)

    await services.gateway.deliver([
        Outbound.to_all(
            OPERATOR_STATUS_CHANGED,
            OperatorStatusChanged(operator_id=operator_id, status=OperatorStatus.OFFLINE).dump(),
        )
        for operator_id in offline
    ])
    if timed_out or offline:
        logger.info("inactivity_sweep", sessions_timed_out=timed_out, operators_offline=len(offline))
    return {"sessions_timed_out": timed_out, "operators_offline": offline}


async def cleanup_inactive_chats(services: Services):
    while True:
        await asyncio.sleep(services.settings.sweep_interval_seconds)
        try:
            await run_sweep(services)
        except Exception:
            logger.exception("inactivity_sweep_failed")


def _error_status(exc: ChatError) -> int:
    if isinstance(exc, InputError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 500


async def chat_error_handler(request: Request, exc: ChatError):
    error = {"code": exc.code, "message": exc.message}
    if exc.details:
        error["details"] = exc.details
    return JSONResponse(status_code=_error_status(exc), content={"error": error})


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("storage_error", path=request.url.path, exc_info=exc)
    return await chat_error_handler(request, StorageError("Storage unavailable"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    return await chat_error_handler(request, InputError("Invalid request", details={"fields": fields}))


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services is not None else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = app.state.services
        await svc.start()
        tasks = [asyncio.create_task(cleanup_inactive_chats(svc))]
        if svc.bot is not None:
            tasks.append(asyncio.create_task(run_polling(svc.bot, build_dispatcher(svc.sessions))))
        yield
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await svc.close()

    app = FastAPI(title="livechat", lifespan=lifespan)
    app.state.services = services or Services.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(chat.router, prefix="/api")
    app.include_router(operators.router, prefix="/api")

    @app.get("/health")
    async def health():
        svc = app.state.services
        return {
            "status": "ok",
            "connections": len(svc.gateway.registry),
            "notifications": svc.notifier.status(),
        }

    return app


def create_asgi_app(settings: Optional[Settings] = None) -> socketio.ASGIApp:
    """FastAPI app with the Socket.IO server mounted in front of it."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)
    app = create_app(settings)
    return socketio.ASGIApp(app.state.services.sio, other_asgi_app=app, socketio_path=settings.socketio_path)
