from typing import Any, Dict, List, Optional

import socketio

from ..telemetry import get_logger
from .gateway import Gateway

logger = get_logger(__name__)


class SocketIOEmitter:
    def __init__(self, sio: socketio.AsyncServer):
        self.sio = sio

    async def send(self, handle: str, event: str, data: Dict[str, Any]) -> None:
        await self.sio.emit(event, data, to=handle)

    async def broadcast(self, event: str, data: Dict[str, Any], skip: Optional[str] = None) -> None:
        await self.sio.emit(event, data, skip_sid=skip)


def create_socket_server(cors_origins: Optional[List[str]] = None) -> socketio.AsyncServer:
    return socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=cors_origins or "*")


def _command_handler(gateway: Gateway, command: str):
    async def handler(sid, data=None):
        await gateway.handle(sid, command, data)

    return handler


def bind_gateway(sio: socketio.AsyncServer, gateway: Gateway) -> None:
    for command in gateway.commands:
        sio.on(command, handler=_command_handler(gateway, command))

    async def connect(sid, environ, auth=None):
        logger.debug("socket_connected", sid=sid)

    async def disconnect(sid, *args):
        await gateway.disconnect(sid)

    sio.on("connect", handler=connect)
    sio.on("disconnect", handler=disconnect)
