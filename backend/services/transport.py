"""Outbound transport boundary.

The engine only ever addresses single connections; fan-out is done by the
callers so one failing peer never affects the others.
"""
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, connection_id: str, event: str, payload: Any) -> None:
        ...


class SocketIOTransport:
    def __init__(self, sio) -> None:
        self._sio = sio

    async def send(self, connection_id: str, event: str, payload: Any) -> None:
        await self._sio.emit(event, payload, to=connection_id)
