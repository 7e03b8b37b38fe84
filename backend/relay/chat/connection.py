"""Live connection handle wrapping a single WebSocket.

A :class:`Connection` moves through ``CONNECTING -> IDENTIFIED -> ACTIVE ->
CLOSED``. The connection manager drives its state, except that a push
that times out retires the handle itself. Once CLOSED the handle refuses
every push, so a delivery racing a disconnect fails fast with
:class:`PushError` instead of writing to a dead socket.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Optional

from fastapi import WebSocket

from relay.errors import PushError

logger = logging.getLogger(__name__)

# WebSocket close code for a connection whose write was cut off
CLOSE_INTERNAL_ERROR = 1011


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    IDENTIFIED = "identified"
    ACTIVE = "active"
    CLOSED = "closed"


class Connection:
    """A writable transport endpoint owned by the connection manager."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.connection_id = str(uuid.uuid4())
        self.identity: Optional[str] = None
        self.state = ConnectionState.CONNECTING
        # Serializes frames from concurrent fan-outs onto one socket
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"Connection(id={self.connection_id}, identity={self.identity}, "
            f"state={self.state.value})"
        )

    @property
    def is_active(self) -> bool:
        return self.state == ConnectionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    async def send(self, frame: dict, timeout: Optional[float] = None) -> None:
        """Write a JSON frame, bounded by *timeout* seconds.

        Raises:
            PushError: The handle is closed, the write failed, or it did not
                complete in time.
        """
        if self.is_closed:
            raise PushError("connection closed", self.connection_id)
        try:
            await asyncio.wait_for(self._locked_send(frame), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self._abort(timeout)
            raise PushError(f"timed out after {timeout}s", self.connection_id) from exc
        except PushError:
            raise
        except Exception as exc:
            raise PushError(str(exc) or type(exc).__name__, self.connection_id) from exc

    async def _abort(self, timeout: Optional[float]) -> None:
        """Retire the handle after a write was cut off mid-frame.

        The stream may hold a partial frame, so nothing more is written to
        it. Closing the socket ends the endpoint's receive loop, which unbinds
        the identity through the normal disconnect path.
        """
        self.state = ConnectionState.CLOSED
        try:
            await asyncio.wait_for(
                self.websocket.close(code=CLOSE_INTERNAL_ERROR), timeout=timeout
            )
        except Exception as exc:
            logger.debug(f"Failed to close timed-out connection {self.connection_id}: {exc}")

    async def _locked_send(self, frame: dict) -> None:
        async with self._send_lock:
            if self.is_closed:
                raise PushError("connection closed", self.connection_id)
            await self.websocket.send_json(frame)
