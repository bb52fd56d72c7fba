"""WebSocket connection manager for the chat client.

Owns one logical connection to the session endpoint. Frames are handed to
`on_message` as they arrive. An unexpected close (anything other than
disconnect()) schedules exactly one reconnect attempt after `reconnect_delay`;
if that attempt fails, the failure counts as another unexpected close.

send() never buffers: while disconnected it logs and returns False.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


class ConnectionManager:
    """One client-side socket with reconnect-on-unexpected-close.

    Args:
        url:             WebSocket URL of the session endpoint.
        on_message:      Called with every raw frame received.
        reconnect_delay: Seconds to wait before reconnecting after an unexpected close.
        connector:       Coroutine function opening the socket. Defaults to
                         websockets.connect; tests substitute a fake.
    """

    def __init__(
        self,
        url: str,
        on_message: Callable[[str | bytes], None],
        reconnect_delay: float = 5.0,
        connector: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._reconnect_delay = reconnect_delay
        self._connector = connector
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._manual_close = False
        self.reconnect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self) -> bool:
        """Open the connection. Returns False (and schedules a retry) on failure."""
        if self.connected:
            logger.debug("Already connected")
            return True
        self._manual_close = False
        self._cancel_reconnect()

        logger.info("Connecting to %s", self._url)
        try:
            ws = await self._connector(self._url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("Connection to %s failed: %s", self._url, e)
            self._schedule_reconnect()
            return False

        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("Connection established")
        return True

    async def disconnect(self) -> None:
        """Close on purpose. Never triggers a reconnect."""
        logger.info("Disconnecting manually")
        self._manual_close = True
        self._cancel_reconnect()
        ws, self._ws = self._ws, None
        if ws is not None:
            with suppress(WebSocketException, OSError):
                await ws.close(code=NORMAL_CLOSURE, reason="Manual disconnection")
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

    async def send(self, message: BaseModel | dict | str) -> bool:
        """Send one frame. No-op (logged) while disconnected."""
        ws = self._ws
        if ws is None:
            logger.warning("Cannot send message: WebSocket is not connected")
            return False
        if isinstance(message, BaseModel):
            data = message.model_dump_json(by_alias=True)
        elif isinstance(message, dict):
            data = json.dumps(message)
        else:
            data = message
        try:
            await ws.send(data)
        except ConnectionClosed as e:
            logger.warning("Send failed, connection closed: %s", e)
            return False
        return True

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    self._on_message(raw)
                except Exception:
                    logger.exception("Error handling inbound frame")
        except ConnectionClosed as e:
            logger.info("Connection closed: %s", e)
        except (OSError, WebSocketException) as e:
            logger.warning("Connection lost: %s", e)
        finally:
            if self._ws is ws:
                self._ws = None
            if not self._manual_close:
                logger.info("Unexpected close, reconnecting in %.1fs", self._reconnect_delay)
                self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._manual_close:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        self._reconnect_task = None
        if self._manual_close:
            return
        self.reconnect_attempts += 1
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
