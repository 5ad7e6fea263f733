"""Reconnecting signaling channel client."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..core.config import Settings
from ..schemas.signaling import MessageType

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]
StatusHandler = Callable[["ChannelStatus", int], None]
Sleep = Callable[[float], Awaitable[None]]


class ChannelStatus(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base: float = 0.8
    factor: float = 1.8
    cap: float = 15.0

    def next_delay(self, current: float) -> float:
        return min(self.cap, current * self.factor)

    @classmethod
    def from_settings(cls, config: Settings) -> "BackoffPolicy":
        return cls(
            base=config.reconnect_base_delay,
            factor=config.reconnect_factor,
            cap=config.reconnect_max_delay,
        )


class ResilientChannel:
    """Keep one signaling websocket alive until the user explicitly leaves.

    Reconnects with exponential backoff, sends heartbeats while open and
    re-issues the last join request after every (re)connect. The backoff only
    resets once a connection has carried a heartbeat.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        *,
        on_status: Optional[StatusHandler] = None,
        backoff: Optional[BackoffPolicy] = None,
        heartbeat_interval: float = 20.0,
        rejoin_delay: float = 0.25,
        connect: Callable[[str], Any] = websockets.connect,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.url = url
        self.status = ChannelStatus.CLOSED
        self.failures = 0

        self._on_message = on_message
        self._on_status = on_status
        self._backoff = backoff or BackoffPolicy()
        self._heartbeat_interval = heartbeat_interval
        self._rejoin_delay = rejoin_delay
        self._connect = connect
        self._sleep = sleep

        self._ws: Any = None
        self._delay = self._backoff.base
        self._join_request: Optional[dict] = None
        self._left = False
        self._runner: Optional[asyncio.Task[None]] = None
        self._helpers: set[asyncio.Task[None]] = set()

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        if self._runner is None and not self._left:
            self._runner = asyncio.create_task(self._run())

    async def send(self, message: dict) -> bool:
        """Best-effort send; returns ``False`` when the channel is not open."""

        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
        except (WebSocketException, OSError) as exc:
            logger.debug("Send of %s failed: %s", message.get("type"), exc)
            return False
        return True

    async def join(self, hello: dict) -> None:
        """Issue a join request and remember it for later reconnects."""

        self._join_request = dict(hello, type=MessageType.HELLO.value)
        if self.is_open:
            await self.send(self._join_request)

    async def leave(self) -> None:
        """Leave for good: no more reconnects for this channel."""

        if self._left:
            return
        self._left = True
        self._join_request = None
        await self.send({"type": MessageType.LEAVE.value})

        ws = self._ws
        self._cancel_helpers()
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with suppress(asyncio.CancelledError):
                await runner
        if ws is not None:
            with suppress(WebSocketException, OSError):
                await ws.close()
        self._ws = None
        self._set_status(ChannelStatus.CLOSED)

    async def _run(self) -> None:
        while not self._left:
            self._set_status(ChannelStatus.CONNECTING if self.failures == 0 else ChannelStatus.RECONNECTING)
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self._set_status(ChannelStatus.OPEN)
                    self._spawn(self._heartbeat())
                    if self._join_request is not None:
                        self._spawn(self._rejoin())
                    await self._read(ws)
            except (WebSocketException, OSError) as exc:
                logger.warning("Signaling channel error: %s", exc)
            finally:
                self._ws = None
                self._cancel_helpers()

            if self._left:
                break
            self.failures += 1
            self._set_status(ChannelStatus.RECONNECTING)
            if self.failures > 1:
                logger.warning("Signaling reconnect attempt %d in %.1fs", self.failures, self._delay)
            await self._sleep(self._delay)
            self._delay = self._backoff.next_delay(self._delay)

    async def _read(self, ws: Any) -> None:
        async for raw in ws:
            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                message = {}
            if not isinstance(message, dict):
                message = {}
            try:
                await self._on_message(message)
            except Exception:
                logger.exception("Signaling message handler failed")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if await self.send({"type": MessageType.PING.value}):
                # Only a connection that survived a heartbeat counts as recovered.
                self.failures = 0
                self._delay = self._backoff.base

    async def _rejoin(self) -> None:
        await asyncio.sleep(self._rejoin_delay)
        if self._join_request is not None:
            await self.send(self._join_request)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._helpers.add(task)
        task.add_done_callback(self._helpers.discard)

    def _cancel_helpers(self) -> None:
        for task in list(self._helpers):
            task.cancel()
        self._helpers.clear()

    def _set_status(self, status: ChannelStatus) -> None:
        if status is self.status:
            return
        self.status = status
        if self._on_status is not None:
            self._on_status(status, self.failures)
