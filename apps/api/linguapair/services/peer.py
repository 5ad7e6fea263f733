"""Participant-side client: join the queue, then negotiate with the matched partner."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..core.config import Settings, settings as default_settings
from ..schemas.signaling import RELAYED_TYPES, HelloRequest, MessageType
from .channel import BackoffPolicy, ChannelStatus, ResilientChannel
from .negotiation import EngineFactory, NegotiationSession, RecoveryPolicy
from .rtc import PUBLIC_STUN_URL

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS: list[dict] = [{"urls": PUBLIC_STUN_URL}]


async def fetch_ice_servers(config_url: str, *, client: Optional[httpx.AsyncClient] = None) -> list[dict]:
    """Load ICE servers from the broker, falling back to public STUN."""

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as owned:
                response = await owned.get(config_url)
        else:
            response = await client.get(config_url)
        response.raise_for_status()
        servers = response.json().get("iceServers")
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        logger.warning("Could not load ICE servers from %s: %s", config_url, exc)
        return list(DEFAULT_ICE_SERVERS)
    return servers or list(DEFAULT_ICE_SERVERS)


class PeerClient:
    """Glue between the resilient channel and one negotiation session at a time."""

    def __init__(
        self,
        signaling_url: str,
        engine_factory: EngineFactory,
        *,
        config_url: Optional[str] = None,
        config: Optional[Settings] = None,
        channel: Optional[ResilientChannel] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        config = config or default_settings
        self.user_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.peer: Optional[dict] = None
        self.session: Optional[NegotiationSession] = None
        self.ice_servers: list[dict] = list(DEFAULT_ICE_SERVERS)

        self._engine_factory = engine_factory
        self._config_url = config_url
        self._http_client = http_client
        self._policy = RecoveryPolicy.from_settings(config)
        self._closing: set[asyncio.Future[None]] = set()
        self.channel = channel or ResilientChannel(
            signaling_url,
            self.handle_message,
            on_status=self._on_channel_status,
            backoff=BackoffPolicy.from_settings(config),
            heartbeat_interval=config.heartbeat_interval,
            rejoin_delay=config.rejoin_delay,
        )

    async def start(self) -> None:
        if self._config_url:
            self.ice_servers = await fetch_ice_servers(self._config_url, client=self._http_client)
        await self.channel.start()

    async def join(self, profile: HelloRequest | dict[str, Any]) -> None:
        if isinstance(profile, dict):
            profile = HelloRequest.model_validate(profile)
        await self.channel.join(profile.model_dump(by_alias=True, mode="json"))

    async def leave(self) -> None:
        await self._end_session()
        await self.channel.leave()

    async def handle_message(self, message: dict) -> None:
        message_type = message.get("type")
        if not isinstance(message_type, str):
            return

        if message_type == MessageType.WELCOME.value:
            self.user_id = message.get("userId")
        elif message_type == MessageType.MATCHED.value:
            await self._begin_session(message)
        elif message_type in RELAYED_TYPES:
            if self.session is not None:
                self.session.receive(message_type, message.get("data"))
        elif message_type == MessageType.PEER_LEFT.value:
            logger.info("Partner left room %s", self.room_id)
            await self._end_session()

    async def _begin_session(self, message: dict) -> None:
        await self._end_session()
        self.room_id = message.get("roomId")
        self.peer = message.get("peer") or {}
        polite = bool(message.get("polite"))
        logger.info("Matched in room %s (polite=%s)", self.room_id, polite)

        session = NegotiationSession(
            polite=polite,
            engine_factory=self._engine_factory,
            send=self._send_signal,
            ice_servers=self.ice_servers,
            policy=self._policy,
        )
        self.session = session
        await session.start()

    async def _end_session(self) -> None:
        session, self.session = self.session, None
        self.room_id = None
        self.peer = None
        if session is not None:
            await session.close()

    async def _send_signal(self, message_type: str, data: Any) -> None:
        await self.channel.send({"type": message_type, "data": data})

    def _on_channel_status(self, status: ChannelStatus, failures: int) -> None:
        if status is ChannelStatus.RECONNECTING and self.session is not None:
            # The broker dropped our room together with the old connection.
            session, self.session = self.session, None
            self.room_id = None
            self.peer = None
            self._spawn_close(session)

    def _spawn_close(self, session: NegotiationSession) -> None:
        task = asyncio.ensure_future(session.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
