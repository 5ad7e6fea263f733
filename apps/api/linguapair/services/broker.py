"""In-memory matching broker and signaling relay."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from ..schemas.signaling import (
    RELAYED_TYPES,
    BrokerStats,
    HelloRequest,
    MatchedMessage,
    MessageType,
    PeerProfile,
    WantMode,
)

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class Participant:
    """A connected signaling channel and the profile it announced."""

    id: str
    send: SendCallable
    screen_name: str = "Guest"
    native: str = ""
    want_mode: WantMode = WantMode.SPEAK
    want_lang: str = ""
    room_id: Optional[str] = None

    def complements(self, other: "Participant") -> bool:
        return self.want_lang == other.native and other.want_lang == self.native

    def profile(self) -> PeerProfile:
        return PeerProfile(screen_name=self.screen_name, native=self.native)


@dataclass(slots=True)
class Room:
    """Two matched participants; ``a`` is the polite side."""

    id: str
    a: Participant
    b: Participant

    def partner_of(self, participant: Participant) -> Participant:
        return self.b if participant is self.a else self.a


@dataclass(slots=True)
class _Outbox:
    messages: list[tuple[Participant, dict]] = field(default_factory=list)

    def add(self, participant: Participant, message: dict) -> None:
        self.messages.append((participant, message))


class MatchingBroker:
    """Pair participants with complementary languages and relay their signaling.

    All mutations of the waiting list and room registry happen under a single
    lock; messages are only sent after the lock has been released.
    """

    def __init__(self) -> None:
        self._participants: Dict[str, Participant] = {}
        self._waiting: List[Participant] = []
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def connect(self, send: SendCallable) -> Participant:
        """Register a new channel and greet it with its identity."""

        participant = Participant(id=uuid4().hex, send=send)
        async with self._lock:
            self._participants[participant.id] = participant
        await self._deliver([(participant, {"type": MessageType.WELCOME.value, "userId": participant.id})])
        return participant

    async def hello(self, participant: Participant, payload: dict[str, Any]) -> None:
        """Store the announced profile and try to match the participant."""

        request = HelloRequest.model_validate(payload)
        outbox = _Outbox()

        async with self._lock:
            self._drop_locked(participant, outbox)
            participant.screen_name = request.screen_name
            participant.native = request.native
            participant.want_mode = request.want_mode
            participant.want_lang = request.want_lang
            self._match_locked(participant, outbox)

        await self._deliver(outbox.messages)

    async def relay(self, participant: Participant, message_type: str, data: Any) -> None:
        """Forward a signaling payload verbatim to the participant's partner."""

        room = self._rooms.get(participant.room_id or "")
        if room is None:
            return
        partner = room.partner_of(participant)
        await self._deliver([(partner, {"type": message_type, "data": data})])

    async def leave(self, participant: Participant) -> None:
        """Handle an explicit departure; the channel stays registered."""

        outbox = _Outbox()
        async with self._lock:
            self._drop_locked(participant, outbox)
        await self._deliver(outbox.messages)

    async def disconnect(self, participant: Participant) -> None:
        """Forget a closed or failed channel."""

        outbox = _Outbox()
        async with self._lock:
            self._drop_locked(participant, outbox)
            self._participants.pop(participant.id, None)
        await self._deliver(outbox.messages)

    async def handle_message(self, participant: Participant, raw: str | bytes | dict) -> None:
        """Decode one inbound frame and dispatch it by type."""

        message = raw if isinstance(raw, dict) else _decode(raw)
        message_type = message.get("type")
        if not isinstance(message_type, str):
            return

        if message_type == MessageType.HELLO.value:
            await self.hello(participant, message)
        elif message_type in RELAYED_TYPES:
            await self.relay(participant, message_type, message.get("data"))
        elif message_type == MessageType.LEAVE.value:
            await self.leave(participant)

    async def stats(self) -> BrokerStats:
        async with self._lock:
            return BrokerStats(
                participants=len(self._participants),
                waiting=len(self._waiting),
                rooms=len(self._rooms),
            )

    def waiting_ids(self) -> list[str]:
        return [participant.id for participant in self._waiting]

    def room_for(self, participant: Participant) -> Optional[Room]:
        return self._rooms.get(participant.room_id or "")

    def _match_locked(self, participant: Participant, outbox: _Outbox) -> None:
        for index, candidate in enumerate(self._waiting):
            if participant.complements(candidate):
                partner = self._waiting.pop(index)
                break
        else:
            self._waiting.append(participant)
            return

        room = Room(id=uuid4().hex, a=participant, b=partner)
        self._rooms[room.id] = room
        participant.room_id = room.id
        partner.room_id = room.id
        logger.info("Matched %s with %s in room %s", participant.id, partner.id, room.id)

        for member, polite in ((participant, True), (partner, False)):
            matched = MatchedMessage(room_id=room.id, peer=room.partner_of(member).profile(), polite=polite)
            outbox.add(member, matched.model_dump(by_alias=True, mode="json"))

    def _drop_locked(self, participant: Participant, outbox: _Outbox) -> None:
        if participant in self._waiting:
            self._waiting.remove(participant)

        room = self._rooms.pop(participant.room_id or "", None)
        participant.room_id = None
        if room is None:
            return

        partner = room.partner_of(participant)
        partner.room_id = None
        logger.info("Closed room %s after %s left", room.id, participant.id)
        outbox.add(partner, {"type": MessageType.PEER_LEFT.value})

    async def _deliver(self, messages: list[tuple[Participant, dict]]) -> None:
        if not messages:
            return
        results = await asyncio.gather(
            *(participant.send(message) for participant, message in messages),
            return_exceptions=True,
        )
        for (participant, message), result in zip(messages, results):
            if isinstance(result, Exception):
                logger.debug("Dropped %s for %s: %s", message.get("type"), participant.id, result)


def _decode(raw: str | bytes) -> dict:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return message if isinstance(message, dict) else {}


broker = MatchingBroker()
