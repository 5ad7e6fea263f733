"""Tests for the participant-side client glue."""
from __future__ import annotations

import asyncio

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from linguapair.main import app
from linguapair.services.channel import ChannelStatus
from linguapair.services.peer import DEFAULT_ICE_SERVERS, PeerClient, fetch_ice_servers


class DummyChannel:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.joined: list[dict] = []
        self.started = False
        self.left = False

    async def start(self) -> None:
        self.started = True

    async def send(self, message: dict) -> bool:
        self.sent.append(message)
        return True

    async def join(self, hello: dict) -> None:
        self.joined.append(hello)

    async def leave(self) -> None:
        self.left = True


class StubEngine:
    def __init__(self) -> None:
        self.remote: list[dict] = []
        self.closed = False

    async def create_offer(self, *, ice_restart: bool = False) -> dict:
        return {"type": "offer", "sdp": "local"}

    async def create_answer(self) -> dict:
        return {"type": "answer", "sdp": "local-answer"}

    async def set_local_description(self, description: dict) -> None:
        return None

    async def set_remote_description(self, description: dict) -> None:
        self.remote.append(description)

    async def add_ice_candidate(self, candidate: dict) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


def _client() -> tuple[PeerClient, DummyChannel, list[StubEngine]]:
    engines: list[StubEngine] = []

    async def factory(options):
        engine = StubEngine()
        engines.append(engine)
        return engine

    channel = DummyChannel()
    client = PeerClient("ws://broker/api/rtc/signaling", factory, channel=channel)  # type: ignore[arg-type]
    return client, channel, engines


@pytest.mark.asyncio
async def test_fetch_ice_servers_from_broker():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        servers = await fetch_ice_servers("http://testserver/api/rtc/config", client=http)

    assert servers[0] == {"urls": "stun:stun.l.google.com:19302"}


@pytest.mark.asyncio
async def test_fetch_ice_servers_falls_back_on_errors():
    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    def garbage(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    for handler in (broken, garbage):
        async with AsyncClient(transport=httpx.MockTransport(handler)) as http:
            servers = await fetch_ice_servers("http://broker/config", client=http)
        assert servers == DEFAULT_ICE_SERVERS


@pytest.mark.asyncio
async def test_join_sends_sanitised_hello():
    client, channel, _ = _client()
    await client.start()

    await client.join({"screenName": "Ann", "native": "en", "wantLang": "fr", "wantMode": "???"})

    assert channel.started
    assert channel.joined == [{"screenName": "Ann", "native": "en", "wantMode": "speak", "wantLang": "fr"}]


@pytest.mark.asyncio
async def test_matched_session_receives_relayed_signals_until_peer_left():
    client, channel, engines = _client()

    await client.handle_message({"type": "welcome", "userId": "u1"})
    await client.handle_message(
        {"type": "matched", "roomId": "r1", "peer": {"screenName": "Bea", "native": "fr"}, "polite": True}
    )
    assert client.user_id == "u1"
    assert client.room_id == "r1"
    assert client.session is not None and client.session.polite is True

    await client.handle_message({"type": "signal-offer", "data": {"type": "offer", "sdp": "remote"}})
    await client.session.wait_idle()

    assert engines[0].remote == [{"type": "offer", "sdp": "remote"}]
    assert channel.sent == [{"type": "signal-answer", "data": {"type": "answer", "sdp": "local-answer"}}]

    session = client.session
    await client.handle_message({"type": "peer-left"})
    assert client.session is None
    assert session.closed
    assert engines[0].closed


@pytest.mark.asyncio
async def test_reconnect_drops_stale_session():
    client, _, engines = _client()
    await client.handle_message({"type": "matched", "roomId": "r1", "peer": {}, "polite": False})
    session = client.session

    client._on_channel_status(ChannelStatus.RECONNECTING, 1)
    for _ in range(5):
        await asyncio.sleep(0)

    assert client.session is None
    assert session is not None and session.closed


@pytest.mark.asyncio
async def test_leave_closes_session_and_channel():
    client, channel, engines = _client()
    await client.handle_message({"type": "matched", "roomId": "r1", "peer": {}, "polite": False})

    await client.leave()

    assert channel.left
    assert engines[0].closed
    assert client.room_id is None


@pytest.mark.asyncio
async def test_non_string_message_types_are_ignored():
    client, _, _ = _client()
    await client.handle_message({"type": "matched", "roomId": "r1", "peer": {}, "polite": False})

    await client.handle_message({"type": {"x": 1}})
    await client.handle_message({"type": ["peer-left"]})

    assert client.session is not None
    assert client.room_id == "r1"
    await client.leave()
