"""Tests for ICE server assembly."""
from __future__ import annotations

from linguapair.core.config import Settings
from linguapair.services import rtc


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_stun_only_without_turn_credentials():
    servers = rtc.ice_servers(_settings(turn_url="turn:relay.example.com:3478", turn_username="bob"))

    assert [server.urls for server in servers] == ["stun:stun.l.google.com:19302"]
    assert servers[0].username is None


def test_turn_entry_appended_when_fully_configured():
    config = _settings(
        turn_url="turn:relay.example.com:3478",
        turn_username="bob",
        turn_password="secret",
    )

    servers = rtc.ice_servers(config)

    assert len(servers) == 2
    assert servers[1].urls == "turn:relay.example.com:3478"
    assert servers[1].username == "bob"
    assert servers[1].credential == "secret"


def test_comma_separated_turn_urls_share_credentials():
    config = _settings(
        turn_url="turn:a.example.com:3478, turns:b.example.com:5349 ,",
        turn_username="bob",
        turn_password="secret",
    )

    servers = rtc.ice_servers(config)

    assert servers[-1].urls == ["turn:a.example.com:3478", "turns:b.example.com:5349"]


def test_blank_stun_setting_still_advertises_public_stun():
    payload = rtc.ice_config(_settings(stun_urls=" , ")).model_dump(by_alias=True, exclude_none=True)

    assert payload == {"iceServers": [{"urls": "stun:stun.l.google.com:19302"}]}
