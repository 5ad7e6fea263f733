"""ICE server assembly.

Clients always get the public STUN entries; a TURN entry is only exposed once the
URL set and both credentials are configured."""
from __future__ import annotations

from ..core.config import Settings, settings as default_settings, split_urls
from ..schemas.signaling import IceConfigResponse, IceServer

PUBLIC_STUN_URL = "stun:stun.l.google.com:19302"


def ice_servers(config: Settings | None = None) -> list[IceServer]:
    """Return the ICE servers advertised to participants."""

    config = config or default_settings
    stun_urls = split_urls(config.stun_urls) or [PUBLIC_STUN_URL]
    servers = [IceServer(urls=url) for url in stun_urls]

    turn_urls = split_urls(config.turn_url)
    if turn_urls and config.turn_username and config.turn_password:
        servers.append(
            IceServer(
                urls=turn_urls if len(turn_urls) > 1 else turn_urls[0],
                username=config.turn_username,
                credential=config.turn_password,
            )
        )
    return servers


def ice_config(config: Settings | None = None) -> IceConfigResponse:
    return IceConfigResponse(ice_servers=ice_servers(config))
