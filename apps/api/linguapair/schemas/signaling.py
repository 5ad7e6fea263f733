"""Data contracts for the signaling channel and RTC endpoints."""
from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.config import settings


class MessageType(str, enum.Enum):
    WELCOME = "welcome"
    HELLO = "hello"
    MATCHED = "matched"
    SIGNAL_OFFER = "signal-offer"
    SIGNAL_ANSWER = "signal-answer"
    SIGNAL_ICE = "signal-ice"
    LEAVE = "leave"
    PEER_LEFT = "peer-left"
    PING = "ping"


RELAYED_TYPES = frozenset(
    {MessageType.SIGNAL_OFFER.value, MessageType.SIGNAL_ANSWER.value, MessageType.SIGNAL_ICE.value}
)


class WantMode(str, enum.Enum):
    SPEAK = "speak"
    HEAR = "hear"


def _truncate(value: object) -> str:
    if value is None:
        return ""
    return str(value)[: settings.profile_field_max_length]


class HelloRequest(BaseModel):
    """Join request sent by a participant; every field is optional."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    screen_name: str = Field(default="Guest", alias="screenName")
    native: str = Field(default="")
    want_mode: WantMode = Field(default=WantMode.SPEAK, alias="wantMode")
    want_lang: str = Field(default="", alias="wantLang")

    @field_validator("screen_name", mode="before")
    @classmethod
    def _clean_name(cls, value: object) -> str:
        return _truncate(value) or "Guest"

    @field_validator("native", "want_lang", mode="before")
    @classmethod
    def _clean_language(cls, value: object) -> str:
        return _truncate(value)

    @field_validator("want_mode", mode="before")
    @classmethod
    def _coerce_mode(cls, value: object) -> WantMode:
        """Anything other than an explicit "hear" means speak."""

        return WantMode.HEAR if value == WantMode.HEAR.value else WantMode.SPEAK


class PeerProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    screen_name: str = Field(alias="screenName")
    native: str


class MatchedMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = MessageType.MATCHED
    room_id: str = Field(alias="roomId")
    peer: PeerProfile
    polite: bool


class IceServer(BaseModel):
    urls: str | list[str]
    username: str | None = None
    credential: str | None = None


class IceConfigResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ice_servers: list[IceServer] = Field(alias="iceServers")


class BrokerStats(BaseModel):
    participants: int = Field(..., ge=0, description="Connected signaling channels")
    waiting: int = Field(..., ge=0, description="Participants queued for a partner")
    rooms: int = Field(..., ge=0, description="Active two-party rooms")
