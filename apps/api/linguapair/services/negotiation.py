"""Perfect-negotiation state machine for one matched session.

Every transition runs on a single worker task fed by an inbox, so local
negotiation triggers, relayed signaling, connectivity reports from the media
engine and timer expiries never interleave. The media engine itself is an
injected capability; nothing here touches a real network stack.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Protocol

from ..core.config import Settings
from ..schemas.signaling import MessageType

logger = logging.getLogger(__name__)

Description = dict[str, Any]
Candidate = dict[str, Any]
SignalSender = Callable[[str, Any], Awaitable[None]]


class SignalingState(str, enum.Enum):
    IDLE = "idle"
    MAKING_LOCAL_OFFER = "making-local-offer"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"


class ConnectivityState(str, enum.Enum):
    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


_SETTLED = (SignalingState.IDLE, SignalingState.STABLE)
_BROKEN = (ConnectivityState.FAILED, ConnectivityState.DISCONNECTED)


@dataclass(frozen=True, slots=True)
class RecoveryPolicy:
    """Timing for ICE restarts and the relay-only fallback."""

    restart_cooldown: float = 1.5
    escalation_delay: float = 6.0
    relay_fallback: bool = True

    @classmethod
    def from_settings(cls, config: Settings) -> "RecoveryPolicy":
        return cls(restart_cooldown=config.restart_cooldown, escalation_delay=config.escalation_delay)


@dataclass(slots=True)
class EngineOptions:
    """Everything an engine factory needs to build one connection object."""

    ice_servers: list[dict]
    relay_only: bool
    on_candidate: Callable[[Candidate], None]
    on_connectivity: Callable[[ConnectivityState | str], None]
    on_negotiation_needed: Callable[[], None]


class MediaEngine(Protocol):
    async def create_offer(self, *, ice_restart: bool = False) -> Description: ...

    async def create_answer(self) -> Description: ...

    async def set_local_description(self, description: Description) -> None: ...

    async def set_remote_description(self, description: Description) -> None: ...

    async def add_ice_candidate(self, candidate: Optional[Candidate]) -> None:
        """Apply a remote candidate; ``None`` marks the end of candidates."""

    async def close(self) -> None: ...


EngineFactory = Callable[[EngineOptions], Awaitable[MediaEngine]]


@dataclass(slots=True)
class _NegotiationNeeded:
    ice_restart: bool = False


@dataclass(slots=True)
class _RemoteSignal:
    type: str
    data: Any


@dataclass(slots=True)
class _LocalCandidate:
    candidate: Candidate
    generation: int


@dataclass(slots=True)
class _ConnectivityChanged:
    state: ConnectivityState
    generation: int


@dataclass(slots=True)
class _EscalationDue:
    episode: int


class NegotiationSession:
    """Drive offer/answer exchange and connectivity recovery for one room."""

    def __init__(
        self,
        *,
        polite: bool,
        engine_factory: EngineFactory,
        send: SignalSender,
        ice_servers: Optional[list[dict]] = None,
        policy: Optional[RecoveryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.polite = polite
        self.state = SignalingState.IDLE
        self.connectivity = ConnectivityState.NEW
        self.making_offer = False
        self.ignore_offer = False
        self.relay_only = False
        self.restart_attempts = 0

        self._engine_factory = engine_factory
        self._send_signal = send
        self._ice_servers = list(ice_servers or [])
        self._policy = policy or RecoveryPolicy()
        self._clock = clock

        self._engine: Optional[MediaEngine] = None
        self._generation = 0
        self._has_remote_description = False
        self._pending_candidates: Deque[Optional[Candidate]] = deque()
        self._pending_negotiation = False
        self._pending_restart = False
        self._local_offer_restart = False
        self._last_restart_at: Optional[float] = None
        self._episode = 0
        self._escalated = False
        self._escalation_task: Optional[asyncio.Task[None]] = None

        self._inbox: asyncio.Queue[object] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_candidates(self) -> list[Optional[Candidate]]:
        return list(self._pending_candidates)

    @property
    def escalation_armed(self) -> bool:
        return self._escalation_task is not None

    async def start(self) -> None:
        """Build the first connection object and begin processing events."""

        if self._worker is not None or self._closed:
            return
        await self._build_engine(relay_only=False)
        self._worker = asyncio.create_task(self._run())

    def negotiation_needed(self) -> None:
        self._post(_NegotiationNeeded())

    def receive(self, message_type: str, data: Any) -> None:
        """Queue a signaling message relayed from the partner."""

        self._post(_RemoteSignal(message_type, data))

    def connectivity_changed(self, state: ConnectivityState | str) -> None:
        self._post(_ConnectivityChanged(ConnectivityState(state), self._generation))

    async def wait_idle(self) -> None:
        """Block until every queued event has been handled."""

        await self._inbox.join()

    async def close(self) -> None:
        """Cancel timers, stop the worker and release the engine."""

        if self._closed:
            return
        self._closed = True
        self._cancel_escalation()

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker

        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()

        engine, self._engine = self._engine, None
        if engine is not None:
            await self._close_engine(engine)

    def _post(self, event: object) -> None:
        if self._closed:
            return
        self._inbox.put_nowait(event)

    async def _run(self) -> None:
        while True:
            event = await self._inbox.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Negotiation event %s failed", type(event).__name__)
            finally:
                self._inbox.task_done()

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, _NegotiationNeeded):
            await self._on_negotiation_needed(ice_restart=event.ice_restart)
        elif isinstance(event, _RemoteSignal):
            await self._on_remote_signal(event.type, event.data)
        elif isinstance(event, _LocalCandidate):
            if event.generation == self._generation:
                await self._send(MessageType.SIGNAL_ICE.value, event.candidate)
        elif isinstance(event, _ConnectivityChanged):
            await self._on_connectivity(event)
        elif isinstance(event, _EscalationDue):
            await self._on_escalation_due(event.episode)

    async def _on_negotiation_needed(self, *, ice_restart: bool) -> None:
        if self.making_offer or self.state not in _SETTLED:
            self._pending_negotiation = True
            self._pending_restart = self._pending_restart or ice_restart
            return
        await self._make_offer(ice_restart=ice_restart)

    async def _make_offer(self, *, ice_restart: bool = False) -> None:
        engine = self._engine
        if engine is None:
            return

        previous = self.state
        self.making_offer = True
        self.state = SignalingState.MAKING_LOCAL_OFFER
        try:
            offer = await engine.create_offer(ice_restart=ice_restart)
            await engine.set_local_description(offer)
        except Exception:
            logger.exception("Could not create local offer")
            self.state = previous
            return
        finally:
            self.making_offer = False

        self.state = SignalingState.HAVE_LOCAL_OFFER
        self._local_offer_restart = ice_restart
        if ice_restart:
            self._last_restart_at = self._clock()
            self.restart_attempts += 1
            logger.info("Sending ICE restart offer (attempt %d)", self.restart_attempts)
        await self._send(MessageType.SIGNAL_OFFER.value, offer)

    async def _on_remote_signal(self, message_type: str, data: Any) -> None:
        if message_type == MessageType.SIGNAL_OFFER.value:
            await self._on_remote_offer(data)
        elif message_type == MessageType.SIGNAL_ANSWER.value:
            await self._on_remote_answer(data)
        elif message_type == MessageType.SIGNAL_ICE.value:
            await self._on_remote_candidate(data)

    async def _on_remote_offer(self, offer: Description) -> None:
        collision = self.making_offer or self.state not in _SETTLED
        self.ignore_offer = collision and not self.polite
        if self.ignore_offer:
            logger.info("Ignoring colliding offer; partner is expected to yield")
            return

        if collision:
            # Our own offer is rolled back; re-offer once the exchange settles.
            self._pending_negotiation = True
            self._pending_restart = self._pending_restart or self._local_offer_restart

        engine = self._engine
        if engine is None:
            return
        try:
            await engine.set_remote_description(offer)
            self.state = SignalingState.HAVE_REMOTE_OFFER
            self._has_remote_description = True
            await self._flush_candidates()
            answer = await engine.create_answer()
            await engine.set_local_description(answer)
        except Exception:
            logger.exception("Could not answer remote offer")
            self._settle()
            return

        self.state = SignalingState.STABLE
        await self._send(MessageType.SIGNAL_ANSWER.value, answer)
        await self._run_pending()

    async def _on_remote_answer(self, answer: Description) -> None:
        engine = self._engine
        if engine is None or self.state is not SignalingState.HAVE_LOCAL_OFFER:
            logger.debug("Ignoring answer received in state %s", self.state.value)
            return
        try:
            await engine.set_remote_description(answer)
        except Exception:
            logger.exception("Could not apply remote answer")
            self._settle()
            return

        self._has_remote_description = True
        self.state = SignalingState.STABLE
        await self._flush_candidates()
        await self._run_pending()

    async def _on_remote_candidate(self, candidate: Optional[Candidate]) -> None:
        if not self._has_remote_description:
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self) -> None:
        while self._pending_candidates:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def _apply_candidate(self, candidate: Optional[Candidate]) -> None:
        engine = self._engine
        if engine is None:
            return
        try:
            await engine.add_ice_candidate(candidate)
        except Exception as exc:
            if self.ignore_offer:
                logger.debug("Skipped candidate from ignored offer: %s", exc)
            else:
                logger.warning("Failed to add ICE candidate: %s", exc)

    async def _run_pending(self) -> None:
        if not self._pending_negotiation:
            return
        ice_restart = self._pending_restart
        self._pending_negotiation = False
        self._pending_restart = False
        await self._make_offer(ice_restart=ice_restart)

    def _settle(self) -> None:
        self.state = SignalingState.STABLE if self._has_remote_description else SignalingState.IDLE

    async def _on_connectivity(self, event: _ConnectivityChanged) -> None:
        if event.generation != self._generation:
            logger.debug("Ignoring %s from a replaced connection", event.state.value)
            return

        self.connectivity = event.state
        if event.state is ConnectivityState.CONNECTED:
            self._cancel_escalation()
            self._escalated = False
            self.restart_attempts = 0
        elif event.state in _BROKEN:
            await self._restart_ice()
            self._arm_escalation()

    async def _restart_ice(self) -> None:
        now = self._clock()
        if self._last_restart_at is not None and now - self._last_restart_at < self._policy.restart_cooldown:
            logger.debug("ICE restart suppressed during cooldown")
            return

        logger.warning("Connectivity %s; restarting ICE", self.connectivity.value)
        await self._on_negotiation_needed(ice_restart=True)

    def _arm_escalation(self) -> None:
        if not self._policy.relay_fallback or self._escalated or self._escalation_task is not None:
            return
        self._episode += 1
        self._escalation_task = asyncio.create_task(self._escalate_later(self._episode))

    async def _escalate_later(self, episode: int) -> None:
        await asyncio.sleep(self._policy.escalation_delay)
        self._post(_EscalationDue(episode))

    def _cancel_escalation(self) -> None:
        task, self._escalation_task = self._escalation_task, None
        if task is not None:
            task.cancel()
        self._episode += 1

    async def _on_escalation_due(self, episode: int) -> None:
        if self._closed or episode != self._episode or self._escalation_task is None:
            return
        self._escalation_task = None
        if self.connectivity is ConnectivityState.CONNECTED:
            return

        self._escalated = True
        logger.warning(
            "Connectivity did not recover within %.1fs; rebuilding with relay-only transport",
            self._policy.escalation_delay,
        )
        await self._rebuild_engine(relay_only=True)
        await self._make_offer(ice_restart=True)

    async def _rebuild_engine(self, *, relay_only: bool) -> None:
        engine, self._engine = self._engine, None
        self._generation += 1
        if engine is not None:
            await self._close_engine(engine)

        self.state = SignalingState.IDLE
        self.connectivity = ConnectivityState.NEW
        self.making_offer = False
        self.ignore_offer = False
        self._has_remote_description = False
        self._pending_candidates.clear()
        self._pending_negotiation = False
        self._pending_restart = False
        await self._build_engine(relay_only=relay_only)

    async def _build_engine(self, *, relay_only: bool) -> None:
        generation = self._generation
        options = EngineOptions(
            ice_servers=list(self._ice_servers),
            relay_only=relay_only,
            on_candidate=lambda candidate: self._post(_LocalCandidate(candidate, generation)),
            on_connectivity=lambda state: self._post(_ConnectivityChanged(ConnectivityState(state), generation)),
            on_negotiation_needed=lambda: self._post(_NegotiationNeeded()),
        )
        self._engine = await self._engine_factory(options)
        self.relay_only = relay_only

    async def _close_engine(self, engine: MediaEngine) -> None:
        try:
            await engine.close()
        except Exception as exc:
            logger.warning("Error while closing media engine: %s", exc)

    async def _send(self, message_type: str, data: Any) -> None:
        try:
            await self._send_signal(message_type, data)
        except Exception as exc:
            logger.warning("Could not send %s: %s", message_type, exc)
