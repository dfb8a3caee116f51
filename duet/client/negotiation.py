"""
Client-side negotiation state machine.

All inbound signaling frames, connectivity callbacks and timers become events
on one :class:`asyncio.Queue`, consumed by :meth:`NegotiationMachine.run`.
Work that has to wait on an external capability (media acquisition,
description creation and application, candidate application) is executed in
order by a per-attempt worker task, so the event loop keeps consuming events
while such a step is pending.  Tearing an attempt down cancels its worker and
any late result tagged with the old attempt number is ignored.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from .. import DuetError, protocol
from ..protocol import MessageType, ProtocolError
from ..schemas import parse_pairing_result

LOG = logging.getLogger(__name__)

DEFAULT_REQUEUE_DELAY = 2.0
DEFAULT_NEGOTIATION_TIMEOUT = 30.0

LINK_UP_STATES = frozenset({"connected", "completed"})
LINK_DOWN_STATES = frozenset({"failed", "disconnected", "closed"})


class NegotiationError(DuetError):
    """Raised when the connectivity primitive fails to produce a description."""


class MediaAcquisitionError(DuetError):
    """Raised by a media provider when capture is denied or unavailable."""


class InvalidTransition(DuetError):
    """Raised when the machine is asked to make a transition it does not allow."""


class NegotiationState(str, Enum):
    IDLE = "idle"
    AWAITING_PARTNER = "awaiting-partner"
    EXCHANGING_DESCRIPTIONS = "exchanging-descriptions"
    EXCHANGING_CANDIDATES = "exchanging-candidates"
    CONNECTED = "connected"
    LOST = "lost"


ALLOWED_TRANSITIONS: Dict[NegotiationState, frozenset] = {
    NegotiationState.IDLE: frozenset({NegotiationState.AWAITING_PARTNER}),
    NegotiationState.AWAITING_PARTNER: frozenset(
        {NegotiationState.EXCHANGING_DESCRIPTIONS, NegotiationState.LOST}
    ),
    NegotiationState.EXCHANGING_DESCRIPTIONS: frozenset(
        {NegotiationState.EXCHANGING_CANDIDATES, NegotiationState.LOST}
    ),
    NegotiationState.EXCHANGING_CANDIDATES: frozenset(
        {NegotiationState.CONNECTED, NegotiationState.LOST}
    ),
    NegotiationState.CONNECTED: frozenset({NegotiationState.LOST}),
    NegotiationState.LOST: frozenset({NegotiationState.AWAITING_PARTNER}),
}

# States in which a remote candidate belongs to the current attempt.
CANDIDATE_STATES = frozenset(
    {
        NegotiationState.EXCHANGING_DESCRIPTIONS,
        NegotiationState.EXCHANGING_CANDIDATES,
        NegotiationState.CONNECTED,
    }
)


# ---------------------------------------------------------------------- collaborators


class SignalingSender(Protocol):
    async def send(self, payload: Dict[str, Any]) -> None: ...


class LocalMedia(Protocol):
    tracks: Sequence[Any]

    def stop(self) -> None: ...


class MediaProvider(Protocol):
    async def acquire(self) -> LocalMedia: ...


class Connectivity(Protocol):
    """The transport-negotiation primitive (an RTCPeerConnection wrapper)."""

    def add_tracks(self, tracks: Sequence[Any]) -> None: ...

    async def create_offer(self) -> Any: ...

    async def create_answer(self) -> Any: ...

    async def set_remote_description(self, description: Any) -> None: ...

    async def add_candidate(self, candidate: Any) -> None: ...

    async def close(self) -> None: ...


ConnectivityFactory = Callable[[Callable[[Any], None], Callable[[str], None]], Connectivity]


# ---------------------------------------------------------------------- events


@dataclass(frozen=True)
class PairingRequested:
    pass


@dataclass(frozen=True)
class SignalReceived:
    message: Dict[str, Any]


@dataclass(frozen=True)
class LinkStateChanged:
    attempt: int
    state: str


@dataclass(frozen=True)
class LocalCandidate:
    attempt: int
    candidate: Any


@dataclass(frozen=True)
class OfferReady:
    attempt: int
    description: Any


@dataclass(frozen=True)
class AnswerReady:
    attempt: int
    description: Any


@dataclass(frozen=True)
class RemoteDescriptionApplied:
    attempt: int


@dataclass(frozen=True)
class StepFailed:
    attempt: int
    error: BaseException


@dataclass(frozen=True)
class NegotiationTimedOut:
    attempt: int


@dataclass(frozen=True)
class RequeueDue:
    generation: int


@dataclass(frozen=True)
class _Shutdown:
    pass


@dataclass(frozen=True, slots=True)
class NegotiationSnapshot:
    """Immutable view of the machine for observers and the user-facing status."""

    rev: int
    state: NegotiationState
    peer_id: str
    partner_id: Optional[str] = None
    initiator: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "rev": int(self.rev),
            "state": self.state.value,
            "peerId": self.peer_id,
            "partnerId": self.partner_id,
            "initiator": self.initiator,
            "error": self.error,
        }


@dataclass
class _Attempt:
    number: int
    partner_id: str
    initiator: bool
    connection: Optional[Connectivity] = None
    remote_set: bool = False
    link_up: bool = False
    pending_candidates: List[Any] = field(default_factory=list)
    steps: "asyncio.Queue[Callable[[], Awaitable[None]]]" = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None


def generate_peer_id() -> str:
    return f"user_{uuid.uuid4().hex[:9]}"


class NegotiationMachine:
    """
    Drive one client through pairing, description exchange and candidate
    exchange, and back to the pairing queue whenever the partner is lost.
    """

    def __init__(
        self,
        channel: SignalingSender,
        media_provider: MediaProvider,
        connectivity_factory: ConnectivityFactory,
        *,
        peer_id: Optional[str] = None,
        requeue_delay: float = DEFAULT_REQUEUE_DELAY,
        negotiation_timeout: Optional[float] = DEFAULT_NEGOTIATION_TIMEOUT,
    ) -> None:
        self.channel = channel
        self.media_provider = media_provider
        self.connectivity_factory = connectivity_factory
        self.peer_id = peer_id or generate_peer_id()
        self.requeue_delay = max(0.0, float(requeue_delay))
        self.negotiation_timeout = (
            float(negotiation_timeout) if negotiation_timeout and negotiation_timeout > 0 else None
        )

        self._events: asyncio.Queue = asyncio.Queue()
        self._state = NegotiationState.IDLE
        self._rev = 0
        self._error: Optional[str] = None
        self._attempt: Optional[_Attempt] = None
        self._attempt_counter = 0
        self._media: Optional[LocalMedia] = None
        self._requeue_generation = 0
        self._requeue_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

        self._observer_counter = 0
        self._observers: Dict[int, Callable[[NegotiationSnapshot], None]] = {}
        self.logger = LOG.getChild(self.peer_id)

    # ------------------------------------------------------------------ observers

    @property
    def state(self) -> NegotiationState:
        return self._state

    def snapshot(self) -> NegotiationSnapshot:
        attempt = self._attempt
        return NegotiationSnapshot(
            rev=self._rev,
            state=self._state,
            peer_id=self.peer_id,
            partner_id=attempt.partner_id if attempt else None,
            initiator=attempt.initiator if attempt else None,
            error=self._error,
        )

    def subscribe(self, callback: Callable[[NegotiationSnapshot], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self.snapshot())
        except Exception:  # pragma: no cover - observer failures should not kill the machine
            LOG.exception("Negotiation observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the machine
                LOG.exception("Negotiation observer %s failed.", token)

    async def wait_for(self, *states: NegotiationState, timeout: Optional[float] = None) -> NegotiationSnapshot:
        """Resolve with the first snapshot whose state is one of ``states``."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _observer(snapshot: NegotiationSnapshot) -> None:
            if snapshot.state in states and not future.done():
                future.set_result(snapshot)

        token = self.subscribe(_observer)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self.unsubscribe(token)

    # ------------------------------------------------------------------ inputs

    def post(self, event: object) -> None:
        if self._closed:
            return
        self._events.put_nowait(event)

    def deliver(self, message: Dict[str, Any]) -> None:
        """Queue an inbound signaling frame."""

        self.post(SignalReceived(message))

    def start(self) -> None:
        self.post(PairingRequested())

    def retry(self) -> None:
        """Ask for a new partner after a media or connectivity error parked the machine."""

        self.post(PairingRequested())

    # ------------------------------------------------------------------ loop

    async def run(self) -> None:
        while not self._closed:
            event = await self._events.get()
            if isinstance(event, _Shutdown):
                break
            try:
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Failed to handle %s", type(event).__name__)

    async def close(self) -> None:
        """Release the attempt, the peer connection and the local media."""

        if self._closed:
            return
        self._cancel_requeue()
        await self._teardown_attempt()
        media, self._media = self._media, None
        if media is not None:
            try:
                media.stop()
            except Exception:  # pragma: no cover - defensive
                self.logger.exception("Failed to stop local media")
        self._closed = True
        self._events.put_nowait(_Shutdown())
        self._set_state(NegotiationState.IDLE, force=True)

    async def _dispatch(self, event: object) -> None:
        if isinstance(event, SignalReceived):
            await self._on_signal(event.message)
        elif isinstance(event, PairingRequested):
            await self._on_pairing_requested()
        elif isinstance(event, LinkStateChanged):
            await self._on_link_state(event)
        elif isinstance(event, LocalCandidate):
            if self._is_current(event.attempt):
                await self._send(protocol.connectivity_candidate(event.candidate))
        elif isinstance(event, OfferReady):
            if self._is_current(event.attempt):
                await self._send(protocol.session_offer(event.description))
        elif isinstance(event, AnswerReady):
            if self._is_current(event.attempt):
                await self._send(protocol.session_answer(event.description))
                self._settle_descriptions()
        elif isinstance(event, RemoteDescriptionApplied):
            if self._is_current(event.attempt):
                self._settle_descriptions()
        elif isinstance(event, StepFailed):
            await self._on_step_failed(event)
        elif isinstance(event, NegotiationTimedOut):
            if self._is_current(event.attempt) and self._state is not NegotiationState.CONNECTED:
                self.logger.warning("Negotiation timed out after %.1fs", self.negotiation_timeout or 0.0)
                await self._enter_lost("negotiation timeout")
        elif isinstance(event, RequeueDue):
            if event.generation == self._requeue_generation and self._state is NegotiationState.LOST:
                await self._request_pairing()
        else:
            self.logger.debug("Ignoring unknown event %r", event)

    # ------------------------------------------------------------------ transitions

    def _set_state(self, state: NegotiationState, *, force: bool = False) -> None:
        if (state is self._state or self._closed) and not force:
            return
        if not force and state not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransition(f"{self._state.value} -> {state.value}")
        self.logger.info("%s -> %s", self._state.value, state.value)
        self._state = state
        self._rev += 1
        self._notify()

    def _is_current(self, number: int) -> bool:
        return self._attempt is not None and self._attempt.number == number

    async def _send(self, payload: Dict[str, Any]) -> None:
        try:
            await self.channel.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.warning("Failed to send %s", payload.get("type"), exc_info=True)

    async def _request_pairing(self) -> None:
        self._cancel_requeue()
        await self._send(protocol.pairing_request(self.peer_id))
        self._set_state(NegotiationState.AWAITING_PARTNER)

    def _settle_descriptions(self) -> None:
        attempt = self._attempt
        if attempt is None or self._state is not NegotiationState.EXCHANGING_DESCRIPTIONS:
            return
        self._set_state(NegotiationState.EXCHANGING_CANDIDATES)
        if attempt.link_up:
            self._enter_connected()

    def _enter_connected(self) -> None:
        attempt = self._attempt
        if attempt is not None and attempt.timeout_handle is not None:
            attempt.timeout_handle.cancel()
            attempt.timeout_handle = None
        self._set_state(NegotiationState.CONNECTED)

    async def _enter_lost(self, reason: str) -> None:
        self.logger.info("Partner lost (%s)", reason)
        await self._teardown_attempt()
        self._set_state(NegotiationState.LOST)
        self._schedule_requeue()

    def _schedule_requeue(self) -> None:
        self._cancel_requeue()
        self._requeue_generation += 1
        generation = self._requeue_generation
        loop = asyncio.get_running_loop()
        self._requeue_handle = loop.call_later(self.requeue_delay, self.post, RequeueDue(generation))

    def _cancel_requeue(self) -> None:
        if self._requeue_handle is not None:
            self._requeue_handle.cancel()
            self._requeue_handle = None

    async def _teardown_attempt(self) -> None:
        attempt, self._attempt = self._attempt, None
        if attempt is None:
            return
        if attempt.timeout_handle is not None:
            attempt.timeout_handle.cancel()
        if attempt.worker is not None and not attempt.worker.done():
            attempt.worker.cancel()
            try:
                await attempt.worker
            except asyncio.CancelledError:
                pass
        if attempt.connection is not None:
            try:
                await attempt.connection.close()
            except Exception:
                self.logger.warning("Failed to close peer connection", exc_info=True)

    # ------------------------------------------------------------------ handlers

    async def _on_pairing_requested(self) -> None:
        if self._state is NegotiationState.IDLE:
            self._error = None
            await self._request_pairing()
            return
        self.logger.debug("Pairing already in progress (%s)", self._state.value)

    async def _on_signal(self, message: Dict[str, Any]) -> None:
        kind = protocol.message_type(message)
        if kind is None:
            self.logger.warning("Dropping malformed frame %r", message)
            return
        try:
            if kind is MessageType.PAIRING_RESULT:
                await self._on_pairing_result(message)
            elif kind is MessageType.SESSION_OFFER:
                self._on_offer(message)
            elif kind is MessageType.SESSION_ANSWER:
                self._on_answer(message)
            elif kind is MessageType.CONNECTIVITY_CANDIDATE:
                self._on_remote_candidate(message)
            elif kind is MessageType.PARTNER_LOST:
                await self._on_partner_lost()
            elif kind is MessageType.PING:
                await self._send({"type": MessageType.PONG.value, "ts": message.get("ts")})
            elif kind is MessageType.PONG:
                pass
            else:
                self.logger.debug("Ignoring %s", kind.value)
        except ProtocolError as exc:
            self.logger.warning("Dropping %s: %s", kind.value, exc)

    async def _on_pairing_result(self, message: Dict[str, Any]) -> None:
        result = parse_pairing_result(message)
        if self._state is not NegotiationState.AWAITING_PARTNER:
            raise ProtocolError(f"unexpected pairing result in state {self._state.value}")
        if result.partner_id == self.peer_id:
            raise ProtocolError("paired with self")

        self._attempt_counter += 1
        attempt = _Attempt(
            number=self._attempt_counter,
            partner_id=result.partner_id,
            initiator=result.initiator,
        )
        self._attempt = attempt
        loop = asyncio.get_running_loop()
        if self.negotiation_timeout is not None:
            attempt.timeout_handle = loop.call_later(
                self.negotiation_timeout, self.post, NegotiationTimedOut(attempt.number)
            )
        attempt.steps.put_nowait(lambda: self._prepare(attempt))
        attempt.worker = asyncio.create_task(self._run_steps(attempt))
        self.logger.info(
            "Paired with %s as %s", attempt.partner_id, "initiator" if attempt.initiator else "responder"
        )
        self._set_state(NegotiationState.EXCHANGING_DESCRIPTIONS)

    def _on_offer(self, message: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or self._state is not NegotiationState.EXCHANGING_DESCRIPTIONS:
            raise ProtocolError(f"unexpected offer in state {self._state.value}")
        if attempt.initiator:
            raise ProtocolError("initiator received an offer")
        description = message.get("offer")
        if description is None:
            raise ProtocolError("offer without description")
        attempt.steps.put_nowait(lambda: self._accept_offer(attempt, description))

    def _on_answer(self, message: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or self._state is not NegotiationState.EXCHANGING_DESCRIPTIONS:
            raise ProtocolError(f"unexpected answer in state {self._state.value}")
        if not attempt.initiator:
            raise ProtocolError("responder received an answer")
        description = message.get("answer")
        if description is None:
            raise ProtocolError("answer without description")
        attempt.steps.put_nowait(lambda: self._accept_answer(attempt, description))

    def _on_remote_candidate(self, message: Dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None or self._state not in CANDIDATE_STATES:
            raise ProtocolError(f"unexpected candidate in state {self._state.value}")
        candidate = message.get("candidate")
        if candidate is None:
            raise ProtocolError("candidate without payload")
        attempt.steps.put_nowait(lambda: self._apply_candidate(attempt, candidate))

    async def _on_partner_lost(self) -> None:
        if self._state in (NegotiationState.IDLE, NegotiationState.LOST):
            return
        if self._state is NegotiationState.AWAITING_PARTNER:
            # Notification for a session this client already left.
            self.logger.debug("Ignoring stale partner-lost while awaiting a partner")
            return
        await self._enter_lost("partner disconnected")

    async def _on_link_state(self, event: LinkStateChanged) -> None:
        attempt = self._attempt
        if attempt is None or attempt.number != event.attempt:
            return
        state = str(event.state or "").lower()
        if state in LINK_UP_STATES:
            if self._state is NegotiationState.EXCHANGING_CANDIDATES:
                self._enter_connected()
            elif self._state is NegotiationState.EXCHANGING_DESCRIPTIONS:
                attempt.link_up = True
        elif state in LINK_DOWN_STATES:
            await self._enter_lost(f"link {state}")

    async def _on_step_failed(self, event: StepFailed) -> None:
        if not self._is_current(event.attempt):
            return
        error = event.error
        if isinstance(error, MediaAcquisitionError):
            self.logger.error("Media acquisition failed: %s", error)
            await self._teardown_attempt()
            self._error = str(error) or "media unavailable"
            self._set_state(NegotiationState.IDLE, force=True)
            return
        self._error = str(error) or type(error).__name__
        await self._enter_lost(f"negotiation failed: {self._error}")

    # ------------------------------------------------------------------ worker steps

    async def _run_steps(self, attempt: _Attempt) -> None:
        while True:
            step = await attempt.steps.get()
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except ProtocolError as exc:
                self.logger.warning("Dropping inbound description: %s", exc)
            except Exception as exc:
                self.post(StepFailed(attempt.number, exc))
                return

    async def _ensure_media(self) -> LocalMedia:
        if self._media is None:
            try:
                self._media = await self.media_provider.acquire()
            except (asyncio.CancelledError, MediaAcquisitionError):
                raise
            except Exception as exc:
                raise MediaAcquisitionError(str(exc) or type(exc).__name__) from exc
        return self._media

    async def _prepare(self, attempt: _Attempt) -> None:
        media = await self._ensure_media()
        number = attempt.number

        def _on_candidate(candidate: Any) -> None:
            self.post(LocalCandidate(number, candidate))

        def _on_state(state: str) -> None:
            self.post(LinkStateChanged(number, state))

        try:
            connection = self.connectivity_factory(_on_candidate, _on_state)
            attempt.connection = connection
            connection.add_tracks(list(media.tracks))
            if attempt.initiator:
                offer = await connection.create_offer()
                self.post(OfferReady(number, offer))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise NegotiationError(f"failed to prepare connection: {exc}") from exc

    async def _apply_remote(self, attempt: _Attempt, description: Any) -> None:
        assert attempt.connection is not None
        try:
            await attempt.connection.set_remote_description(description)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ProtocolError(f"remote description rejected: {exc}") from exc
        attempt.remote_set = True
        await self._flush_candidates(attempt)

    async def _accept_offer(self, attempt: _Attempt, offer: Any) -> None:
        await self._apply_remote(attempt, offer)
        assert attempt.connection is not None
        try:
            answer = await attempt.connection.create_answer()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise NegotiationError(f"failed to create answer: {exc}") from exc
        self.post(AnswerReady(attempt.number, answer))

    async def _accept_answer(self, attempt: _Attempt, answer: Any) -> None:
        await self._apply_remote(attempt, answer)
        self.post(RemoteDescriptionApplied(attempt.number))

    async def _apply_candidate(self, attempt: _Attempt, candidate: Any) -> None:
        if not attempt.remote_set:
            attempt.pending_candidates.append(candidate)
            return
        await self._add_candidate(attempt, candidate)

    async def _flush_candidates(self, attempt: _Attempt) -> None:
        pending, attempt.pending_candidates = attempt.pending_candidates, []
        for candidate in pending:
            await self._add_candidate(attempt, candidate)

    async def _add_candidate(self, attempt: _Attempt, candidate: Any) -> None:
        assert attempt.connection is not None
        try:
            await attempt.connection.add_candidate(candidate)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.warning("Dropping remote candidate %r", candidate, exc_info=True)
