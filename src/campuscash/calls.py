"""One-to-one audio/video call signaling over per-user broadcast channels.

A :class:`CallSession` owns at most one peer connection at a time. Signals are
plain dicts ``{"type", "call_id", "from", ...}`` handed to ``send_signal`` and
received through :meth:`CallSession.handle_signal`; the peer connection itself
is reached only through the narrow :class:`PeerConnection` interface.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import CallBusy, CallError, TransportError
from .models import CallRequest, Profile

logger = logging.getLogger(__name__)

PHASE_IDLE = "idle"
PHASE_CALLING = "calling"
PHASE_RINGING = "ringing"
PHASE_CONNECTED = "connected"
PHASE_ENDED = "ended"

END_REJECTED = "rejected"
END_ERROR = "error"
END_HANGUP = "hangup"

SIGNAL_INVITE = "invite"
SIGNAL_ANSWER = "answer"
SIGNAL_CANDIDATE = "candidate"
SIGNAL_REJECT = "reject"
SIGNAL_HANGUP = "hangup"

REASON_BUSY = "busy"
REASON_UNAVAILABLE = "unavailable"

CALL_CANCELLED = "The call was cancelled"
CALL_REFUSED = "You can't call this user"

STATE_CONNECTED = "connected"
STATE_FAILED = "failed"

DEFAULT_ICE_SERVERS = ({"urls": "stun:stun.l.google.com:19302"},)

# Listener events.
EVENT_RINGING = "ringing"
EVENT_CONNECTED = "connected"
EVENT_ENDED = "ended"
EVENT_BUSY_REJECTED = "busy_rejected"

SendSignal = Callable[[str, Dict[str, Any]], Awaitable[None]]
CallListener = Callable[[str, "CallSession"], None]


class MediaTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True
        self.enabled = False


class MediaStream:
    def __init__(self, tracks: List[MediaTrack] | None = None) -> None:
        self.tracks = list(tracks or [])

    def audio_tracks(self) -> List[MediaTrack]:
        return [track for track in self.tracks if track.kind == "audio"]

    def video_tracks(self) -> List[MediaTrack]:
        return [track for track in self.tracks if track.kind == "video"]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class PeerConnection:
    """Wrapper around a platform peer connection.

    Implementations report ICE candidates, connection-state changes and the
    remote stream through the three ``on_*`` callbacks, which the session
    installs before calling anything else.
    """

    def __init__(self, ice_servers: tuple = DEFAULT_ICE_SERVERS) -> None:
        self.ice_servers = ice_servers
        self.on_ice_candidate: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None
        self.on_remote_stream: Optional[Callable[[MediaStream], None]] = None

    async def open_local_media(self, video: bool) -> MediaStream:
        raise NotImplementedError

    async def create_offer(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def set_remote_answer(self, answer: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


PeerFactory = Callable[[], PeerConnection]


class Ringtone:
    """Looping incoming-call cue. The base class is silent."""

    def start(self) -> None:
        return None

    def stop(self) -> None:
        return None


class CallSession:
    def __init__(
        self,
        user: Profile,
        *,
        peer_factory: PeerFactory | None,
        send_signal: SendSignal,
        ringtone: Ringtone | None = None,
        tick_interval_s: float = 1.0,
        listener: CallListener | None = None,
    ) -> None:
        self.user = user
        self._peer_factory = peer_factory
        self._send_signal = send_signal
        self.ringtone = ringtone or Ringtone()
        self.tick_interval_s = tick_interval_s
        self._listener = listener

        self.phase = PHASE_IDLE
        self.end_reason: str | None = None
        self.error: str | None = None
        self.remote_reason: str | None = None
        self.call_id: str | None = None
        self.peer_id: str | None = None
        self.is_video = False
        self.is_muted = False
        self.is_video_enabled = False
        self.duration_s = 0
        self.incoming: CallRequest | None = None
        self.local_stream: MediaStream | None = None
        self.remote_stream: MediaStream | None = None

        self._peer: PeerConnection | None = None
        self._answered = False
        self._remote_ready = False
        self._pending_candidates: List[Dict[str, Any]] = []
        self._ticker: asyncio.Task | None = None
        self._tasks: Set[asyncio.Task] = set()
        self._ringing = False

    @property
    def active(self) -> bool:
        return self.phase in (PHASE_CALLING, PHASE_RINGING, PHASE_CONNECTED)

    @property
    def terminal(self) -> bool:
        return self.phase in (PHASE_IDLE, PHASE_ENDED)

    def _emit(self, event: str) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event, self)
        except Exception:
            logger.exception("call listener failed on %s", event)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait for signals queued from peer callbacks to be sent."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _reset(self) -> None:
        self.end_reason = None
        self.error = None
        self.remote_reason = None
        self.call_id = None
        self.peer_id = None
        self.is_video = False
        self.is_muted = False
        self.is_video_enabled = False
        self.duration_s = 0
        self.incoming = None
        self.local_stream = None
        self.remote_stream = None
        self._peer = None
        self._answered = False
        self._remote_ready = False
        self._pending_candidates = []

    async def _signal(self, kind: str, **fields: Any) -> None:
        if self.peer_id is None or self.call_id is None:
            return
        payload: Dict[str, Any] = {"type": kind, "call_id": self.call_id, "from": self.user.id}
        payload.update(fields)
        await self._send_signal(self.peer_id, payload)

    async def _signal_best_effort(self, kind: str, **fields: Any) -> None:
        try:
            await self._signal(kind, **fields)
        except TransportError as exc:
            logger.warning("call %s: could not send %s: %s", self.call_id, kind, exc)

    # peer callbacks

    def _make_peer(self) -> PeerConnection:
        if self._peer_factory is None:
            raise CallError("Calls are not available on this device")
        peer = self._peer_factory()
        call_id = self.call_id
        peer.on_ice_candidate = lambda candidate: self._on_local_candidate(call_id, candidate)
        peer.on_connection_state = lambda state: self._on_connection_state(call_id, state)
        peer.on_remote_stream = lambda stream: self._on_remote_stream(call_id, stream)
        self._peer = peer
        return peer

    def _on_local_candidate(self, call_id: str | None, candidate: Dict[str, Any]) -> None:
        if call_id != self.call_id or self.terminal:
            return
        self._spawn(self._signal_best_effort(SIGNAL_CANDIDATE, candidate=candidate))

    def _on_remote_stream(self, call_id: str | None, stream: MediaStream) -> None:
        if call_id == self.call_id and not self.terminal:
            self.remote_stream = stream

    def _on_connection_state(self, call_id: str | None, state: str) -> None:
        if call_id != self.call_id or self.terminal:
            return
        if state == STATE_CONNECTED:
            if self.phase == PHASE_CALLING or (self.phase == PHASE_RINGING and self._answered):
                self._enter_connected()
        elif state == STATE_FAILED:
            logger.warning("call %s: peer connection failed", call_id)
            self._spawn(self._fail_and_notify())

    def _enter_connected(self) -> None:
        self.phase = PHASE_CONNECTED
        self.duration_s = 0
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick())
        self._emit(EVENT_CONNECTED)

    async def _tick(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_interval_s)
                if self.phase != PHASE_CONNECTED:
                    return
                self.duration_s += 1
        except asyncio.CancelledError:
            return

    async def _stop_ticker(self) -> None:
        task, self._ticker = self._ticker, None
        if task is None:
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _start_ringing(self) -> None:
        self._ringing = True
        self.ringtone.start()

    def _stop_ringing(self) -> None:
        if self._ringing:
            self._ringing = False
            self.ringtone.stop()

    async def _end(self, reason: str, error: str | None = None) -> None:
        if self.terminal:
            return
        self.phase = PHASE_ENDED
        self.end_reason = reason
        self.error = error
        self._stop_ringing()
        await self._stop_ticker()
        self.duration_s = 0
        peer, self._peer = self._peer, None
        if self.local_stream is not None:
            self.local_stream.stop()
        if peer is not None:
            try:
                await peer.close()
            except Exception:
                logger.exception("call %s: closing peer connection failed", self.call_id)
        self.incoming = None
        self._pending_candidates = []
        self._emit(EVENT_ENDED)

    async def _fail_and_notify(self, error: str | None = None) -> None:
        if self.terminal:
            return
        await self._signal_best_effort(SIGNAL_HANGUP, reason=END_ERROR)
        await self._end(END_ERROR, error)

    async def _flush_candidates(self) -> None:
        peer = self._peer
        candidates, self._pending_candidates = self._pending_candidates, []
        if peer is None:
            return
        for candidate in candidates:
            await peer.add_ice_candidate(candidate)

    def _is_current(self, call_id: str) -> bool:
        return self.call_id == call_id and not self.terminal

    def _ensure_current(self, call_id: str, stream: MediaStream | None = None) -> None:
        """Raise if the call ended while media or negotiation was pending.

        ``_end`` has already closed the peer by then, so only a stream acquired
        after it ran still needs stopping.
        """

        if self._is_current(call_id):
            return
        if stream is not None:
            stream.stop()
        raise CallError(CALL_CANCELLED)

    # user actions

    async def initiate(self, callee: str, with_video: bool) -> str:
        """Start ringing ``callee``; returns the new call id."""

        if self.active:
            raise CallBusy("A call is already in progress")
        if not callee or callee == self.user.id:
            raise CallError("Choose someone else to call")
        await self._stop_ticker()
        self._reset()
        call_id = uuid.uuid4().hex
        self.call_id = call_id
        self.peer_id = callee
        self.is_video = with_video
        self.is_video_enabled = with_video
        self.phase = PHASE_CALLING
        try:
            peer = self._make_peer()
            stream = await peer.open_local_media(with_video)
            self._ensure_current(call_id, stream)
            self.local_stream = stream
            offer = await peer.create_offer()
            self._ensure_current(call_id)
            await self._signal(
                SIGNAL_INVITE,
                caller=self.user.to_api_dict(),
                is_video=with_video,
                offer=offer,
            )
        except Exception as exc:
            logger.warning("call %s: could not start: %s", call_id, exc)
            if isinstance(exc, CallError):
                error = exc
            elif not self._is_current(call_id):
                error = CallError(CALL_CANCELLED)
            elif isinstance(exc, TransportError) and exc.code == "forbidden":
                error = CallError(CALL_REFUSED)
            elif isinstance(exc, TransportError):
                error = CallError("Could not reach the other user")
            else:
                error = CallError("Could not access camera/microphone")
            if self.call_id == call_id:
                await self._end(END_ERROR, str(error))
            if error is exc:
                raise
            raise error from exc
        return call_id

    async def accept(self, call_id: str | None = None) -> None:
        incoming = self.incoming
        if self.phase != PHASE_RINGING or incoming is None or self._answered:
            raise CallError("There is no incoming call to accept")
        if call_id is not None and call_id != incoming.call_id:
            raise CallError("There is no incoming call to accept")
        call_id = incoming.call_id
        self._stop_ringing()
        self._answered = True
        try:
            peer = self._make_peer()
            stream = await peer.open_local_media(incoming.is_video)
            self._ensure_current(call_id, stream)
            self.local_stream = stream
            answer = await peer.create_answer(incoming.offer or {})
            self._ensure_current(call_id)
            self._remote_ready = True
            await self._flush_candidates()
            self._ensure_current(call_id)
            await self._signal(SIGNAL_ANSWER, answer=answer)
        except Exception as exc:
            if not self._is_current(call_id):
                logger.info("call %s: ended while answering", call_id)
                if isinstance(exc, CallError) and str(exc) == CALL_CANCELLED:
                    raise
                raise CallError(CALL_CANCELLED) from exc
            logger.warning("call %s: could not answer: %s", call_id, exc)
            if self.local_stream is None:
                error = CallError("Could not access camera/microphone")
            else:
                error = CallError("There was an error with the call connection")
            await self._fail_and_notify(str(error))
            raise error from exc

    async def reject(self, call_id: str | None = None) -> None:
        if self.phase != PHASE_RINGING or self._answered:
            return
        if call_id is not None and call_id != self.call_id:
            return
        self._stop_ringing()
        await self._signal_best_effort(SIGNAL_REJECT, reason=END_REJECTED)
        await self._end(END_REJECTED)

    async def refuse(self, call_id: str, caller_id: str, reason: str) -> None:
        """Reject an invite without touching the call this session is on."""

        if call_id == self.call_id and not self.terminal:
            return
        try:
            await self._send_signal(
                caller_id,
                {"type": SIGNAL_REJECT, "call_id": call_id, "from": self.user.id, "reason": reason},
            )
        except TransportError as exc:
            logger.warning("could not reject call %s: %s", call_id, exc)

    async def hangup(self) -> None:
        if self.terminal:
            return
        await self._signal_best_effort(SIGNAL_HANGUP, reason=END_HANGUP)
        await self._end(END_HANGUP)

    def toggle_audio(self) -> None:
        if self.terminal or self.local_stream is None:
            return
        self.is_muted = not self.is_muted
        for track in self.local_stream.audio_tracks():
            track.enabled = not self.is_muted

    def toggle_video(self) -> None:
        if self.terminal or self.local_stream is None or not self.is_video:
            return
        self.is_video_enabled = not self.is_video_enabled
        for track in self.local_stream.video_tracks():
            track.enabled = self.is_video_enabled

    async def close(self) -> None:
        """Hang up and wait for outstanding signals; used on screen teardown."""

        await self.hangup()
        await self.flush()
        await self._stop_ticker()

    # incoming signals

    async def handle_signal(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        call_id = payload.get("call_id")
        sender = payload.get("from")
        if not isinstance(call_id, str) or not isinstance(sender, str):
            logger.debug("ignoring malformed call signal %r", payload)
            return
        if kind == SIGNAL_INVITE:
            await self._handle_invite(call_id, sender, payload)
            return
        if call_id != self.call_id or sender != self.peer_id or self.terminal:
            logger.debug("ignoring %s for stale call %s", kind, call_id)
            return
        try:
            if kind == SIGNAL_ANSWER:
                await self._handle_answer(payload)
            elif kind == SIGNAL_CANDIDATE:
                await self._handle_candidate(payload)
            elif kind == SIGNAL_REJECT:
                if self.phase in (PHASE_CALLING, PHASE_RINGING):
                    self.remote_reason = payload.get("reason")
                    await self._end(END_REJECTED)
            elif kind == SIGNAL_HANGUP:
                self.remote_reason = payload.get("reason")
                await self._end(END_ERROR if self.remote_reason == END_ERROR else END_HANGUP)
            else:
                logger.debug("ignoring unknown call signal %r", kind)
        except Exception:
            logger.exception("call %s: handling %s failed", call_id, kind)
            await self._fail_and_notify()

    async def _handle_invite(self, call_id: str, sender: str, payload: Dict[str, Any]) -> None:
        if call_id == self.call_id and not self.terminal:
            return
        if self.active:
            logger.info("rejecting call %s from %s: busy", call_id, sender)
            await self.refuse(call_id, sender, REASON_BUSY)
            self._emit(EVENT_BUSY_REJECTED)
            return
        caller = payload.get("caller")
        caller_profile = Profile.from_dict(caller) if isinstance(caller, dict) and caller.get("id") == sender else None
        await self._stop_ticker()
        self._reset()
        self.call_id = call_id
        self.peer_id = sender
        self.is_video = bool(payload.get("is_video", False))
        self.is_video_enabled = self.is_video
        offer = payload.get("offer")
        self.incoming = CallRequest(
            call_id=call_id,
            caller=caller_profile or Profile.placeholder(sender),
            is_video=self.is_video,
            offer=offer if isinstance(offer, dict) else None,
        )
        self.phase = PHASE_RINGING
        self._start_ringing()
        self._emit(EVENT_RINGING)

    async def _handle_answer(self, payload: Dict[str, Any]) -> None:
        if self.phase != PHASE_CALLING or self._peer is None or self._remote_ready:
            return
        answer = payload.get("answer")
        if not isinstance(answer, dict):
            raise CallError("malformed answer")
        await self._peer.set_remote_answer(answer)
        self._remote_ready = True
        await self._flush_candidates()

    async def _handle_candidate(self, payload: Dict[str, Any]) -> None:
        candidate = payload.get("candidate")
        if not isinstance(candidate, dict):
            return
        if self._peer is None or not self._remote_ready:
            self._pending_candidates.append(candidate)
            return
        await self._peer.add_ice_candidate(candidate)
