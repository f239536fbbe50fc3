"""
Connection Supervisor - owns one voice-transport connection.

Responsibilities:
- Track one inbound stream per speaking participant and forward its
  decoded audio to the agent session
- Recover from transport disconnects using the configured ReconnectPolicy
- Tear everything down (streams, listeners, agent session) exactly once
  when the connection is destroyed or the bot leaves

All mutation of the stream map happens on the event loop from transport
callbacks and the per-stream consumer tasks, so no locking is needed.
"""

import asyncio
from typing import Callable, Optional, Set, TYPE_CHECKING

from prometheus_client import Counter, Gauge

from convai_bridge.audio.codec import AudioFormatError, OpusFrameDecoder, to_session_format
from convai_bridge.config.models import ReconnectPolicy
from convai_bridge.core.models import InboundStream, VoiceSession
from convai_bridge.logging_config import get_logger
from convai_bridge.transport.base import (
    ConnectionState,
    ConnectionStatus,
    DisconnectReason,
    VoiceTransport,
    wait_for_status,
)

if TYPE_CHECKING:
    from convai_bridge.providers.elevenlabs_agent import ElevenLabsAgentSession

logger = get_logger(__name__)

_ACTIVE_STREAMS = Gauge(
    "convai_bridge_inbound_streams_active",
    "Inbound speaker streams currently tracked",
)
_FRAMES_FORWARDED = Counter(
    "convai_bridge_inbound_frames_forwarded_total",
    "Decoded capture frames forwarded to the agent session",
)
_FRAMES_DROPPED = Counter(
    "convai_bridge_inbound_frames_dropped_total",
    "Capture frames dropped on decode or forward errors",
)
_REJOIN_ATTEMPTS = Counter(
    "convai_bridge_rejoin_attempts_total",
    "Voice transport rejoin attempts",
)
_TERMINAL_DISCONNECTS = Counter(
    "convai_bridge_terminal_disconnects_total",
    "Voice connections destroyed after failed recovery",
    ["cause"],
)

DecoderFactory = Callable[[int, int], OpusFrameDecoder]


class ConnectionSupervisor:
    """Supervises a voice connection and the agent session bound to it."""

    def __init__(
        self,
        agent: "ElevenLabsAgentSession",
        policy: Optional[ReconnectPolicy] = None,
        *,
        transport_sample_rate_hz: int = 48000,
        transport_channels: int = 2,
        session_sample_rate_hz: int = 16000,
        decoder_factory: Optional[DecoderFactory] = None,
    ):
        self.agent = agent
        self.policy = policy or ReconnectPolicy()
        self.transport_sample_rate_hz = transport_sample_rate_hz
        self.transport_channels = transport_channels
        self.session_sample_rate_hz = session_sample_rate_hz
        self._decoder_factory = decoder_factory or OpusFrameDecoder

        self.session: Optional[VoiceSession] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = asyncio.Event()
        self._log = logger

    # ------------------------------------------------------------------
    # Attach / leave
    # ------------------------------------------------------------------
    def attach(self, transport: VoiceTransport) -> VoiceSession:
        """Begin supervising `transport`. A supervisor handles one connection."""
        if self.session is not None:
            raise RuntimeError("Supervisor is already attached to a voice connection")

        session = VoiceSession(guild_id=transport.guild_id, transport=transport)
        self.session = session
        self._log = logger.bind(guild_id=session.guild_id)

        session.listeners.add(transport.on_state_change(self._on_state_change))
        session.listeners.add(transport.on_speaking_start(self._on_speaking_start))
        self._log.info("Supervising voice connection", status=transport.state.status.value)

        if transport.state.status is ConnectionStatus.DESTROYED:
            self._start_cleanup()
        return session

    async def leave(self) -> None:
        """Destroy the connection and wait for teardown. Safe to call repeatedly."""
        session = self.session
        if session is None:
            return

        if session.transport.state.status is not ConnectionStatus.DESTROYED and self._cleanup_task is None:
            self._log.info("Leaving voice channel")
            try:
                session.transport.destroy()
            except Exception:
                self._log.warning("Voice connection destroy failed", exc_info=True)

        task = self._start_cleanup()
        await asyncio.shield(task)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def recovery_task(self) -> Optional[asyncio.Task]:
        return self._recovery_task

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Transport state machine
    # ------------------------------------------------------------------
    def _on_state_change(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        session = self.session
        if session is None or self._cleanup_task is not None:
            return

        self._log.debug(
            "Voice connection state change",
            old=old_state.status.value,
            new=new_state.status.value,
            reason=new_state.reason.value if new_state.reason else None,
            close_code=new_state.close_code,
        )

        if new_state.status is ConnectionStatus.READY:
            if session.rejoin_attempts:
                self._log.info("Voice connection recovered", attempts=session.rejoin_attempts)
            session.rejoin_attempts = 0

        elif new_state.status is ConnectionStatus.DISCONNECTED:
            if self._recovery_task is not None and not self._recovery_task.done():
                self._log.debug("Recovery already in progress")
                return
            if self._is_forced_move(new_state):
                self._recovery_task = self._spawn(self._recover_forced_move())
            else:
                self._recovery_task = self._spawn(self._attempt_rejoin())

        elif new_state.status is ConnectionStatus.DESTROYED:
            self._start_cleanup()

    def _is_forced_move(self, state: ConnectionState) -> bool:
        return (
            state.reason is DisconnectReason.WEBSOCKET_CLOSE
            and state.close_code == self.policy.forced_move_close_code
        )

    async def _recover_forced_move(self) -> None:
        """
        Close code 4014 means the bot was moved or kicked. If it was moved,
        the transport reconnects on its own; wait briefly for that before
        treating the connection as gone.
        """
        transport = self.session.transport
        timeout = self.policy.forced_move_recovery_timeout_sec
        try:
            await wait_for_status(transport, ConnectionStatus.CONNECTING, timeout)
            self._log.info("Voice connection moving to a new channel")
        except asyncio.TimeoutError:
            self._log.warning("Voice connection did not recover after forced disconnect", timeout_sec=timeout)
            _TERMINAL_DISCONNECTS.labels(cause="forced_move").inc()
            self._destroy_transport()

    async def _attempt_rejoin(self) -> None:
        session = self.session
        if session.rejoin_attempts >= self.policy.max_rejoin_attempts:
            self._log.error("Voice connection rejoin attempts exhausted", attempts=session.rejoin_attempts)
            _TERMINAL_DISCONNECTS.labels(cause="rejoin_exhausted").inc()
            self._destroy_transport()
            return

        session.rejoin_attempts += 1
        attempt = session.rejoin_attempts
        delay = self.policy.backoff_delay(attempt)
        self._log.info("Rejoining voice channel", attempt=attempt, delay_sec=delay)
        await asyncio.sleep(delay)

        if self._cleanup_task is not None or session.transport.state.status is not ConnectionStatus.DISCONNECTED:
            self._log.debug("Skipping rejoin, connection state changed during backoff")
            return

        _REJOIN_ATTEMPTS.inc()
        try:
            if not session.transport.rejoin():
                self._log.warning("Voice transport could not attempt rejoin", attempt=attempt)
        except Exception:
            self._log.error("Voice transport rejoin failed", attempt=attempt, exc_info=True)

    def _destroy_transport(self) -> None:
        transport = self.session.transport
        if transport.state.status is ConnectionStatus.DESTROYED:
            return
        try:
            transport.destroy()
        except Exception:
            self._log.error("Voice connection destroy failed", exc_info=True)
            # The transport will not report DESTROYED, so tear down here
            self._start_cleanup()

    # ------------------------------------------------------------------
    # Inbound streams
    # ------------------------------------------------------------------
    def _on_speaking_start(self, speaker_id: str) -> None:
        session = self.session
        if session is None or self._cleanup_task is not None:
            return
        if speaker_id in session.streams:
            return

        try:
            handle = session.transport.subscribe(speaker_id)
        except Exception:
            self._log.error("Failed to subscribe to speaker audio", speaker_id=speaker_id, exc_info=True)
            return

        stream = InboundStream(
            speaker_id=speaker_id,
            handle=handle,
            decoder=self._decoder_factory(self.transport_sample_rate_hz, self.transport_channels),
        )
        session.streams[speaker_id] = stream
        _ACTIVE_STREAMS.inc()

        for event in handle.EVENTS:
            stream.listeners.add(handle.on(event, self._removal_hook(stream, event)))

        stream.task = self._spawn(self._consume(stream))
        self._log.info("Subscribed to speaker audio", speaker_id=speaker_id)

    def _removal_hook(self, stream: InboundStream, event: str) -> Callable[..., None]:
        def hook(*args) -> None:
            if event == "error":
                self._log.warning(
                    "Speaker stream error", speaker_id=stream.speaker_id, error=str(args[0]) if args else None
                )
            self._remove_stream(stream, event)
        return hook

    async def _consume(self, stream: InboundStream) -> None:
        """Decode and forward one speaker's frames until the stream ends."""
        try:
            async for frame in stream.handle:
                if not stream.active:
                    break
                await self._forward_frame(stream, frame)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.error("Speaker stream failed", speaker_id=stream.speaker_id, exc_info=True)
        finally:
            self._remove_stream(stream, "consumer_exit")

    async def _forward_frame(self, stream: InboundStream, frame: bytes) -> None:
        try:
            decoded = stream.decoder.decode(frame)
            pcm, stream.resample_state = to_session_format(
                decoded,
                self.transport_sample_rate_hz,
                self.transport_channels,
                self.session_sample_rate_hz,
                stream.resample_state,
            )
            if not pcm:
                return
            await self.agent.submit_audio(pcm)
        except AudioFormatError as e:
            stream.frames_dropped += 1
            _FRAMES_DROPPED.inc()
            self._log.debug("Dropping undecodable frame", speaker_id=stream.speaker_id, error=str(e))
            return
        except Exception:
            stream.frames_dropped += 1
            _FRAMES_DROPPED.inc()
            self._log.warning("Failed to forward speaker frame", speaker_id=stream.speaker_id, exc_info=True)
            return

        stream.frames_forwarded += 1
        _FRAMES_FORWARDED.inc()

    def _remove_stream(self, stream: InboundStream, cause: str) -> None:
        """Deregister and dispose `stream`; only the first call for a stream has effect."""
        session = self.session
        if session is None or session.streams.get(stream.speaker_id) is not stream:
            return

        del session.streams[stream.speaker_id]
        stream.active = False
        _ACTIVE_STREAMS.dec()

        stream.listeners.dispose_all()
        try:
            stream.handle.remove_all_listeners()
            stream.handle.destroy()
        except Exception:
            self._log.warning("Failed to dispose speaker stream", speaker_id=stream.speaker_id, exc_info=True)

        task = stream.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        self._log.info(
            "Speaker stream removed",
            speaker_id=stream.speaker_id,
            cause=cause,
            frames_forwarded=stream.frames_forwarded,
            frames_dropped=stream.frames_dropped,
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    def _start_cleanup(self) -> asyncio.Task:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup())
        return self._cleanup_task

    async def _cleanup(self) -> None:
        session = self.session
        self._log.info("Cleaning up voice session")

        # Listeners go first so no transport event mutates state mid-teardown
        session.listeners.dispose_all()

        for stream in list(session.streams.values()):
            try:
                self._remove_stream(stream, "session_cleanup")
            except Exception:
                self._log.error("Failed to remove speaker stream", speaker_id=stream.speaker_id, exc_info=True)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

        try:
            await self.agent.disconnect()
        except Exception:
            self._log.error("Agent session disconnect failed", exc_info=True)
        finally:
            self._closed.set()
            self._log.info("Voice session closed")
