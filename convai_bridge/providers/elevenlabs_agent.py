"""
ElevenLabs Conversational AI session

Owns the websocket to the agent: connection lifecycle, capture audio
submission, inbound event handling, playback buffering and client tool
results.

WebSocket Protocol:
- Endpoint: wss://api.elevenlabs.io/v1/convai/conversation?agent_id=...
  (or a signed URL when an API key is configured)
- Capture audio: {"user_audio_chunk": <base64 PCM16 mono 16 kHz>}
- Agent audio: {"type": "audio", "audio_event": {"audio_base_64", "event_id"}}
- Tools: client_tool_call in, client_tool_result out
"""

import asyncio
import itertools
import json
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from prometheus_client import Counter

from convai_bridge.audio.codec import (
    AudioFormatError,
    convert_playback_audio,
    decode_base64_pcm,
    encode_base64_pcm,
)
from convai_bridge.audio.playback import PlaybackBuffer
from convai_bridge.config.models import ElevenLabsConfig
from convai_bridge.core.events import DisposerBag
from convai_bridge.logging_config import get_logger
from convai_bridge.tools.dispatcher import ToolDispatcher
from convai_bridge.tools.registry import ToolRegistry
from convai_bridge.transport.base import AudioPlayer

logger = get_logger(__name__)

_KNOWN_EVENTS = {
    "audio",
    "user_transcript",
    "agent_response",
    "agent_response_correction",
    "interruption",
    "client_tool_call",
    "ping",
    "conversation_initiation_metadata",
    "error",
}
# High-frequency internal events, not worth a debug line each
_QUIET_EVENTS = {"ping", "internal_vad_score", "internal_turn_probability", "internal_tentative_agent_response"}

_AGENT_EVENTS = Counter(
    "convai_bridge_agent_events_total",
    "Inbound agent events by type",
    ["type"],
)
_AGENT_EVENTS_DROPPED = Counter(
    "convai_bridge_agent_events_dropped_total",
    "Inbound agent messages dropped as malformed",
)
_CAPTURE_BYTES_SENT = Counter(
    "convai_bridge_capture_bytes_sent_total",
    "PCM bytes sent to the agent as user_audio_chunk",
)


class AgentConnectionError(ConnectionError):
    """The agent session could not be opened."""


class SessionState(str, Enum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


@dataclass
class SessionStats:
    """Counters for one agent conversation."""
    conversation_id: Optional[str] = None
    total_audio_sent: int = 0
    total_audio_received: int = 0
    audio_chunks_sent: int = 0
    tool_calls: int = 0


class ElevenLabsAgentSession:
    """
    One conversation with an ElevenLabs agent.

    `connect()` is idempotent while open, `submit_audio()` silently drops
    audio while not open, `disconnect()` is idempotent and safe at any time.
    Playback uses one buffer per uninterrupted stream of agent audio: chunks
    are written into the live buffer; after an interruption or player error
    the buffer is destroyed and the next audio event starts a new one.
    """

    def __init__(
        self,
        config: ElevenLabsConfig,
        player: AudioPlayer,
        dispatcher: Optional[ToolDispatcher] = None,
        *,
        player_sample_rate_hz: int = 48000,
        connector: Optional[Callable[..., Any]] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self._player = player
        self._player_rate = player_sample_rate_hz
        self._dispatcher = dispatcher or ToolDispatcher(ToolRegistry())
        self._connector = connector or websockets.connect

        self._ws: Optional[Any] = None
        self._state = SessionState.CLOSED
        self._closing = False
        self._connect_lock = asyncio.Lock()
        self._receive_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()
        self._listeners = DisposerBag()

        self._playback: Optional[PlaybackBuffer] = None
        self._playback_ids = itertools.count(1)
        self._resample_state = None

        self.stats = SessionStats()
        self._log = logger.bind(session_id=self.session_id)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN and self._ws is not None

    @property
    def playback_buffer(self) -> Optional[PlaybackBuffer]:
        return self._playback

    @property
    def pending_tool_calls(self) -> Set[asyncio.Task]:
        return set(self._tool_tasks)

    def set_dispatcher(self, dispatcher: ToolDispatcher) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """
        Open the conversation websocket.

        Raises:
            AgentConnectionError: If the agent is not configured, the signed
                URL cannot be fetched, or the websocket fails to open in time
        """
        async with self._connect_lock:
            if self.is_open:
                return

            self._closing = False
            self._state = SessionState.CONNECTING
            self._log.info("Establishing connection to ElevenLabs conversational websocket")

            try:
                url = await self._resolve_url()
                ws = await asyncio.wait_for(
                    self._connector(
                        url,
                        max_size=self.config.max_message_size,
                        compression=None,
                        ping_interval=20,
                        ping_timeout=20,
                        close_timeout=5,
                    ),
                    timeout=self.config.connect_timeout_sec,
                )
            except asyncio.TimeoutError:
                self._state = SessionState.CLOSED
                self._log.error("ElevenLabs connection timeout")
                raise AgentConnectionError("ElevenLabs connection timeout")
            except AgentConnectionError:
                self._state = SessionState.CLOSED
                raise
            except (OSError, WebSocketException) as e:
                self._state = SessionState.CLOSED
                self._log.error("ElevenLabs connection failed", error=str(e))
                raise AgentConnectionError(f"Error during WebSocket connection: {e}") from e

            if self._closing:
                # disconnect() ran while the handshake was in flight
                await self._close_socket(ws)
                self._state = SessionState.CLOSED
                raise AgentConnectionError("Session was disconnected while connecting")

            self._ws = ws
            self._state = SessionState.OPEN
            self._listeners.add(self._player.on_error(self._handle_player_error))
            self._receive_task = asyncio.create_task(self._receive_loop(ws))
            self._log.info("Connected to ElevenLabs conversational websocket")

    async def _resolve_url(self) -> str:
        agent_id = self.config.agent_id
        if not agent_id:
            raise AgentConnectionError("ElevenLabs agent id not configured")
        if self.config.api_key:
            return await self._get_signed_url(self.config.api_key, agent_id)
        return f"{self.config.ws_base_url}?agent_id={agent_id}"

    async def _get_signed_url(self, api_key: str, agent_id: str) -> str:
        """
        Get a signed URL for connecting to an authenticated ElevenLabs agent.

        Agents with authentication enabled only accept websocket connections
        on a short-lived signed URL requested with the API key.
        """
        headers = {"xi-api-key": api_key}
        timeout = aiohttp.ClientTimeout(total=self.config.connect_timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    self.config.signed_url_endpoint, params={"agent_id": agent_id}, headers=headers
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        self._log.error("Failed to get signed URL", status=response.status, body=error_text[:200])
                        raise AgentConnectionError(f"Failed to get signed URL: {response.status}")
                    data = await response.json()
        except aiohttp.ClientError as e:
            self._log.error("HTTP error getting signed URL", error=str(e))
            raise AgentConnectionError(f"HTTP error: {e}") from e
        except ValueError as e:
            self._log.error("Invalid signed URL response", error=str(e))
            raise AgentConnectionError(f"Invalid signed URL response: {e}") from e

        signed_url = data.get("signed_url") if isinstance(data, dict) else None
        if not signed_url:
            raise AgentConnectionError("No signed_url in response")
        self._log.info("Got signed URL for authenticated agent")
        return signed_url

    async def disconnect(self) -> None:
        """Close the session and release playback and tool resources. Idempotent."""
        was_active = self._state is not SessionState.CLOSED or self._ws is not None
        self._closing = True
        self._state = SessionState.CLOSED

        # Detach first so no further player events reach us mid-teardown
        self._listeners.dispose_all()
        self._release_playback(stop_player=was_active)
        self._cancel_tasks()

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)

        if was_active:
            self._log.info(
                "Disconnected from ElevenLabs",
                conversation_id=self.stats.conversation_id,
                audio_sent_bytes=self.stats.total_audio_sent,
                audio_received_bytes=self.stats.total_audio_received,
                tool_calls=self.stats.tool_calls,
            )

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            self._log.debug("WebSocket close error", error=str(e))

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        if self._receive_task is not None and self._receive_task is not current and not self._receive_task.done():
            self._receive_task.cancel()
        self._receive_task = None
        for task in list(self._tool_tasks):
            if task is not current and not task.done():
                task.cancel()
        self._tool_tasks.clear()

    def _release_playback(self, stop_player: bool) -> None:
        buffer, self._playback = self._playback, None
        self._resample_state = None
        if buffer is not None:
            buffer.end()
            buffer.destroy()
        if stop_player:
            try:
                self._player.stop()
            except Exception:
                self._log.warning("Player stop failed", exc_info=True)

    def _handle_remote_closed(self) -> None:
        """Socket closed or failed under us: release session resources, stop playback."""
        self._state = SessionState.CLOSED
        self._ws = None
        self._listeners.dispose_all()
        self._release_playback(stop_player=True)
        self._cancel_tasks()
        self._log.info("Agent session resources released after remote close")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def submit_audio(self, pcm: bytes) -> None:
        """Send one PCM16 mono capture chunk. Dropped when empty or when the session is not open."""
        if not pcm or not self.is_open:
            return

        message = {"user_audio_chunk": encode_base64_pcm(pcm)}
        try:
            await self._ws.send(json.dumps(message))
        except Exception as e:
            self._log.warning("Failed to send audio", error=str(e))
            return

        if self.stats.audio_chunks_sent == 0:
            self._log.info("First capture audio chunk sent", bytes=len(pcm))
        self.stats.audio_chunks_sent += 1
        self.stats.total_audio_sent += len(pcm)
        _CAPTURE_BYTES_SENT.inc(len(pcm))

    async def respond(self, tool_call_id: str, result: Any, is_error: bool = False) -> None:
        """Send a client_tool_result; dropped with a warning when the session is not open."""
        if not self.is_open:
            self._log.warning("Cannot send tool response, session is not open", tool_call_id=tool_call_id)
            return

        message = {
            "type": "client_tool_result",
            "tool_call_id": tool_call_id,
            "result": result if isinstance(result, str) else json.dumps(result),
            "is_error": is_error,
        }
        try:
            await self._ws.send(json.dumps(message))
        except Exception as e:
            self._log.warning("Failed to send tool result", tool_call_id=tool_call_id, error=str(e))
            return
        self._log.info("Sent tool response", tool_call_id=tool_call_id, is_error=is_error)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def _receive_loop(self, ws: Any) -> None:
        """Process incoming websocket messages until the socket closes."""
        try:
            async for message in ws:
                await self._handle_message(message)
        except ConnectionClosed as e:
            self._log.info("ElevenLabs websocket closed", code=getattr(e.rcvd, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.error("Receive loop error", exc_info=True)
        finally:
            if not self._closing and self._ws is ws:
                self._handle_remote_closed()

    async def _handle_message(self, raw_message: Any) -> None:
        """Handle a single inbound message; malformed or unknown messages are logged and dropped."""
        try:
            data = json.loads(raw_message)
        except (TypeError, ValueError):
            self._log.warning("Received invalid websocket message", raw=str(raw_message)[:200])
            _AGENT_EVENTS_DROPPED.inc()
            return

        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            self._log.warning("Received websocket message without a type", raw=str(raw_message)[:200])
            _AGENT_EVENTS_DROPPED.inc()
            return

        msg_type = data["type"]
        _AGENT_EVENTS.labels(type=msg_type if msg_type in _KNOWN_EVENTS else "other").inc()
        if msg_type not in _QUIET_EVENTS:
            self._log.debug("Received agent event", event_type=msg_type)

        try:
            if msg_type == "audio":
                self._handle_audio(data)

            elif msg_type == "interruption":
                self._handle_interruption()

            elif msg_type == "client_tool_call":
                self._handle_tool_call(data)

            elif msg_type == "user_transcript":
                self._handle_user_transcript(data)

            elif msg_type == "agent_response":
                self._handle_agent_response(data)

            elif msg_type == "ping":
                await self._handle_ping(data)

            elif msg_type == "conversation_initiation_metadata":
                self._handle_conversation_init(data)

            elif msg_type == "error":
                self._handle_error(data)

            else:
                self._log.debug("Unhandled agent event", event_type=msg_type)
        except Exception:
            self._log.error("Error handling agent event", event_type=msg_type, exc_info=True)

    def _handle_audio(self, data: Dict[str, Any]) -> None:
        audio_event = data.get("audio_event")
        audio_b64 = audio_event.get("audio_base_64") if isinstance(audio_event, dict) else None
        if not isinstance(audio_b64, str) or not audio_b64:
            self._log.debug("Empty audio event")
            return

        try:
            pcm = decode_base64_pcm(audio_b64)
            stereo, self._resample_state = convert_playback_audio(
                pcm, self.config.output_sample_rate_hz, self._player_rate, self._resample_state
            )
        except AudioFormatError as e:
            self._log.warning("Dropping malformed agent audio", error=str(e))
            return

        if not stereo:
            return

        if self.stats.total_audio_received == 0:
            self._log.info("First agent audio received")
        self.stats.total_audio_received += len(pcm)
        self._write_playback(stereo)

    def _write_playback(self, chunk: bytes) -> None:
        buffer = self._playback
        if buffer is not None and not buffer.destroyed:
            buffer.write(chunk)
            return

        buffer = PlaybackBuffer(buffer_id=f"{self.session_id}:{next(self._playback_ids)}")
        buffer.write(chunk)
        self._playback = buffer
        try:
            self._player.play(buffer)
        except Exception:
            self._log.error("Player rejected playback buffer", buffer_id=buffer.buffer_id, exc_info=True)
            buffer.destroy()
            self._playback = None
            return
        self._log.debug("Started playback buffer", buffer_id=buffer.buffer_id)

    def _handle_interruption(self) -> None:
        self._log.info("Conversation interrupted, stopping audio playback")
        self._release_playback(stop_player=True)

    def _handle_player_error(self, error: Exception) -> None:
        self._log.error("Player error, ending current playback buffer", error=str(error))
        self._release_playback(stop_player=False)

    def _handle_tool_call(self, data: Dict[str, Any]) -> None:
        tool_call = data.get("client_tool_call")
        if not isinstance(tool_call, dict):
            self._log.warning("Received client_tool_call event with no 'client_tool_call' details")
            return

        tool_name = tool_call.get("tool_name")
        tool_call_id = tool_call.get("tool_call_id")
        if not isinstance(tool_name, str) or not tool_name or not isinstance(tool_call_id, str) or not tool_call_id:
            self._log.warning("Received client_tool_call event without 'tool_name' or 'tool_call_id'")
            return

        parameters = tool_call.get("parameters")
        if not isinstance(parameters, dict):
            parameters = {}

        self.stats.tool_calls += 1
        # Own task so a slow tool never stalls audio reception
        task = asyncio.create_task(
            self._dispatcher.dispatch(tool_name, parameters, tool_call_id, self.respond)
        )
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    def _handle_user_transcript(self, data: Dict[str, Any]) -> None:
        event = data.get("user_transcription_event")
        text = event.get("user_transcript") if isinstance(event, dict) else None
        if isinstance(text, str) and text.strip():
            self._log.info("User transcript", text=text)

    def _handle_agent_response(self, data: Dict[str, Any]) -> None:
        event = data.get("agent_response_event")
        text = event.get("agent_response") if isinstance(event, dict) else None
        if isinstance(text, str) and text.strip():
            self._log.info("Agent response", text=text)

    async def _handle_ping(self, data: Dict[str, Any]) -> None:
        ping_event = data.get("ping_event")
        event_id = ping_event.get("event_id") if isinstance(ping_event, dict) else None
        if event_id is None or not self.is_open:
            return
        try:
            await self._ws.send(json.dumps({"type": "pong", "event_id": event_id}))
        except Exception as e:
            self._log.warning("Failed to send pong", error=str(e))

    def _handle_conversation_init(self, data: Dict[str, Any]) -> None:
        metadata = data.get("conversation_initiation_metadata_event")
        if not isinstance(metadata, dict):
            return
        self.stats.conversation_id = metadata.get("conversation_id")
        self._log.info(
            "Conversation initialized",
            conversation_id=self.stats.conversation_id,
            agent_output_audio_format=metadata.get("agent_output_audio_format"),
            user_input_audio_format=metadata.get("user_input_audio_format"),
        )

    def _handle_error(self, data: Dict[str, Any]) -> None:
        error = data.get("error")
        if isinstance(error, dict):
            self._log.error("Agent reported error", code=error.get("code"), message=error.get("message"))
        else:
            self._log.error("Agent reported error", error=error)
