"""
Shared fixtures: in-memory fakes for the voice transport, the player and
the agent websocket.
"""

import asyncio
import json
from typing import Callable, List, Optional

import pytest

from convai_bridge.audio.codec import AudioFormatError
from convai_bridge.audio.playback import PlaybackBuffer
from convai_bridge.config.models import ElevenLabsConfig
from convai_bridge.core.events import Disposer, ListenerSet
from convai_bridge.transport.base import (
    AudioPlayer,
    ConnectionState,
    ConnectionStatus,
    DisconnectReason,
    ReceiveStream,
    VoiceTransport,
)


class FakeReceiveStream(ReceiveStream):
    """Receive stream fed from a queue; `None` ends iteration."""

    def __init__(self, speaker_id: str):
        self.speaker_id = speaker_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.events = ListenerSet()
        self.destroy_calls = 0
        self.remove_all_calls = 0

    def push(self, frame: Optional[bytes]) -> None:
        self.queue.put_nowait(frame)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            yield frame

    def on(self, event: str, callback: Callable[..., None]) -> Disposer:
        return self.events.add(event, callback)

    def remove_all_listeners(self) -> None:
        self.remove_all_calls += 1
        self.events.clear()

    def destroy(self) -> None:
        self.destroy_calls += 1
        self.push(None)

    def emit(self, event: str, *args) -> int:
        return self.events.emit(event, *args)


class FakeTransport(VoiceTransport):
    def __init__(self, guild_id: str = "guild-1", status: ConnectionStatus = ConnectionStatus.READY):
        self.guild_id = guild_id
        self._state = ConnectionState(status)
        self.events = ListenerSet()
        self.streams: dict = {}
        self.subscribe_calls: List[str] = []
        self.fail_subscribe = False
        self.rejoin_calls = 0
        self.destroy_calls = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def set_state(self, status: ConnectionStatus, reason=None, close_code=None) -> None:
        old, self._state = self._state, ConnectionState(status, reason, close_code)
        self.events.emit("state", old, self._state)

    def disconnect(self, close_code: Optional[int] = None) -> None:
        reason = DisconnectReason.WEBSOCKET_CLOSE if close_code is not None else DisconnectReason.ADAPTER_UNAVAILABLE
        self.set_state(ConnectionStatus.DISCONNECTED, reason, close_code)

    def on_state_change(self, callback) -> Disposer:
        return self.events.add("state", callback)

    def on_speaking_start(self, callback) -> Disposer:
        return self.events.add("speaking", callback)

    def start_speaking(self, speaker_id: str) -> None:
        self.events.emit("speaking", speaker_id)

    def subscribe(self, speaker_id: str) -> FakeReceiveStream:
        self.subscribe_calls.append(speaker_id)
        if self.fail_subscribe:
            raise RuntimeError("subscribe failed")
        stream = FakeReceiveStream(speaker_id)
        self.streams.setdefault(speaker_id, []).append(stream)
        return stream

    def rejoin(self) -> bool:
        self.rejoin_calls += 1
        return True

    def destroy(self) -> None:
        self.destroy_calls += 1
        if self._state.status is not ConnectionStatus.DESTROYED:
            self.set_state(ConnectionStatus.DESTROYED)


class FakePlayer(AudioPlayer):
    def __init__(self):
        self.played: List[PlaybackBuffer] = []
        self.stop_calls = 0
        self.events = ListenerSet()

    def play(self, buffer: PlaybackBuffer) -> None:
        self.played.append(buffer)

    def stop(self) -> None:
        self.stop_calls += 1

    def on_error(self, callback) -> Disposer:
        return self.events.add("error", callback)

    def fail(self, error: Exception) -> None:
        self.events.emit("error", error)


class FakeWebSocket:
    """Agent websocket: records sent messages, yields queued inbound ones."""

    def __init__(self):
        self.sent: List[str] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_calls = 0

    @property
    def sent_json(self) -> List[dict]:
        return [json.loads(m) for m in self.sent]

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self.inbound.put_nowait(None)

    def feed(self, message) -> None:
        self.inbound.put_nowait(message if isinstance(message, str) or message is None else json.dumps(message))

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        while True:
            message = await self.inbound.get()
            if message is None:
                return
            yield message


class FakeConnector:
    def __init__(self, ws: Optional[FakeWebSocket] = None, error: Optional[Exception] = None):
        self.ws = ws or FakeWebSocket()
        self.error = error
        self.calls: List[tuple] = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.ws


class FakeDecoder:
    """Stands in for the Opus decoder: frames are already PCM; b"bad" is undecodable."""

    def __init__(self, sample_rate: int = 48000, channels: int = 2):
        self.sample_rate = sample_rate
        self.channels = channels
        self.frames: List[bytes] = []

    def decode(self, frame: bytes) -> bytes:
        if frame == b"bad":
            raise AudioFormatError("undecodable")
        self.frames.append(frame)
        return frame


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def agent_config():
    return ElevenLabsConfig(agent_id="agent-test", ws_base_url="wss://example.test/convai")


@pytest.fixture
def ws():
    return FakeWebSocket()


@pytest.fixture
def connector(ws):
    return FakeConnector(ws)


@pytest.fixture
def decoder_factory():
    return FakeDecoder
