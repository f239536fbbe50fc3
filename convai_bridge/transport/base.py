"""
Voice transport collaborator interfaces.

The bridge does not implement the voice signalling protocol. A concrete
transport (for example a Discord voice client adapter) implements these
interfaces; the connection supervisor and agent session only talk to them.

Lifecycle notifications use explicit subscriptions: every `on_*` method
returns a disposer that unsubscribes exactly that listener.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional, TYPE_CHECKING

from convai_bridge.core.events import Disposer

if TYPE_CHECKING:
    from convai_bridge.audio.playback import PlaybackBuffer


class ConnectionStatus(str, Enum):
    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class DisconnectReason(str, Enum):
    WEBSOCKET_CLOSE = "websocket_close"
    ADAPTER_UNAVAILABLE = "adapter_unavailable"
    ENDPOINT_REMOVED = "endpoint_removed"
    MANUAL = "manual"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus
    reason: Optional[DisconnectReason] = None
    close_code: Optional[int] = None  # only for WEBSOCKET_CLOSE disconnects


StateChangeCallback = Callable[[ConnectionState, ConnectionState], None]
SpeakingCallback = Callable[[str], None]


class ReceiveStream(ABC):
    """One speaker's encoded audio feed.

    Iterating yields Opus packets in arrival order. The stream emits `end`
    when the feed finishes, `close` when the handle is closed and `error`
    (with the exception) on failure.
    """

    EVENTS = ("end", "close", "error")

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[bytes]:
        """Iterate over encoded frames."""

    @abstractmethod
    def on(self, event: str, callback: Callable[..., None]) -> Disposer:
        """Subscribe to a lifecycle event; returns a disposer."""

    @abstractmethod
    def remove_all_listeners(self) -> None:
        """Drop every lifecycle listener."""

    @abstractmethod
    def destroy(self) -> None:
        """Force-close the underlying handle."""


class VoiceTransport(ABC):
    """A live voice-channel connection."""

    guild_id: str

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        """Current connection state."""

    @abstractmethod
    def on_state_change(self, callback: StateChangeCallback) -> Disposer:
        """Subscribe to `(old_state, new_state)` transitions."""

    @abstractmethod
    def on_speaking_start(self, callback: SpeakingCallback) -> Disposer:
        """Subscribe to "speaker started" notifications (speaker id)."""

    @abstractmethod
    def subscribe(self, speaker_id: str) -> ReceiveStream:
        """Open the speaker's encoded audio feed with manual end-of-stream.

        The returned stream is not closed by silence; it only ends when the
        transport or the caller closes it.
        """

    @abstractmethod
    def rejoin(self) -> bool:
        """Attempt to rejoin the voice channel; False if it could not be attempted."""

    @abstractmethod
    def destroy(self) -> None:
        """Destroy the connection; the transport then reports DESTROYED."""


class AudioPlayer(ABC):
    """Player sink that consumes raw PCM16 stereo from a playback buffer."""

    @abstractmethod
    def play(self, buffer: "PlaybackBuffer") -> None:
        """Start playing `buffer` as a new resource, replacing any current one."""

    @abstractmethod
    def stop(self) -> None:
        """Stop playback immediately."""

    @abstractmethod
    def on_error(self, callback: Callable[[Exception], None]) -> Disposer:
        """Subscribe to playback errors; returns a disposer."""


async def wait_for_status(
    transport: VoiceTransport,
    status: ConnectionStatus,
    timeout: float,
) -> ConnectionState:
    """Wait until `transport` enters `status`.

    Raises:
        asyncio.TimeoutError: if the status is not reached within `timeout` seconds
    """
    if transport.state.status == status:
        return transport.state

    loop = asyncio.get_running_loop()
    reached: asyncio.Future = loop.create_future()

    def listener(old_state: ConnectionState, new_state: ConnectionState) -> None:
        if new_state.status == status and not reached.done():
            reached.set_result(new_state)

    dispose = transport.on_state_change(listener)
    try:
        return await asyncio.wait_for(reached, timeout)
    finally:
        dispose()
