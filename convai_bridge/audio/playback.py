"""Outbound playback buffer consumed by the voice transport's player."""

from typing import Optional

from prometheus_client import Counter

from convai_bridge.logging_config import get_logger

logger = get_logger(__name__)

_PLAYBACK_BYTES = Counter(
    "convai_bridge_playback_bytes_total",
    "Total PCM bytes written to playback buffers",
)
_PLAYBACK_BUFFERS = Counter(
    "convai_bridge_playback_buffers_created_total",
    "Number of playback buffers created (one per uninterrupted agent utterance stream)",
)


class BufferDestroyedError(RuntimeError):
    """Write attempted on a destroyed playback buffer."""


class PlaybackBuffer:
    """Raw PCM16 stereo byte stream handed to the player as a single resource.

    The agent session writes decoded chunks as they arrive; the player pulls
    bytes with `read()`. Once destroyed (interruption, player error, session
    teardown) a buffer is never reused.
    """

    def __init__(self, buffer_id: Optional[str] = None):
        self.buffer_id = buffer_id
        self._data = bytearray()
        self._ended = False
        self._destroyed = False
        self.bytes_written = 0
        _PLAYBACK_BUFFERS.inc()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def buffered_bytes(self) -> int:
        return len(self._data)

    def write(self, chunk: bytes) -> None:
        if self._destroyed:
            raise BufferDestroyedError(f"Playback buffer {self.buffer_id} is destroyed")
        if self._ended:
            raise BufferDestroyedError(f"Playback buffer {self.buffer_id} has ended")
        if not chunk:
            return
        self._data += chunk
        self.bytes_written += len(chunk)
        _PLAYBACK_BYTES.inc(len(chunk))

    def read(self, size: int) -> bytes:
        """Return up to `size` buffered bytes; b"" when nothing is buffered."""
        if self._destroyed or size <= 0:
            return b""
        chunk = bytes(self._data[:size])
        del self._data[:size]
        return chunk

    def end(self) -> None:
        """Mark end of input; buffered bytes stay readable."""
        self._ended = True

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._ended = True
        self._destroyed = True
        self._data.clear()
        logger.debug("Playback buffer destroyed", buffer_id=self.buffer_id, bytes_written=self.bytes_written)
