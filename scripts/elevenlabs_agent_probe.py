"""
Utility probe for checking an ElevenLabs agent end to end without a voice channel.

Usage:
    ELEVENLABS_AGENT_ID=... python scripts/elevenlabs_agent_probe.py [seconds]

The script:
  * loads config/bridge.yaml (credentials from the environment)
  * opens an agent session with a file-backed player
  * sends a synthetic 440 Hz tone (roughly 1.2 s) in 20 ms capture chunks
  * listens for the given number of seconds (default 10) and writes the
    agent's playback audio (PCM16 stereo at the player rate) to probe_output.raw

Convert the output to WAV with:
    sox -t raw -b 16 -e signed-integer -r 48000 -c 2 probe_output.raw probe_output.wav
"""

from __future__ import annotations

import asyncio
import math
import pathlib
import sys
from typing import Callable, Iterator, Optional

from convai_bridge.audio.playback import PlaybackBuffer
from convai_bridge.config import load_config, validate_config
from convai_bridge.core.events import Disposer, ListenerSet
from convai_bridge.logging_config import configure_logging, get_logger
from convai_bridge.providers.elevenlabs_agent import AgentConnectionError, ElevenLabsAgentSession
from convai_bridge.transport.base import AudioPlayer

SAMPLE_RATE = 16_000
BYTES_PER_SAMPLE = 2  # PCM16
FRAME_MS = 20

OUTPUT_FILE = pathlib.Path("probe_output.raw")

logger = get_logger("agent_probe")


class FilePlayer(AudioPlayer):
    """Drains playback buffers into a raw PCM file."""

    def __init__(self, path: pathlib.Path):
        self.path = path
        self._events = ListenerSet()
        self._task: Optional[asyncio.Task] = None

    def play(self, buffer: PlaybackBuffer) -> None:
        self.stop()
        self._task = asyncio.create_task(self._drain(buffer))

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def on_error(self, callback: Callable[[Exception], None]) -> Disposer:
        return self._events.add("error", callback)

    async def _drain(self, buffer: PlaybackBuffer) -> None:
        try:
            with self.path.open("ab") as fh:
                while not buffer.destroyed:
                    chunk = buffer.read(3840)
                    if chunk:
                        fh.write(chunk)
                    elif buffer.ended:
                        break
                    else:
                        await asyncio.sleep(FRAME_MS / 1000.0)
        except OSError as e:
            self._events.emit("error", e)


def generate_tone(duration_sec: float = 1.2, freq_hz: float = 440.0, amplitude: float = 0.4) -> bytes:
    """Generate a PCM16 sine wave at SAMPLE_RATE."""
    total_samples = int(duration_sec * SAMPLE_RATE)
    data = bytearray()
    for n in range(total_samples):
        value = amplitude * math.sin(2 * math.pi * freq_hz * (n / SAMPLE_RATE))
        sample = int(max(-1.0, min(1.0, value)) * 32767)
        data.extend(sample.to_bytes(2, byteorder="little", signed=True))
    return bytes(data)


def iter_frames(pcm: bytes) -> Iterator[bytes]:
    frame_size = int(SAMPLE_RATE * (FRAME_MS / 1000.0)) * BYTES_PER_SAMPLE
    for offset in range(0, len(pcm), frame_size):
        yield pcm[offset : offset + frame_size]


async def main(listen_sec: float) -> int:
    config = load_config()
    configure_logging(log_level=config.logging.level.upper())

    errors, warnings = validate_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors)
        return 1
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)

    OUTPUT_FILE.unlink(missing_ok=True)
    player = FilePlayer(OUTPUT_FILE)
    session = ElevenLabsAgentSession(
        config.elevenlabs, player, player_sample_rate_hz=config.audio.player_sample_rate_hz
    )

    try:
        await session.connect()
    except AgentConnectionError as e:
        logger.error("Probe could not connect", error=str(e))
        return 1

    try:
        for frame in iter_frames(generate_tone()):
            await session.submit_audio(frame)
            await asyncio.sleep(FRAME_MS / 1000.0)
        logger.info("Sent probe tone, listening", seconds=listen_sec)
        await asyncio.sleep(listen_sec)
    finally:
        await session.disconnect()

    logger.info("Probe finished", output=str(OUTPUT_FILE.resolve()), stats=vars(session.stats))
    return 0


if __name__ == "__main__":
    seconds = float(sys.argv[1]) if len(sys.argv) > 1 else 10.0
    sys.exit(asyncio.run(main(seconds)))
