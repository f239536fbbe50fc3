"""
Audio format conversion between the voice transport and the agent session.

Capture path (transport -> agent):
    Opus packet --decode--> PCM16 at the transport rate/layout
    --downmix/resample--> PCM16 mono at the agent input rate (16 kHz)

Playback path (agent -> player):
    base64 PCM16 mono --resample--> player rate --upmix--> PCM16 stereo

All functions are pure. Resampler state (`audioop.ratecv`) is handed back to
the caller so each stream keeps its own continuity; nothing is shared between
streams, so the functions are safe to use from any number of speakers.
"""

import audioop
import base64
import binascii
from typing import Any, Optional, Tuple

import av

SAMPLE_WIDTH = 2  # PCM16 little-endian
OPUS_SAMPLE_RATE = 48000  # Opus always decodes at 48 kHz internally

ResampleState = Optional[Any]


class AudioFormatError(ValueError):
    """Raised for malformed audio payloads (odd byte counts, bad base64, undecodable frames)."""


def _require_whole_frames(pcm: bytes, channels: int) -> None:
    frame_size = SAMPLE_WIDTH * channels
    if len(pcm) % frame_size:
        raise AudioFormatError(
            f"PCM16 payload of {len(pcm)} bytes is not a whole number of {channels}-channel frames"
        )


def _layout(channels: int) -> str:
    if channels == 1:
        return "mono"
    if channels == 2:
        return "stereo"
    raise AudioFormatError(f"Unsupported channel count: {channels}")


class OpusFrameDecoder:
    """Decodes one speaker's Opus packets to interleaved PCM16.

    Opus decoding is stateful (packet loss concealment, resampler history),
    so every inbound stream owns its own decoder.
    """

    def __init__(self, sample_rate: int = OPUS_SAMPLE_RATE, channels: int = 2):
        layout = _layout(channels)
        self.sample_rate = sample_rate
        self.channels = channels
        self._codec = av.CodecContext.create("opus", "r")
        self._codec.sample_rate = OPUS_SAMPLE_RATE
        self._codec.layout = layout
        self._resampler = av.AudioResampler(format="s16", layout=layout, rate=sample_rate)

    def decode(self, frame: bytes) -> bytes:
        if not frame:
            return b""
        try:
            decoded = self._codec.decode(av.Packet(frame))
            pcm = bytearray()
            for audio_frame in decoded:
                for converted in self._resampler.resample(audio_frame):
                    pcm += converted.to_ndarray().tobytes()
        except av.error.FFmpegError as e:
            raise AudioFormatError(f"Undecodable Opus frame ({len(frame)} bytes): {e}") from e
        return bytes(pcm)


def decode_compressed_frame(
    frame: bytes,
    sample_rate: int = OPUS_SAMPLE_RATE,
    channels: int = 2,
    decoder: Optional[OpusFrameDecoder] = None,
) -> bytes:
    """Decode one Opus packet to PCM16 LE at `sample_rate` with `channels` channels.

    Pass the stream's own `decoder` to keep Opus state across packets; without
    one a throwaway decoder is created for this frame.
    """
    if not frame:
        return b""
    if decoder is None:
        decoder = OpusFrameDecoder(sample_rate, channels)
    return decoder.decode(frame)


def upmix_mono_to_stereo(pcm: bytes) -> bytes:
    """Duplicate every mono PCM16 sample into two interleaved channels.

    n samples (2n bytes) in -> 4n bytes out, each sample written twice.
    """
    if not pcm:
        return b""
    _require_whole_frames(pcm, 1)
    return audioop.tostereo(pcm, SAMPLE_WIDTH, 1, 1)


def downmix_stereo_to_mono(pcm: bytes) -> bytes:
    """Average the two channels of interleaved PCM16 stereo."""
    if not pcm:
        return b""
    _require_whole_frames(pcm, 2)
    return audioop.tomono(pcm, SAMPLE_WIDTH, 0.5, 0.5)


def resample_pcm16(
    pcm: bytes,
    source_rate: int,
    target_rate: int,
    channels: int = 1,
    state: ResampleState = None,
) -> Tuple[bytes, ResampleState]:
    """Resample PCM16, returning the converted audio and the new resampler state."""
    if not pcm:
        return b"", state
    _require_whole_frames(pcm, channels)
    if source_rate == target_rate:
        return pcm, state
    converted, state = audioop.ratecv(pcm, SAMPLE_WIDTH, channels, source_rate, target_rate, state)
    return converted, state


def to_session_format(
    pcm: bytes,
    source_rate: int,
    source_channels: int,
    target_rate: int,
    state: ResampleState = None,
) -> Tuple[bytes, ResampleState]:
    """Convert decoded capture audio to the agent's PCM16 mono input format."""
    if not pcm:
        return b"", state
    _require_whole_frames(pcm, source_channels)
    mono = downmix_stereo_to_mono(pcm) if source_channels == 2 else pcm
    return resample_pcm16(mono, source_rate, target_rate, 1, state)


def convert_playback_audio(
    pcm: bytes,
    source_rate: int,
    target_rate: int,
    state: ResampleState = None,
) -> Tuple[bytes, ResampleState]:
    """Convert agent PCM16 mono to the player's PCM16 stereo at `target_rate`."""
    resampled, state = resample_pcm16(pcm, source_rate, target_rate, 1, state)
    return upmix_mono_to_stereo(resampled), state


def decode_base64_pcm(payload: str) -> bytes:
    """Decode a base64 audio payload, raising AudioFormatError when it is not valid base64."""
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioFormatError(f"Invalid base64 audio payload: {e}") from e


def encode_base64_pcm(pcm: bytes) -> str:
    return base64.b64encode(pcm).decode("ascii")
