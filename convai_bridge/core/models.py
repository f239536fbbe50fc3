"""
Core data models for the voice bridge.

Typed state for one voice session and each speaker's inbound stream.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from convai_bridge.audio.codec import OpusFrameDecoder
from convai_bridge.core.events import DisposerBag
from convai_bridge.transport.base import ReceiveStream, VoiceTransport


@dataclass
class InboundStream:
    """One speaker's subscribed audio feed and the resources tied to it."""
    speaker_id: str
    handle: ReceiveStream
    decoder: Optional[OpusFrameDecoder] = None
    resample_state: Any = None
    task: Optional[asyncio.Task] = None
    listeners: DisposerBag = field(default_factory=DisposerBag)
    active: bool = True
    frames_forwarded: int = 0
    frames_dropped: int = 0
    started_at: float = field(default_factory=time.time)


@dataclass
class VoiceSession:
    """Supervisor state for one guild's voice connection."""
    guild_id: str
    transport: VoiceTransport
    rejoin_attempts: int = 0
    streams: Dict[str, InboundStream] = field(default_factory=dict)
    listeners: DisposerBag = field(default_factory=DisposerBag)
    created_at: float = field(default_factory=time.time)
