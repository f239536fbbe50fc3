"""
Configuration models for the ConvAI voice bridge.

Pydantic v2 models give validation and defaults; `load_config()` in the
package builds an `AppConfig` from YAML plus environment secrets.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ElevenLabsConfig(BaseModel):
    """ElevenLabs Conversational AI session settings."""
    agent_id: Optional[str] = None
    api_key: Optional[str] = None  # env only, see security.py
    ws_base_url: str = Field(default="wss://api.elevenlabs.io/v1/convai/conversation")
    signed_url_endpoint: str = Field(
        default="https://api.elevenlabs.io/v1/convai/conversation/get_signed_url"
    )
    connect_timeout_sec: float = Field(default=10.0, gt=0)
    max_message_size: int = Field(default=16 * 1024 * 1024)
    # PCM16 mono rate the agent expects for user_audio_chunk
    input_sample_rate_hz: int = Field(default=16000)
    # PCM16 mono rate the agent emits in audio events (agent output format)
    output_sample_rate_hz: int = Field(default=48000)


class AudioConfig(BaseModel):
    """Voice transport side audio formats."""
    # Opus frames from the transport decode to this rate/layout
    transport_sample_rate_hz: int = Field(default=48000)
    transport_channels: int = Field(default=2)
    # Raw PCM16 stereo consumed by the player
    player_sample_rate_hz: int = Field(default=48000)

    @field_validator("transport_channels")
    @classmethod
    def _check_channels(cls, value: int) -> int:
        if value not in (1, 2):
            raise ValueError("transport_channels must be 1 or 2")
        return value


class ReconnectPolicy(BaseModel):
    """Recovery policy for voice transport disconnects."""
    max_rejoin_attempts: int = Field(default=5, ge=0)
    backoff_step_sec: float = Field(default=5.0, ge=0)
    # Close code the transport emits when the bot is moved or kicked
    forced_move_close_code: int = Field(default=4014)
    forced_move_recovery_timeout_sec: float = Field(default=5.0, ge=0)

    def backoff_delay(self, attempt: int) -> float:
        """Linear backoff: attempt 1 waits one step, attempt 2 two steps, ..."""
        return attempt * self.backoff_step_sec


class WebSearchConfig(BaseModel):
    enabled: bool = Field(default=True)
    api_key: Optional[str] = None  # TAVILY_API_KEY
    base_url: str = Field(default="https://api.tavily.com/search")
    max_results: int = Field(default=1, ge=1)
    include_answer: bool = Field(default=True)
    include_images: bool = Field(default=True)
    search_depth: str = Field(default="basic")
    timeout_sec: float = Field(default=15.0, gt=0)


class ImageGenerationConfig(BaseModel):
    enabled: bool = Field(default=True)
    api_key: Optional[str] = None  # FAL_KEY
    base_url: str = Field(default="https://fal.run")
    model: str = Field(default="fal-ai/flux/dev")
    image_size: str = Field(default="landscape_16_9")
    num_images: int = Field(default=1, ge=1)
    timeout_sec: float = Field(default=120.0, gt=0)


class LeaveChannelConfig(BaseModel):
    enabled: bool = Field(default=True)


class ToolsConfig(BaseModel):
    web_search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    generate_image: ImageGenerationConfig = Field(default_factory=ImageGenerationConfig)
    leave_channel: LeaveChannelConfig = Field(default_factory=LeaveChannelConfig)


class LoggingConfig(BaseModel):
    """Top-level logging configuration."""
    level: str = Field(default="info")  # debug|info|warning|error|critical


class AppConfig(BaseModel):
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
