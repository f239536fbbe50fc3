"""
Talk session wiring.

A talk session is one bot presence in one voice channel: its own tool
registry, dispatcher, agent session and connection supervisor. Nothing is
shared between sessions; everything is discarded when the session ends.
"""

import uuid
from typing import Optional

from convai_bridge.config import AppConfig, ConfigError, validate_config
from convai_bridge.core.connection_supervisor import ConnectionSupervisor, DecoderFactory
from convai_bridge.logging_config import get_logger, set_correlation_id
from convai_bridge.providers.elevenlabs_agent import ElevenLabsAgentSession
from convai_bridge.tools.dispatcher import ToolDispatcher
from convai_bridge.tools.notifier import LogNotifier, Notification, Notifier
from convai_bridge.tools.registry import create_session_registry
from convai_bridge.transport.base import AudioPlayer, VoiceTransport

logger = get_logger(__name__)


class TalkSession:
    """Owns the collaborators for one voice-channel conversation."""

    def __init__(
        self,
        config: AppConfig,
        transport: VoiceTransport,
        player: AudioPlayer,
        notifier: Optional[Notifier] = None,
        *,
        connector=None,
        decoder_factory: Optional[DecoderFactory] = None,
    ):
        self.config = config
        self.transport = transport
        self.session_id = uuid.uuid4().hex[:8]
        self.notifier = notifier or LogNotifier()

        self.registry = create_session_registry(config.tools, self.notifier, leave=self.leave)
        self.registry.freeze()
        self.dispatcher = ToolDispatcher(self.registry)

        self.agent = ElevenLabsAgentSession(
            config.elevenlabs,
            player,
            self.dispatcher,
            player_sample_rate_hz=config.audio.player_sample_rate_hz,
            connector=connector,
            session_id=self.session_id,
        )
        self.supervisor = ConnectionSupervisor(
            self.agent,
            config.reconnect,
            transport_sample_rate_hz=config.audio.transport_sample_rate_hz,
            transport_channels=config.audio.transport_channels,
            session_sample_rate_hz=config.elevenlabs.input_sample_rate_hz,
            decoder_factory=decoder_factory,
        )
        self._started = False

    @classmethod
    def from_config(cls, config: AppConfig, transport: VoiceTransport, player: AudioPlayer, **kwargs) -> "TalkSession":
        errors, warnings = validate_config(config)
        if errors:
            logger.error("Configuration validation failed", errors=errors, warnings=warnings)
            raise ConfigError(f"Configuration errors: {errors}")
        if warnings:
            logger.warning("Configuration warnings", warnings=warnings)
        return cls(config, transport, player, **kwargs)

    async def start(self) -> None:
        """
        Connect the agent session, then start supervising the voice connection.

        Raises:
            AgentConnectionError: If the agent session cannot be opened; the
                voice connection is destroyed in that case
        """
        if self._started:
            return
        self._started = True
        set_correlation_id(self.transport.guild_id)

        try:
            await self.agent.connect()
        except Exception:
            logger.error("Failed to start talk session", guild_id=self.transport.guild_id, session_id=self.session_id)
            await self.agent.disconnect()
            self.transport.destroy()
            raise

        self.supervisor.attach(self.transport)
        logger.info(
            "Talk session started",
            guild_id=self.transport.guild_id,
            session_id=self.session_id,
            tools=self.registry.list_tools(),
        )
        try:
            await self.notifier.send(Notification(
                title="Talk Session Started",
                description="Listening in the voice channel.",
                level="success",
            ))
        except Exception:
            logger.error("Failed to post session start notification", exc_info=True)

    async def leave(self) -> None:
        """End the session: destroy the voice connection and close the agent."""
        if self.supervisor.session is None:
            await self.agent.disconnect()
            return
        await self.supervisor.leave()

    async def wait_closed(self) -> None:
        await self.supervisor.wait_closed()
