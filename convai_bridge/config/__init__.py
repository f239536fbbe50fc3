"""
Configuration package for the ConvAI voice bridge.

This package contains:
- models: pydantic models for every configuration section
- loaders: YAML file loading and parsing
- security: credential injection from environment variables
"""

from typing import List, Optional, Tuple

import structlog

from convai_bridge.config.loaders import (
    DEFAULT_CONFIG_PATH,
    ConfigError,
    load_yaml_with_env_expansion,
    resolve_config_path,
)
from convai_bridge.config.models import (
    AppConfig,
    AudioConfig,
    ElevenLabsConfig,
    ImageGenerationConfig,
    LeaveChannelConfig,
    LoggingConfig,
    ReconnectPolicy,
    ToolsConfig,
    WebSearchConfig,
)
from convai_bridge.config.security import inject_elevenlabs_credentials, inject_tool_api_keys

logger = structlog.get_logger(__name__)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML file; defaults to CONVAI_BRIDGE_CONFIG, then
            config/bridge.yaml (see `resolve_config_path`)

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigError: If the file is missing or is not a YAML mapping
        pydantic.ValidationError: If a section has invalid values
    """
    # Phase 1: Load YAML file with environment variable expansion
    path = resolve_config_path(path)
    logger.debug("Loading configuration", path=path)
    config_data = load_yaml_with_env_expansion(path)

    # Phase 2: Security - Inject credentials from environment variables only
    inject_elevenlabs_credentials(config_data)
    inject_tool_api_keys(config_data)

    # Phase 3: Validate and return
    return AppConfig(**config_data)


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Check a loaded configuration before starting a talk session.

    Returns:
        (errors, warnings): errors block startup, warnings are only logged.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.elevenlabs.agent_id:
        errors.append("ElevenLabs agent id not configured (set ELEVENLABS_AGENT_ID or AGENT_ID)")

    if not config.elevenlabs.ws_base_url.startswith(("ws://", "wss://")):
        errors.append(f"Invalid ElevenLabs websocket URL: {config.elevenlabs.ws_base_url}")

    if config.tools.web_search.enabled and not config.tools.web_search.api_key:
        warnings.append("TAVILY_API_KEY not set; web_search tool will not be registered")
    if config.tools.generate_image.enabled and not config.tools.generate_image.api_key:
        warnings.append("FAL_KEY not set; generate_image tool will not be registered")

    if config.reconnect.max_rejoin_attempts == 0:
        warnings.append("Rejoin disabled; any voice disconnect will end the session")

    if config.logging.level.lower() == "debug":
        warnings.append("Debug logging enabled (logs every inbound event type)")

    return errors, warnings


__all__ = [
    'AppConfig',
    'AudioConfig',
    'ConfigError',
    'DEFAULT_CONFIG_PATH',
    'ElevenLabsConfig',
    'ImageGenerationConfig',
    'LeaveChannelConfig',
    'LoggingConfig',
    'ReconnectPolicy',
    'ToolsConfig',
    'WebSearchConfig',
    'load_config',
    'validate_config',
]
