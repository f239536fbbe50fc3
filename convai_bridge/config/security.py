"""
Security-critical configuration injection.

SECURITY POLICY:
- API keys MUST NEVER be in YAML files
- All credentials come from environment variables only; any value found in
  YAML is overwritten (with None when the variable is unset)
"""

import os
from typing import Any, Dict, Optional


def _env(*names: str) -> Optional[str]:
    """Return the first non-empty (stripped) environment variable among names."""
    for name in names:
        value = os.getenv(name)
        if value and value.strip():
            return value.strip()
    return None


def _section(config_data: Dict[str, Any], *path: str) -> Dict[str, Any]:
    node = config_data
    for key in path:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    return node


def inject_elevenlabs_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject ElevenLabs credentials from the environment.

    Environment variables:
    - ELEVENLABS_API_KEY (optional; enables signed-URL connections)
    - ELEVENLABS_AGENT_ID or AGENT_ID (the agent id is not secret, so a YAML
      value is kept when neither variable is set)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    elevenlabs = _section(config_data, 'elevenlabs')
    elevenlabs['api_key'] = _env('ELEVENLABS_API_KEY')
    agent_id = _env('ELEVENLABS_AGENT_ID', 'AGENT_ID')
    if agent_id:
        elevenlabs['agent_id'] = agent_id


def inject_tool_api_keys(config_data: Dict[str, Any]) -> None:
    """
    Inject tool API keys from the environment.

    Environment variables:
    - TAVILY_API_KEY: enables the web_search tool
    - FAL_KEY: enables the generate_image tool

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    _section(config_data, 'tools', 'web_search')['api_key'] = _env('TAVILY_API_KEY')
    _section(config_data, 'tools', 'generate_image')['api_key'] = _env('FAL_KEY')
