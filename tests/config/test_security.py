"""
Unit tests for config.security module.

Tests cover:
- ElevenLabs credential injection (API key from environment only)
- Agent id precedence (environment over YAML)
- Tool API key injection
"""

import pytest

from convai_bridge.config.security import inject_elevenlabs_credentials, inject_tool_api_keys


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("ELEVENLABS_API_KEY", "ELEVENLABS_AGENT_ID", "AGENT_ID", "TAVILY_API_KEY", "FAL_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestInjectElevenLabsCredentials:

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ELEVENLABS_API_KEY", "  xi-secret  ")
        config = {}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['api_key'] == "xi-secret"

    def test_yaml_api_key_ignored(self):
        """API keys in YAML must never be used."""
        config = {'elevenlabs': {'api_key': 'from-yaml'}}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['api_key'] is None

    def test_agent_id_env_overrides_yaml(self, monkeypatch):
        monkeypatch.setenv("ELEVENLABS_AGENT_ID", "agent-env")
        config = {'elevenlabs': {'agent_id': 'agent-yaml'}}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['agent_id'] == "agent-env"

    def test_agent_id_fallback_variable(self, monkeypatch):
        monkeypatch.setenv("AGENT_ID", "agent-legacy")
        config = {}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['agent_id'] == "agent-legacy"

    def test_yaml_agent_id_kept_without_env(self):
        config = {'elevenlabs': {'agent_id': 'agent-yaml'}}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['agent_id'] == "agent-yaml"

    def test_blank_env_treated_as_unset(self, monkeypatch):
        monkeypatch.setenv("ELEVENLABS_AGENT_ID", "   ")
        config = {'elevenlabs': {'agent_id': 'agent-yaml'}}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs']['agent_id'] == "agent-yaml"

    def test_non_dict_section_replaced(self):
        config = {'elevenlabs': None}

        inject_elevenlabs_credentials(config)

        assert config['elevenlabs'] == {'api_key': None}


class TestInjectToolApiKeys:

    def test_keys_from_env(self, monkeypatch):
        monkeypatch.setenv("TAVILY_API_KEY", "tvly-test")
        monkeypatch.setenv("FAL_KEY", "fal-test")
        config = {'tools': {'web_search': {'enabled': True}}}

        inject_tool_api_keys(config)

        assert config['tools']['web_search'] == {'enabled': True, 'api_key': 'tvly-test'}
        assert config['tools']['generate_image']['api_key'] == 'fal-test'

    def test_missing_keys_are_none(self):
        config = {'tools': {'generate_image': {'api_key': 'from-yaml'}}}

        inject_tool_api_keys(config)

        assert config['tools']['web_search']['api_key'] is None
        assert config['tools']['generate_image']['api_key'] is None
