"""
Locating and reading the bridge configuration file.

Resolution order for the file:
1. An explicit path passed to `load_config()`
2. The CONVAI_BRIDGE_CONFIG environment variable
3. config/bridge.yaml

Relative paths are tried against the working directory first, then against
the project root, so the shipped config/bridge.yaml is found whether the
bridge runs from a checkout or from another directory.
"""

import os
from pathlib import Path
from typing import Optional

import structlog
import yaml

logger = structlog.get_logger(__name__)

CONFIG_PATH_ENV = "CONVAI_BRIDGE_CONFIG"
DEFAULT_CONFIG_PATH = "config/bridge.yaml"

KNOWN_SECTIONS = frozenset({"elevenlabs", "audio", "reconnect", "tools", "logging"})

# Project root directory (parent of convai_bridge/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()


class ConfigError(ValueError):
    """Raised when configuration is missing, unreadable or unusable."""


def resolve_config_path(path: Optional[str] = None) -> str:
    """
    Resolve the configuration file to an absolute path.

    Args:
        path: Explicit path; when omitted, CONVAI_BRIDGE_CONFIG or the
            default config/bridge.yaml is used

    Returns:
        Absolute path. For relative paths this is the working-directory
        candidate if that file exists, otherwise the project-root candidate.
    """
    path = path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path

    local = os.path.abspath(path)
    if os.path.isfile(local):
        return local
    return str(_PROJ_DIR / path)


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Read a bridge YAML file, expanding ${VAR} and $VAR references first.

    Returns:
        The top-level mapping (empty dict for an empty file)

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or its top
            level is not a mapping
    """
    try:
        with open(path, 'r') as f:
            config_str = f.read()
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found at: {path} (set {CONFIG_PATH_ENV} to override)")

    try:
        config_data = yaml.safe_load(os.path.expandvars(config_str))
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark is not None else ""
        raise ConfigError(f"Error parsing YAML configuration {path}{where}: {e}") from e

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ConfigError(f"Configuration root must be a mapping of sections, got {type(config_data).__name__}")

    unknown = sorted(set(config_data) - KNOWN_SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown configuration sections", sections=unknown, path=path)
    return config_data
