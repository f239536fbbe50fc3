"""
Tool registry - the name -> handler table for one talk session.

Each talk session builds its own registry, fills it before the agent session
starts and freezes it; nothing is shared between sessions.
"""

from typing import Awaitable, Callable, Dict, List, Optional

from convai_bridge.config.models import ToolsConfig
from convai_bridge.logging_config import get_logger
from convai_bridge.tools.base import Tool, ToolDefinition, ToolHandler
from convai_bridge.tools.notifier import Notifier

logger = get_logger(__name__)


class ToolRegistry:
    """
    Registry of client tool handlers.

    Re-registering a name overwrites the previous handler (last write wins).
    After `freeze()` the table is read-only.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ToolHandler] = {}
        self._frozen = False

    def register(self, name: str, handler: ToolHandler) -> None:
        """
        Register a handler under `name`.

        Raises:
            RuntimeError: If the registry is frozen
        """
        if self._frozen:
            raise RuntimeError(f"Tool registry is frozen; cannot register {name}")

        if name in self._handlers:
            logger.warning("Tool already registered, overwriting", tool=name)

        self._handlers[name] = handler
        logger.info("Registered tool", tool=name)

    def register_tool(self, tool: Tool) -> None:
        """Register a `Tool` under its definition name."""
        self.register(tool.definition.name, tool)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Optional[ToolHandler]:
        """Get handler by name, or None if not registered."""
        return self._handlers.get(name)

    def list_tools(self) -> List[str]:
        return list(self._handlers.keys())

    def get_definitions(self) -> List[ToolDefinition]:
        """Definitions of registered `Tool` instances (plain callables have none)."""
        return [h.definition for h in self._handlers.values() if isinstance(h, Tool)]

    def to_elevenlabs_schema(self) -> List[Dict]:
        """Export `Tool` definitions in ElevenLabs client tool format."""
        return [definition.to_elevenlabs_schema() for definition in self.get_definitions()]

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def create_session_registry(
    tools_config: ToolsConfig,
    notifier: Notifier,
    leave: Callable[[], Awaitable[None]],
) -> ToolRegistry:
    """
    Build the registry for one talk session from configuration.

    Tools whose API key is missing are skipped with an info log, the same
    way a disabled tool is.
    """
    from convai_bridge.tools.builtin.generate_image import GenerateImageTool
    from convai_bridge.tools.builtin.leave_channel import LeaveChannelTool
    from convai_bridge.tools.builtin.web_search import WebSearchTool

    registry = ToolRegistry()

    web_search = tools_config.web_search
    if web_search.enabled and web_search.api_key:
        registry.register_tool(WebSearchTool(web_search, notifier))
    else:
        logger.info("Tavily API key not provided or tool disabled; skipping web_search")

    generate_image = tools_config.generate_image
    if generate_image.enabled and generate_image.api_key:
        registry.register_tool(GenerateImageTool(generate_image, notifier))
    else:
        logger.info("fal API key not provided or tool disabled; skipping generate_image")

    if tools_config.leave_channel.enabled:
        registry.register_tool(LeaveChannelTool(leave, notifier))

    logger.info("Initialized session tools", tools=registry.list_tools())
    return registry
