"""
Base classes for client tools.

A tool handler is any `async (ToolInvocation) -> None` callable. `Tool`
subclasses are handlers that also describe themselves with a
`ToolDefinition`, which is what the agent dashboard needs to declare the
matching client tool.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from convai_bridge.logging_config import get_logger
from convai_bridge.tools.context import ToolInvocation

logger = get_logger(__name__)

ToolHandler = Callable[[ToolInvocation], Awaitable[None]]


class ToolCategory(Enum):
    """Category of tool, used for logging and schema export."""
    VOICE = "voice"  # Acts on the voice session itself (leave, ...)
    WEB = "web"      # Calls external web APIs (search, image generation)


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: str  # "string", "integer", "boolean", "number", "array", "object"
    description: str
    required: bool = False
    enum: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type,
            "description": self.description,
        }
        if self.enum:
            result["enum"] = self.enum
        return result


@dataclass
class ToolDefinition:
    """
    Tool metadata.

    `expects_response` mirrors the client tool flag on the agent side: when
    true the agent waits for a `client_tool_result` before continuing.
    """
    name: str
    description: str
    category: ToolCategory
    parameters: List[ToolParameter] = field(default_factory=list)
    expects_response: bool = True

    def to_elevenlabs_schema(self) -> Dict[str, Any]:
        """
        Convert to the ElevenLabs client tool format:
        {
            "type": "client",
            "name": "tool_name",
            "description": "...",
            "expects_response": true,
            "parameters": {"type": "object", "properties": {...}, "required": [...]}
        }
        """
        return {
            "type": "client",
            "name": self.name,
            "description": self.description,
            "expects_response": self.expects_response,
            "parameters": {
                "type": "object",
                "properties": {p.name: p.to_dict() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }


class Tool(ABC):
    """
    Abstract base class for built-in tools.

    Subclasses implement:
    - definition property: Returns ToolDefinition with metadata
    - execute method: Performs the action and calls invocation.respond once
    """

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return tool definition with metadata."""

    @abstractmethod
    async def execute(self, invocation: ToolInvocation) -> None:
        """
        Perform the tool action.

        Must call `await invocation.respond(output, is_error)` exactly once.
        Exceptions propagate to the dispatcher, which answers the agent with
        a generic error.
        """

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        """
        Validate parameters before execution.

        Raises:
            ValueError: If a required parameter is missing (or a blank string)
                or an enum parameter has an unknown value
        """
        for param in self.definition.parameters:
            value = parameters.get(param.name)
            if param.required:
                if value is None:
                    raise ValueError(f"Missing {param.name} parameter")
                if param.type == "string" and (not isinstance(value, str) or not value.strip()):
                    raise ValueError(f"Missing {param.name} parameter")
            if param.enum and value is not None and value not in param.enum:
                raise ValueError(
                    f"Invalid value for {param.name}. Must be one of: {', '.join(param.enum)}"
                )

    async def __call__(self, invocation: ToolInvocation) -> None:
        try:
            self.validate_parameters(invocation.parameters)
        except ValueError as e:
            logger.warning(
                "Tool called with invalid parameters",
                tool=invocation.tool_name,
                tool_call_id=invocation.tool_call_id,
                error=str(e),
            )
            await invocation.respond(f"Error: {e}.", True)
            return
        await self.execute(invocation)
