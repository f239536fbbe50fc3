"""
Tool invocation context - what a handler receives for one client tool call.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional


# await respond(output, is_error=False)
ToolRespond = Callable[..., Awaitable[None]]


@dataclass
class ToolInvocation:
    """
    A single client tool call from the agent.

    Lives only for the duration of one dispatch. Handlers must call
    `respond` exactly once; the dispatcher drops any further calls.
    """

    tool_name: str
    tool_call_id: str
    respond: ToolRespond
    parameters: Dict[str, Any] = field(default_factory=dict)

    def get_string(self, key: str) -> Optional[str]:
        """Return a stripped, non-empty string parameter or None."""
        value = self.parameters.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None
