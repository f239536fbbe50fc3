"""
Tool dispatcher - runs one client tool call and turns every outcome into
exactly one `client_tool_result`.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional

from prometheus_client import Counter

from convai_bridge.logging_config import get_logger
from convai_bridge.tools.context import ToolInvocation
from convai_bridge.tools.registry import ToolRegistry

logger = get_logger(__name__)

# await send_result(tool_call_id, output, is_error)
SendToolResult = Callable[[str, str, bool], Awaitable[None]]

UNSUPPORTED_TOOL_MESSAGE = "Error: Unsupported tool '{tool}'."
GENERIC_ERROR_MESSAGE = "An unexpected error occurred while executing tool '{tool}'."
NO_RESULT_MESSAGE = "Tool '{tool}' finished without returning a result."

_TOOL_CALLS = Counter(
    "convai_bridge_tool_calls_total",
    "Client tool calls by outcome",
    ["outcome"],  # success | error_result | failed | unsupported | no_response
)


class _ResponseGuard:
    """Forwards the first response for a tool call and drops the rest."""

    def __init__(self, tool_name: str, tool_call_id: str, send_result: SendToolResult):
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id
        self._send_result = send_result
        self.responded = False
        self.is_error: Optional[bool] = None

    async def __call__(self, output: Any, is_error: bool = False) -> None:
        if self.responded:
            logger.warning(
                "Duplicate tool response dropped",
                tool=self.tool_name,
                tool_call_id=self.tool_call_id,
            )
            return
        self.responded = True
        self.is_error = bool(is_error)
        try:
            await self._send_result(self.tool_call_id, output if isinstance(output, str) else str(output), bool(is_error))
        except Exception:
            logger.error(
                "Failed to deliver tool result",
                tool=self.tool_name,
                tool_call_id=self.tool_call_id,
                exc_info=True,
            )


class ToolDispatcher:
    """
    Executes client tool calls against a session's registry.

    No timeout is imposed here; the agent side times out calls through its
    own tool_call_id response window.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def dispatch(
        self,
        tool_name: str,
        parameters: Optional[Dict[str, Any]],
        tool_call_id: str,
        send_result: SendToolResult,
    ) -> None:
        """
        Run `tool_name` and answer through `send_result`. Never raises
        (except cancellation).

        - Unknown tool: error result naming the unsupported tool.
        - Handler raises (synchronously or while awaited): generic error
          result, unless the handler already responded.
        - Handler returns without responding: error result saying so.
        - Handler succeeds: its own response is the result.
        """
        guard = _ResponseGuard(tool_name, tool_call_id, send_result)

        handler = self.registry.get(tool_name)
        if handler is None:
            logger.warning("Received unknown client tool call", tool=tool_name, tool_call_id=tool_call_id)
            _TOOL_CALLS.labels(outcome="unsupported").inc()
            await guard(UNSUPPORTED_TOOL_MESSAGE.format(tool=tool_name), True)
            return

        invocation = ToolInvocation(
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            respond=guard,
            parameters=dict(parameters or {}),
        )

        logger.info("Handling client tool call", tool=tool_name, tool_call_id=tool_call_id)
        try:
            result = handler(invocation)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Error handling tool call", tool=tool_name, tool_call_id=tool_call_id, exc_info=True)
            _TOOL_CALLS.labels(outcome="failed").inc()
            if not guard.responded:
                await guard(GENERIC_ERROR_MESSAGE.format(tool=tool_name), True)
            return

        if not guard.responded:
            logger.warning("Tool finished without responding", tool=tool_name, tool_call_id=tool_call_id)
            _TOOL_CALLS.labels(outcome="no_response").inc()
            await guard(NO_RESULT_MESSAGE.format(tool=tool_name), True)
        elif guard.is_error:
            _TOOL_CALLS.labels(outcome="error_result").inc()
        else:
            _TOOL_CALLS.labels(outcome="success").inc()
