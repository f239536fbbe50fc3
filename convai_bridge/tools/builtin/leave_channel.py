"""
Leave Channel Tool - end the talk session on the agent's request.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from convai_bridge.logging_config import get_logger
from convai_bridge.tools.base import Tool, ToolCategory, ToolDefinition
from convai_bridge.tools.context import ToolInvocation
from convai_bridge.tools.notifier import Notification, Notifier

logger = get_logger(__name__)


class LeaveChannelTool(Tool):
    """
    Leave the voice channel.

    The result is sent before leaving because leaving closes the agent
    session, after which no result could be delivered. Closing the session
    also cancels the tool call itself, so the leave and its confirmation
    run in their own task.
    """

    def __init__(self, leave: Callable[[], Awaitable[None]], notifier: Notifier):
        self._leave = leave
        self.notifier = notifier
        self._leave_task: Optional[asyncio.Task] = None

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="leave_channel",
            description="Leave the voice channel when the users say goodbye or ask you to leave.",
            category=ToolCategory.VOICE,
        )

    async def execute(self, invocation: ToolInvocation) -> None:
        logger.info("Received request to leave voice channel", tool_call_id=invocation.tool_call_id)

        await invocation.respond("Leaving the voice channel.", False)
        if self._leave_task is None:
            self._leave_task = asyncio.create_task(self._leave_and_confirm())
        await asyncio.shield(self._leave_task)

    async def _leave_and_confirm(self) -> None:
        await self._leave()
        try:
            await self.notifier.send(Notification(
                title="Left Channel",
                description="Successfully left the voice channel.",
                level="success",
            ))
        except Exception:
            logger.error("Error sending 'Left Channel' confirmation", exc_info=True)
