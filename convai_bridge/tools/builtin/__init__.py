"""
Built-in client tools: web search, image generation and leaving the channel.
"""

from convai_bridge.tools.builtin.generate_image import GenerateImageTool
from convai_bridge.tools.builtin.leave_channel import LeaveChannelTool
from convai_bridge.tools.builtin.web_search import WebSearchTool

__all__ = [
    "GenerateImageTool",
    "LeaveChannelTool",
    "WebSearchTool",
]
