"""
Web Search Tool - answer questions from a Tavily web search.

The answer goes back to the agent (with the first result link) and the
result is also posted to the notification side-channel. When Tavily has no
synthesized answer, the raw sources are summarized instead.
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from convai_bridge.config.models import WebSearchConfig
from convai_bridge.logging_config import get_logger
from convai_bridge.tools.base import Tool, ToolCategory, ToolDefinition, ToolParameter
from convai_bridge.tools.context import ToolInvocation
from convai_bridge.tools.notifier import Notification, Notifier

logger = get_logger(__name__)

SEARCH_FAILED_MESSAGE = "An error occurred while searching the web. Please try again later."
NO_RESULTS_MESSAGE = "No search results found."


def _first_url(candidates: Any) -> Optional[str]:
    """First non-blank URL from a list of strings or {"url": ...} dicts."""
    for candidate in candidates or []:
        url = candidate.get("url") if isinstance(candidate, dict) else candidate
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def summarize_results(query: str, results: List[Dict[str, Any]]) -> str:
    """Readable digest of raw search results, one source/content pair each."""
    sources = "\n\n".join(
        f"Source: {result.get('title', '')}\nContent: {result.get('content', '')}" for result in results
    )
    return f'Here\'s what I found about "{query}":\n{sources}'


class WebSearchTool(Tool):
    """Search the web through the Tavily search API."""

    def __init__(self, config: WebSearchConfig, notifier: Notifier):
        if not config.api_key:
            raise ValueError("Tavily API key is required to initialize the web_search tool")
        self.config = config
        self.notifier = notifier

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="web_search",
            description=(
                "Search the web for current information. Use when the user asks about "
                "news, recent events or facts you are unsure of."
            ),
            category=ToolCategory.WEB,
            parameters=[
                ToolParameter(
                    name="query",
                    type="string",
                    description="The search query.",
                    required=True,
                )
            ],
        )

    async def _search(self, query: str) -> Dict[str, Any]:
        payload = {
            "query": query,
            "max_results": self.config.max_results,
            "include_answer": self.config.include_answer,
            "include_images": self.config.include_images,
            "search_depth": self.config.search_depth,
        }
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.config.base_url, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise RuntimeError(f"Tavily search failed: {response.status} - {error_text[:200]}")
                return await response.json()

    async def execute(self, invocation: ToolInvocation) -> None:
        query = invocation.get_string("query")
        logger.info("Performing web search", query=query, tool_call_id=invocation.tool_call_id)

        try:
            response = await self._search(query)
        except (aiohttp.ClientError, RuntimeError, asyncio.TimeoutError) as e:
            logger.error("Tavily web search failed", error=str(e))
            await invocation.respond(SEARCH_FAILED_MESSAGE, True)
            return

        results = [r for r in response.get("results") or [] if isinstance(r, dict)]
        answer = response.get("answer")
        answer = answer.strip() if isinstance(answer, str) else ""
        link = _first_url(results)

        if answer:
            reply = f"{answer}\n\nLink: {link}" if link else answer
        elif results:
            # No synthesized answer: hand the agent the raw sources instead
            answer = summarize_results(query, results)
            link = None
            reply = answer
        else:
            await invocation.respond(NO_RESULTS_MESSAGE, False)
            return

        try:
            await self.notifier.send(Notification(
                title="🔎 Search Results",
                description=answer,
                url=link,
                image_url=_first_url(response.get("images")),
            ))
        except Exception:
            logger.error("Failed to post search results", exc_info=True)

        await invocation.respond(reply, False)
