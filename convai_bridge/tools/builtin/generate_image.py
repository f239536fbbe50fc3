"""
Generate Image Tool - create an image with fal.ai and post it.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from convai_bridge.config.models import ImageGenerationConfig
from convai_bridge.logging_config import get_logger
from convai_bridge.tools.base import Tool, ToolCategory, ToolDefinition, ToolParameter
from convai_bridge.tools.context import ToolInvocation
from convai_bridge.tools.notifier import Notification, Notifier

logger = get_logger(__name__)

NO_IMAGE_MESSAGE = "I tried to generate the image, but the operation failed to produce a result."
TECHNICAL_ERROR_MESSAGE = "I encountered a technical error while trying to generate the image."


def _extract_image_url(result: Dict[str, Any]) -> Optional[str]:
    for container in (result, result.get("data") if isinstance(result.get("data"), dict) else None):
        if not container:
            continue
        images = container.get("images")
        if isinstance(images, list) and images:
            first = images[0]
            url = first.get("url") if isinstance(first, dict) else None
            if isinstance(url, str) and url.strip():
                return url.strip()
    return None


class GenerateImageTool(Tool):
    """Generate an image from a text description and post it to the side-channel."""

    def __init__(self, config: ImageGenerationConfig, notifier: Notifier):
        if not config.api_key:
            raise ValueError("fal API key is required to initialize the generate_image tool")
        self.config = config
        self.notifier = notifier

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="generate_image",
            description="Generate an image from a description and post it to the text channel.",
            category=ToolCategory.WEB,
            parameters=[
                ToolParameter(
                    name="image_description",
                    type="string",
                    description="Detailed description of the image to generate.",
                    required=True,
                )
            ],
        )

    async def _generate(self, prompt: str) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/{self.config.model}"
        payload = {
            "prompt": prompt,
            "image_size": self.config.image_size,
            "num_images": self.config.num_images,
        }
        headers = {"Authorization": f"Key {self.config.api_key}"}
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_sec)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise RuntimeError(f"Image generation failed: {response.status} - {error_text[:200]}")
                return await response.json()

    async def _post(self, handle: Any, notification: Notification) -> None:
        try:
            if handle is not None:
                await self.notifier.edit(handle, notification)
            else:
                await self.notifier.send(notification)
        except Exception:
            logger.error("Failed to post image generation notification", exc_info=True)

    async def execute(self, invocation: ToolInvocation) -> None:
        prompt = invocation.get_string("image_description")
        logger.info("Generating image", prompt=prompt, tool_call_id=invocation.tool_call_id)

        handle = None
        try:
            handle = await self.notifier.send(
                Notification(title="🎨 Generating Image...", description=f'"{prompt}"\nPlease wait...')
            )
        except Exception:
            logger.error("Failed to post image generation progress", exc_info=True)

        try:
            result = await self._generate(prompt)
        except (aiohttp.ClientError, RuntimeError, asyncio.TimeoutError) as e:
            logger.error("Image generation request failed", error=str(e))
            await self._post(handle, Notification(
                title="Image Generation Error",
                description="A technical error occurred during image generation.",
                level="error",
            ))
            await invocation.respond(TECHNICAL_ERROR_MESSAGE, True)
            return

        image_url = _extract_image_url(result) if isinstance(result, dict) else None
        if not image_url:
            logger.error("Image generation returned no image URL")
            await self._post(handle, Notification(
                title="Generation Failed",
                description="Image generation did not return a valid image.",
                level="error",
            ))
            await invocation.respond(NO_IMAGE_MESSAGE, True)
            return

        logger.info("Image generated", image_url=image_url)
        await self._post(handle, Notification(
            title="🎨 Generated Image",
            description=prompt,
            level="success",
            image_url=image_url,
        ))
        await invocation.respond(
            f'Successfully generated and posted an image for the prompt: "{prompt}"', False
        )
