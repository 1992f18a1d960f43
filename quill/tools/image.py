"""Image generation tool backed by an OpenAI-compatible images endpoint."""

import os
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from quill.config import ImageToolConfig
from quill.logging import get_logger
from quill.tools.registry import Tool, ToolRender, ToolResult

log = get_logger(__name__)

ImageSize = Literal["1024x1024", "1536x1024", "1024x1536", "1792x1024", "1024x1792"]


class ImageArgs(BaseModel):
    prompt: str = Field(min_length=1, description="Detailed description of the image to generate")
    size: ImageSize | None = Field(default=None, description="Image dimensions")


class ImageGenerationTool(Tool):
    """Generate an image from a text prompt."""

    name = "generate_image"
    description = "Create an image from a text description. Returns the generated image."
    args_model = ImageArgs

    def __init__(self, config: ImageToolConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.timeout_seconds = float(config.timeout) + 5.0
        self.client = client or httpx.AsyncClient(timeout=float(config.timeout))

    @property
    def api_key(self) -> str:
        explicit = str(self.config.api_key or "").strip()
        if explicit:
            return explicit
        env_name = self.config.api_key_env
        return str(os.environ.get(env_name, "") if env_name else "").strip()

    async def execute(self, args: ImageArgs) -> ToolResult:
        if not self.api_key:
            return ToolResult(success=False, error="Image generation is not configured")

        size = args.size or self.config.default_size
        body: dict[str, Any] = {
            "model": self.config.model,
            "prompt": args.prompt,
            "size": size,
            "n": 1,
        }
        url = f"{self.config.base_url.rstrip('/')}/images/generations"

        try:
            response = await self.client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            log.error("Image generation failed", status=e.response.status_code)
            return ToolResult(success=False, error=f"Image provider returned HTTP {e.response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            log.error("Image generation failed", error=str(e))
            return ToolResult(success=False, error=str(e))

        items = payload.get("data") if isinstance(payload, dict) else None
        first = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else {}
        image_url = str(first.get("url") or "").strip()
        if not image_url and first.get("b64_json"):
            image_url = f"data:image/png;base64,{first['b64_json']}"
        if not image_url:
            return ToolResult(success=False, error="Image provider returned no image")

        return ToolResult(
            success=True,
            content=f"Image generated for prompt: {args.prompt}",
            data={"url": image_url, "prompt": args.prompt, "size": size},
        )

    def render(self, result: ToolResult) -> ToolRender:
        prompt = str(result.data.get("prompt", "")).replace("]", "")
        image = {
            "url": result.data.get("url", ""),
            "prompt": result.data.get("prompt", ""),
            "size": result.data.get("size", ""),
        }
        return ToolRender(
            content_fragment=f"![{prompt}]({image['url']})",
            message_patch={"metadata": {"images": [image]}},
        )

    def status_line(self, args: ImageArgs) -> str:
        return f'Generating image: "{args.prompt}"'

    async def close(self) -> None:
        await self.client.aclose()
