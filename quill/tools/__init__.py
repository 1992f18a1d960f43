"""Tools package for Quill."""

from quill.config import ToolsConfig
from quill.tools.registry import Tool, ToolRegistry, ToolRender, ToolResult
from quill.tools.image import ImageGenerationTool
from quill.tools.page_builder import DocumentTool, LandingPageTool
from quill.tools.web_fetch import ContentFetcher, WebFetchTool
from quill.tools.web_search import SearchClient, SearchResult, WebSearchTool


def build_default_registry(
    config: ToolsConfig,
    search_client: SearchClient | None = None,
    fetcher: ContentFetcher | None = None,
) -> ToolRegistry:
    """Register every enabled built-in tool."""
    enabled = {name.strip().lower() for name in config.enabled}
    registry = ToolRegistry()

    if "web_search" in enabled:
        registry.register(WebSearchTool(search_client or SearchClient(config.web_search)))
    if "web_fetch" in enabled:
        registry.register(WebFetchTool(fetcher or ContentFetcher(config.web_fetch)))
    if "generate_landing_page" in enabled:
        registry.register(LandingPageTool())
    if "generate_document" in enabled:
        registry.register(DocumentTool())
    if "generate_image" in enabled:
        registry.register(ImageGenerationTool(config.image))

    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolRender",
    "ToolResult",
    "ContentFetcher",
    "SearchClient",
    "SearchResult",
    "WebSearchTool",
    "WebFetchTool",
    "LandingPageTool",
    "DocumentTool",
    "ImageGenerationTool",
    "build_default_registry",
]
