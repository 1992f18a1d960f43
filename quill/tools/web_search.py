"""Web search tool powered by the Tavily Search API."""

import os
import re
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from quill.config import WebSearchToolConfig
from quill.exceptions import SearchProviderUnavailable
from quill.logging import get_logger
from quill.tools.registry import Tool, ToolRender, ToolResult

log = get_logger(__name__)

MAX_RESULTS_CAP = 5


class SearchResult(BaseModel):
    """One ranked search hit, in the shape persisted on messages."""

    title: str
    link: str
    snippet: str = ""
    display_link: str = ""

    def to_record(self) -> dict[str, str]:
        return {
            "title": self.title,
            "link": self.link,
            "snippet": self.snippet,
            "displayLink": self.display_link,
        }


class WebSearchArgs(BaseModel):
    query: str = Field(min_length=1, description="Search query text")
    reason: str = Field(default="", description="Why the search is needed")


def _clean_text(value: str, max_chars: int = 500) -> str:
    """Normalize whitespace and bound output size."""
    cleaned = re.sub(r"\s+", " ", (value or "")).strip()
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


def _display_host(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


class SearchClient:
    """Thin client for the search provider; absence of a key disables search."""

    def __init__(self, config: WebSearchToolConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": "Quill/0.1.0 (Web Search)"},
        )

    @property
    def api_key(self) -> str:
        return (
            str(self.config.api_key or "").strip()
            or str(os.environ.get("TAVILY_API_KEY", "")).strip()
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int | None = None) -> list[SearchResult]:
        """Run a search.

        Raises:
            SearchProviderUnavailable if the key is absent or the call fails
        """
        q = (query or "").strip()
        if not q:
            return []
        if self.config.provider.strip().lower() != "tavily":
            raise SearchProviderUnavailable(f"Unsupported search provider: {self.config.provider}")
        if not self.enabled:
            raise SearchProviderUnavailable("Search provider key is not configured")

        count = self.config.max_results if max_results is None else int(max_results)
        count = min(max(count, 1), MAX_RESULTS_CAP)
        body: dict[str, Any] = {
            "api_key": self.api_key,
            "query": q,
            "search_depth": self.config.search_depth,
            "max_results": count,
        }

        try:
            response = await self.client.post(
                self.config.base_url,
                json=body,
                timeout=float(self.config.timeout),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            detail = f"HTTP {e.response.status_code}"
            log.error("Web search failed", query=q, error=detail)
            raise SearchProviderUnavailable(detail) from e
        except (httpx.HTTPError, ValueError) as e:
            log.error("Web search failed", query=q, error=str(e))
            raise SearchProviderUnavailable(str(e)) from e

        raw_results = payload.get("results", []) if isinstance(payload, dict) else []
        if not isinstance(raw_results, list):
            raw_results = []

        results: list[SearchResult] = []
        for item in raw_results:
            if not isinstance(item, dict):
                continue
            link = str(item.get("url", "") or "").strip()
            results.append(SearchResult(
                title=_clean_text(str(item.get("title", "") or "Untitled"), max_chars=180),
                link=link,
                snippet=_clean_text(str(item.get("content", "") or "")),
                display_link=_display_host(link),
            ))
            if len(results) >= count:
                break
        return results

    async def close(self) -> None:
        await self.client.aclose()


def format_results(query: str, results: list[SearchResult]) -> str:
    """Plain-text result listing handed to the model."""
    lines = [f"[QUERY: {query}]", f"[RESULTS: {len(results)}]", ""]
    if not results:
        lines.append("No results found.")
    for idx, result in enumerate(results, start=1):
        lines.append(f"{idx}. {result.title}")
        lines.append(f"   URL: {result.link or '-'}")
        lines.append(f"   Snippet: {result.snippet or '-'}")
        lines.append("")
    return "\n".join(lines).strip()


class WebSearchTool(Tool):
    """Search the web; degrades to an empty result list when search is unavailable."""

    name = "web_search"
    description = "Search the web for current information and return ranked results with titles, links, and snippets."
    args_model = WebSearchArgs

    def __init__(self, search_client: SearchClient):
        self.search_client = search_client

    async def execute(self, args: WebSearchArgs) -> ToolResult:
        try:
            results = await self.search_client.search(args.query)
        except SearchProviderUnavailable as e:
            log.warning("Web search unavailable, continuing without results", query=args.query, error=str(e))
            results = []

        return ToolResult(
            success=True,
            content=format_results(args.query, results),
            data={
                "query": args.query,
                "results": [result.to_record() for result in results],
            },
        )

    def render(self, result: ToolResult) -> ToolRender:
        records = list(result.data.get("results") or [])
        if not records:
            return ToolRender()
        return ToolRender(
            message_patch={"search_results": records, "has_web_search": True},
        )

    def status_line(self, args: WebSearchArgs) -> str:
        return f'Searching the web for "{args.query}"'

    async def close(self) -> None:
        await self.search_client.close()
