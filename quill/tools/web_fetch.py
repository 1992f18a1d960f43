"""URL content fetching for search enrichment and the web_fetch tool."""

import re
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field

from quill.config import WebFetchToolConfig
from quill.logging import get_logger
from quill.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def extract_readable_text(html: str, base_url: str | None = None) -> str:
    """Extract human-readable text from raw HTML."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
        tag.decompose()

    # Keep links so the model can cite sources.
    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        label = anchor.get_text(" ", strip=True)
        if not href:
            continue
        absolute = urljoin(base_url, href) if base_url else href
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    lines: list[str] = []
    for line in soup.get_text(separator="\n").splitlines():
        cleaned = re.sub(r"\s+", " ", line).strip()
        if cleaned:
            lines.append(cleaned)

    text = "\n".join(lines)
    if title and not text.startswith(title):
        return f"{title}\n\n{text}" if text else title
    return text


class ContentFetcher:
    """Fetch a URL as plain text, size-capped; returns None on any failure."""

    def __init__(self, config: WebFetchToolConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client or httpx.AsyncClient(
            timeout=float(config.timeout),
            follow_redirects=True,
            headers={"User-Agent": "Quill/0.1.0 (Content Fetcher)"},
        )

    def _cap(self, text: str) -> str:
        return text[: max(1, int(self.config.max_chars))]

    async def _via_reader(self, url: str) -> str | None:
        reader = self.config.reader_url.strip()
        if not reader:
            return None
        try:
            response = await self.client.get(
                f"{reader}{url}",
                headers={"Accept": "text/plain", "X-With-Generated-Alt": "true"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.warning("Reader fetch failed", url=url, error=str(e))
            return None
        if not response.is_success:
            log.warning("Reader fetch failed", url=url, status=response.status_code)
            return None
        return response.text.strip() or None

    async def _direct(self, url: str) -> str | None:
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.warning("Direct fetch failed", url=url, error=str(e))
            return None
        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            return extract_readable_text(response.text, base_url=url) or None
        return response.text.strip() or None

    async def fetch_text(self, url: str) -> str | None:
        target = (url or "").strip()
        if not target.startswith(("http://", "https://")):
            return None
        log.info("Fetching URL", url=target)
        text = await self._via_reader(target)
        if text is None:
            text = await self._direct(target)
        if text is None:
            return None
        return self._cap(text)

    async def close(self) -> None:
        await self.client.aclose()


class WebFetchArgs(BaseModel):
    url: str = Field(pattern=r"^https?://", description="URL to fetch")


class WebFetchTool(Tool):
    """Fetch and extract readable content from a URL."""

    name = "web_fetch"
    description = "Fetch a web page and return its readable text content."
    args_model = WebFetchArgs

    def __init__(self, fetcher: ContentFetcher):
        self.fetcher = fetcher

    async def execute(self, args: WebFetchArgs) -> ToolResult:
        text = await self.fetcher.fetch_text(args.url)
        if text is None:
            return ToolResult(success=False, error=f"Could not fetch {args.url}")
        return ToolResult(
            success=True,
            content=f"[URL: {args.url}]\n\n{text}",
            data={"url": args.url, "chars": len(text)},
        )

    def status_line(self, args: WebFetchArgs) -> str:
        return f"Reading {args.url}"

    async def close(self) -> None:
        await self.fetcher.close()
