import httpx
import pytest

from quill.config import WebFetchToolConfig
from quill.tools.web_fetch import (
    ContentFetcher,
    WebFetchArgs,
    WebFetchTool,
    extract_readable_text,
)

_HTML = """
<html>
  <head>
    <title>Example Page</title>
    <script>var should_not_show = true;</script>
  </head>
  <body>
    <h1>Hello World</h1>
    <p>This is readable text with a <a href="/docs">docs link</a>.</p>
  </body>
</html>
"""


class _FakeResponse:
    def __init__(self, text: str, status_code: int = 200, content_type: str = "text/html"):
        self.text = text
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self.request = httpx.Request("GET", "https://example.com")

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                message=f"status={self.status_code}",
                request=self.request,
                response=httpx.Response(self.status_code, request=self.request),
            )


class _FakeClient:
    def __init__(self, responses: dict[str, _FakeResponse]):
        self._responses = responses
        self.urls: list[str] = []

    async def get(self, url: str, **kwargs):
        self.urls.append(url)
        if url not in self._responses:
            raise httpx.ConnectError("unreachable")
        return self._responses[url]

    async def aclose(self) -> None:
        return None


def test_extract_readable_text_drops_scripts_and_keeps_links():
    text = extract_readable_text(_HTML, base_url="https://example.com/page")

    assert text.startswith("Example Page")
    assert "Hello World" in text
    assert "docs link (https://example.com/docs)" in text
    assert "should_not_show" not in text
    assert "<html>" not in text


@pytest.mark.asyncio
async def test_fetch_prefers_reader_output():
    client = _FakeClient({
        "https://r.jina.ai/https://example.com": _FakeResponse("# Example\n\nReader text", content_type="text/plain"),
    })
    fetcher = ContentFetcher(WebFetchToolConfig(), client=client)

    text = await fetcher.fetch_text("https://example.com")

    assert text == "# Example\n\nReader text"
    assert client.urls == ["https://r.jina.ai/https://example.com"]


@pytest.mark.asyncio
async def test_fetch_falls_back_to_direct_html_and_caps_length():
    client = _FakeClient({"https://example.com": _FakeResponse(_HTML)})
    fetcher = ContentFetcher(WebFetchToolConfig(max_chars=20), client=client)

    text = await fetcher.fetch_text("https://example.com")

    assert text is not None
    assert len(text) == 20
    assert text.startswith("Example Page")
    assert client.urls == ["https://r.jina.ai/https://example.com", "https://example.com"]


@pytest.mark.asyncio
async def test_fetch_returns_none_on_failure_and_for_non_http_urls():
    client = _FakeClient({"https://example.com": _FakeResponse("gone", status_code=404)})
    fetcher = ContentFetcher(WebFetchToolConfig(reader_url=""), client=client)

    assert await fetcher.fetch_text("https://example.com") is None
    assert await fetcher.fetch_text("ftp://example.com/file") is None
    assert client.urls == ["https://example.com"]


@pytest.mark.asyncio
async def test_web_fetch_tool_reports_failure_as_result():
    fetcher = ContentFetcher(WebFetchToolConfig(reader_url=""), client=_FakeClient({}))
    tool = WebFetchTool(fetcher)

    result = await tool.execute(WebFetchArgs(url="https://missing.example.com"))

    assert result.success is False
    assert "missing.example.com" in result.error


@pytest.mark.asyncio
async def test_web_fetch_tool_returns_text():
    client = _FakeClient({"https://example.com": _FakeResponse(_HTML)})
    tool = WebFetchTool(ContentFetcher(WebFetchToolConfig(reader_url=""), client=client))

    result = await tool.execute(WebFetchArgs(url="https://example.com"))

    assert result.success is True
    assert result.content.startswith("[URL: https://example.com]")
    assert "This is readable text" in result.content


class _MalformedUrlClient(_FakeClient):
    async def get(self, url: str, **kwargs):
        self.urls.append(url)
        raise httpx.InvalidURL(f"Invalid URL {url!r}")


@pytest.mark.asyncio
async def test_fetch_returns_none_for_malformed_url():
    client = _MalformedUrlClient({})
    fetcher = ContentFetcher(WebFetchToolConfig(), client=client)

    assert await fetcher.fetch_text("https://exa mple.com/\x00") is None
    assert len(client.urls) == 2
