import asyncio

import pytest

from quill.config import SearchConfig, WebSearchToolConfig
from quill.exceptions import SearchProviderUnavailable
from quill.search_augmentation import SearchAugmenter
from quill.tools.web_search import SearchResult


def _results(count: int) -> list[SearchResult]:
    return [
        SearchResult(
            title=f"Result {idx}",
            link=f"https://site{idx}.example.com/page",
            snippet=f"Snippet {idx}",
            display_link=f"site{idx}.example.com",
        )
        for idx in range(count)
    ]


class _FakeSearchClient:
    def __init__(self, results: list[SearchResult] | None = None, unavailable: bool = False):
        self.config = WebSearchToolConfig()
        self._results = results or []
        self._unavailable = unavailable
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int | None = None) -> list[SearchResult]:
        self.queries.append(query)
        if self._unavailable:
            raise SearchProviderUnavailable("Search provider key is not configured")
        return list(self._results)


class _FakeFetcher:
    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.urls: list[str] = []
        self.active = 0
        self.peak = 0

    async def fetch_text(self, url: str) -> str | None:
        self.urls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        if url in self.failing:
            return None
        return f"Full text of {url}"


def test_auto_search_heuristic():
    augmenter = SearchAugmenter(_FakeSearchClient(), None, SearchConfig())

    assert augmenter.should_auto_search("What's the latest news about SpaceX?") is True
    assert augmenter.should_auto_search("weather in Zagreb today") is True
    assert augmenter.should_auto_search("Look up their official site") is True
    assert augmenter.should_auto_search("Write a haiku about autumn") is False
    assert augmenter.should_auto_search("") is False
    assert augmenter.should_auto_search("Write a haiku", include_web_search=True) is True


def test_auto_search_can_be_disabled():
    augmenter = SearchAugmenter(_FakeSearchClient(), None, SearchConfig(auto_search=False))

    assert augmenter.should_auto_search("latest news") is False
    assert augmenter.should_auto_search("latest news", include_web_search=True) is True


@pytest.mark.asyncio
async def test_gather_degrades_to_empty_when_unavailable():
    augmenter = SearchAugmenter(_FakeSearchClient(unavailable=True), None, SearchConfig())

    assert await augmenter.gather("latest news") == []
    assert await augmenter.augment("latest news") is None


@pytest.mark.asyncio
async def test_enrich_fetches_top_results_with_bounded_concurrency():
    fetcher = _FakeFetcher(failing={"https://site1.example.com/page"})
    augmenter = SearchAugmenter(
        _FakeSearchClient(),
        fetcher,
        SearchConfig(enrich_count=3, enrich_concurrency=2),
    )

    enriched = await augmenter.enrich(_results(5))

    assert len(enriched) == 5
    assert sorted(fetcher.urls) == [f"https://site{idx}.example.com/page" for idx in range(3)]
    assert fetcher.peak <= 2
    assert enriched[0].page_text == "Full text of https://site0.example.com/page"
    assert enriched[1].page_text is None
    assert enriched[3].page_text is None


@pytest.mark.asyncio
async def test_augment_builds_search_context():
    augmenter = SearchAugmenter(
        _FakeSearchClient(_results(2)),
        _FakeFetcher(),
        SearchConfig(enrich_count=1),
    )

    augmentation = await augmenter.augment("latest rust release")

    assert augmentation is not None
    assert augmentation.query == "latest rust release"
    assert [r["displayLink"] for r in augmentation.records()] == ["site0.example.com", "site1.example.com"]
    assert 'search results for "latest rust release"' in augmentation.context
    assert "[1] Result 0" in augmentation.context
    assert "Full text of https://site0.example.com/page" in augmentation.context
    assert "Snippet 1" in augmentation.context


class _ExplodingFetcher(_FakeFetcher):
    async def fetch_text(self, url: str) -> str | None:
        if url == "https://site0.example.com/page":
            raise RuntimeError("decoder blew up")
        return await super().fetch_text(url)


@pytest.mark.asyncio
async def test_enrich_survives_a_fetcher_that_raises():
    augmenter = SearchAugmenter(
        _FakeSearchClient(_results(2)),
        _ExplodingFetcher(),
        SearchConfig(enrich_count=2),
    )

    augmentation = await augmenter.augment("latest rust release")

    assert augmentation is not None
    assert "[1] Result 0" in augmentation.context
    assert "Full text of https://site0.example.com/page" not in augmentation.context
    assert "Full text of https://site1.example.com/page" in augmentation.context
