"""Request-level web search augmentation."""

import asyncio
import re
from dataclasses import dataclass

from quill.config import SearchConfig
from quill.exceptions import SearchProviderUnavailable
from quill.instructions import InstructionLoader
from quill.logging import get_logger
from quill.tools.web_fetch import ContentFetcher
from quill.tools.web_search import SearchClient, SearchResult

log = get_logger(__name__)

MAX_QUERY_CHARS = 400

# Prompts asking for current information or for something found on the web.
AUTO_SEARCH_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(latest|newest|current|currently|recent|recently|breaking|up[- ]to[- ]date)\b",
        r"\b(today|tonight|yesterday|this (week|month|year)|right now)\b",
        r"\b(news|headlines|weather|forecast|stock price|exchange rate|score)\b",
        r"\b(search|look up|google|browse)\b.*\b(web|online|internet)\b",
        r"\b(search for|look up|find online)\b",
        r"\b(website|web page|homepage|official site)\b",
        r"\bwho (won|is winning)\b",
        r"\b20[2-9]\d\b",
    )
)


@dataclass
class EnrichedResult:
    result: SearchResult
    page_text: str | None = None


@dataclass
class SearchAugmentation:
    """Search results and the prompt context built from them."""

    query: str
    results: list[SearchResult]
    context: str

    def records(self) -> list[dict[str, str]]:
        return [result.to_record() for result in self.results]


class SearchAugmenter:
    """Best-effort search fan-out with optional page enrichment."""

    def __init__(
        self,
        search_client: SearchClient,
        fetcher: ContentFetcher | None,
        config: SearchConfig,
        instructions: InstructionLoader | None = None,
    ):
        self.search_client = search_client
        self.fetcher = fetcher
        self.config = config
        self.instructions = instructions or InstructionLoader()

    def should_auto_search(self, prompt: str, include_web_search: bool = False) -> bool:
        if include_web_search:
            return True
        if not self.config.auto_search:
            return False
        text = (prompt or "").strip()
        if not text:
            return False
        return any(pattern.search(text) for pattern in AUTO_SEARCH_PATTERNS)

    async def gather(self, query: str) -> list[SearchResult]:
        """Search, returning an empty list when search is unavailable."""
        try:
            return await self.search_client.search(query[:MAX_QUERY_CHARS])
        except SearchProviderUnavailable as e:
            log.info("Search unavailable, continuing without results", error=str(e))
            return []

    async def enrich(self, results: list[SearchResult]) -> list[EnrichedResult]:
        """Fetch page text for the top results with bounded concurrency."""
        top = results[: max(0, int(self.config.enrich_count))]
        enriched = [EnrichedResult(result=result) for result in results]
        if self.fetcher is None or not top:
            return enriched

        semaphore = asyncio.Semaphore(max(1, int(self.config.enrich_concurrency)))

        async def _fetch(item: EnrichedResult) -> None:
            if not item.result.link:
                return
            async with semaphore:
                try:
                    item.page_text = await self.fetcher.fetch_text(item.result.link)
                except Exception as e:
                    log.warning("Enrichment fetch failed", url=item.result.link, error=str(e))

        await asyncio.gather(*(_fetch(item) for item in enriched[: len(top)]))
        return enriched

    def build_context(self, query: str, enriched: list[EnrichedResult]) -> str:
        blocks: list[str] = []
        for idx, item in enumerate(enriched, start=1):
            result = item.result
            lines = [f"[{idx}] {result.title}", f"URL: {result.link}"]
            if result.snippet:
                lines.append(f"Snippet: {result.snippet}")
            if item.page_text:
                lines.append(f"Content:\n{item.page_text}")
            blocks.append("\n".join(lines))
        return self.instructions.render(
            "search_context.md",
            query=query,
            search_context="\n\n".join(blocks),
        )

    async def augment(self, prompt: str) -> SearchAugmentation | None:
        """Run the full search path; None when nothing was found."""
        query = (prompt or "").strip()[:MAX_QUERY_CHARS]
        if not query:
            return None
        results = await self.gather(query)
        if not results:
            return None
        enriched = await self.enrich(results)
        log.info(
            "Search augmentation ready",
            results=len(results),
            enriched=sum(1 for item in enriched if item.page_text),
        )
        return SearchAugmentation(
            query=query,
            results=results,
            context=self.build_context(query, enriched),
        )
