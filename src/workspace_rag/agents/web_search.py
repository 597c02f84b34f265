"""DuckDuckGo web search agent.

The HTML endpoint is tried first; when it fails or yields nothing the
instant-answer API is used instead. Results are rendered one per line as
``title - snippet``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from bs4 import BeautifulSoup

from workspace_rag.agents.base import AgentKind, AgentRequest, AgentResult, SubAgent
from workspace_rag.core.errors import AgentError
from workspace_rag.core.logging import get_logger

logger = get_logger("agents.web_search")

HTML_SEARCH_URL = "https://html.duckduckgo.com/html/"
API_SEARCH_URL = "https://api.duckduckgo.com/"

_RESULT_SELECTORS = ("div.web-result", "div.result", ".links_main")
_TITLE_SELECTOR = "h2 a, .result__title a, h3 a"
_SNIPPET_SELECTOR = ".result__snippet, .snippet"

_HTML_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


@dataclass(frozen=True)
class SearchHit:
    """A single web search result."""

    title: str
    url: str
    snippet: str = ""

    def to_line(self) -> str:
        parts = [p for p in (self.title.strip(), self.snippet.strip()) if p]
        return " - ".join(parts)


def is_valid_url(url: str) -> bool:
    """Result links; DuckDuckGo-internal links other than redirects are skipped."""
    if not url:
        return False
    if "duckduckgo.com" in url and "/l/" not in url:
        return False
    return url.startswith(("https://", "http://", "//"))


def clean_url(url: str) -> str:
    if url.startswith("//"):
        url = "https:" + url
    if url.startswith("http://"):
        url = "https://" + url[len("http://") :]
    return url


def clean_text(html: str | None) -> str:
    if not html or not html.strip():
        return ""
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)


def parse_html_results(html: str, max_results: int) -> list[SearchHit]:
    """Extract results from the HTML endpoint's page."""
    soup = BeautifulSoup(html, "html.parser")
    elements: list[Any] = []
    for selector in _RESULT_SELECTORS:
        elements = soup.select(selector)
        if elements:
            break

    hits: list[SearchHit] = []
    for element in elements:
        title_el = element.select_one(_TITLE_SELECTOR)
        if title_el is None:
            continue
        title = title_el.get_text(" ", strip=True)
        url = str(title_el.get("href") or "")
        if not title or not is_valid_url(url):
            continue
        snippet_el = element.select_one(_SNIPPET_SELECTOR)
        snippet = snippet_el.get_text(" ", strip=True) if snippet_el else ""
        hits.append(SearchHit(title=title, url=clean_url(url), snippet=snippet))
        if len(hits) >= max_results:
            break
    return hits


def parse_api_results(data: dict[str, Any], max_results: int) -> list[SearchHit]:
    """Extract results from the instant-answer API's JSON."""
    hits: list[SearchHit] = []

    abstract = clean_text(data.get("Abstract"))
    abstract_url = str(data.get("AbstractURL") or "").strip()
    if abstract and abstract_url:
        hits.append(SearchHit("Abstract", abstract_url, abstract))

    answer = clean_text(str(data.get("Answer") or ""))
    if answer:
        hits.append(SearchHit("Answer", "https://duckduckgo.com", answer))

    def add_topics(nodes: Any) -> None:
        if not isinstance(nodes, list):
            return
        for node in nodes:
            if not isinstance(node, dict):
                continue
            if "Text" in node:
                title = clean_text(node.get("Text"))
                url = str(node.get("FirstURL") or "").strip()
                if title and url:
                    hits.append(SearchHit(title, url))
            elif "Topics" in node:
                add_topics(node["Topics"])

    add_topics(data.get("Results"))
    add_topics(data.get("RelatedTopics"))
    return hits[:max_results]


class WebSearchAgent(SubAgent):
    """Searches the web with DuckDuckGo."""

    def __init__(
        self,
        max_results: int = 2,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_results = max_results
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def kind(self) -> AgentKind:
        return AgentKind.WEB_SEARCH

    @property
    def description(self) -> str:
        return "Searches the web (DuckDuckGo) and returns titles with snippets"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def search(self, query: str) -> list[SearchHit]:
        """Search, falling back to the instant-answer API.

        Raises:
            AgentError: If both endpoints fail.
        """
        try:
            hits = await self._html_search(query)
            if hits:
                return hits
            logger.debug("HTML search returned no results, trying the API")
        except httpx.HTTPError as e:
            logger.debug(f"HTML search failed ({e}), trying the API")

        try:
            return await self._api_search(query)
        except (httpx.HTTPError, ValueError) as e:
            raise AgentError(f"Web search failed: {e}") from e

    async def _html_search(self, query: str) -> list[SearchHit]:
        response = await self._get_client().post(
            HTML_SEARCH_URL,
            data={"q": query, "b": "", "kl": "us-en"},
            headers=_HTML_HEADERS,
        )
        response.raise_for_status()
        return parse_html_results(response.text, self.max_results)

    async def _api_search(self, query: str) -> list[SearchHit]:
        response = await self._get_client().get(
            API_SEARCH_URL,
            params={
                "q": query,
                "format": "json",
                "no_html": "1",
                "skip_disambig": "1",
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Unexpected API response")
        return parse_api_results(data, self.max_results)

    async def run(self, request: AgentRequest) -> AgentResult:
        query = request.query.strip()
        if not query:
            raise AgentError("Empty web search query")
        hits = await self.search(query)
        if not hits:
            return AgentResult.fail(AgentKind.WEB_SEARCH, f"No web results for {query!r}")
        return AgentResult.ok(
            AgentKind.WEB_SEARCH,
            "\n".join(hit.to_line() for hit in hits),
            result_count=len(hits),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
