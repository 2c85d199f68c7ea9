"""
Web-related tool implementations.

Provides a live web search backed by DuckDuckGo's keyless instant answer
API (with a scrape of the HTML results page when the API has nothing) and
a URL fetch that strips markup. HTTP is done with `requests` in a worker
thread so the event loop keeps running.
"""

import asyncio
import logging
from typing import Any, Dict, List

import requests
from bs4 import BeautifulSoup

from relay.tools.base import Tool, ToolResult, require, truncate

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; relay-agent/0.1)"

NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]


def strip_markup(raw: str) -> str:
    """Visible text of an HTML document, one line per text node."""
    soup = BeautifulSoup(raw, "html.parser")
    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()
    return soup.get_text(separator="\n", strip=True)


class WebFetchTool(Tool):
    """
    Fetch a URL and return its content as plain text.

    Tool input schema:
    {
        "url": "https://example.com",
        "maxChars": 10000
    }
    """

    def __init__(self, timeout: float = 15.0) -> None:
        super().__init__(
            name="web_fetch",
            description=(
                "Fetch a URL and return the content as text. Use for: reading web pages, "
                "APIs and documentation."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "URL to fetch (http or https)"},
                    "maxChars": {
                        "type": "number",
                        "description": "Maximum characters to return (default: 10000)",
                    },
                },
                "required": ["url"],
            },
        )
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "WebFetchTool":
        return cls(timeout=float(cfg.get("timeout", 15)))

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        url = str(require(tool_input, "url"))
        max_chars = int(tool_input.get("maxChars") or 10000)
        if not url.startswith(("http://", "https://")):
            return self.fail("Fetch failed: only http and https URLs are supported.")
        try:
            resp = await asyncio.to_thread(
                requests.get, url, timeout=self.timeout, headers={"User-Agent": USER_AGENT}
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            return self.fail(f"Fetch failed: {exc}")
        text = strip_markup(resp.text)
        return self.ok(truncate(text, max_chars, note=False) or "(empty response)")


class WebSearchTool(Tool):
    """
    Perform a live web search without an API key.

    The DuckDuckGo instant answer API is tried first; when it returns no
    abstract and no related topics, the HTML results page is scraped.
    """

    API_URL = "https://api.duckduckgo.com/"
    HTML_URL = "https://html.duckduckgo.com/html/"

    def __init__(self, timeout: float = 15.0, max_results: int = 5) -> None:
        super().__init__(
            name="web_search",
            description=(
                "Search the web and return results. Use for: looking up information, "
                "finding answers, research."
            ),
            parameters={
                "type": "object",
                "properties": {"query": {"type": "string", "description": "Search query"}},
                "required": ["query"],
            },
        )
        self.timeout = timeout
        self.max_results = max_results

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "WebSearchTool":
        return cls(
            timeout=float(cfg.get("timeout", 15)),
            max_results=int(cfg.get("num_results", 5)),
        )

    def _instant_answer(self, query: str) -> List[str]:
        resp = requests.get(
            self.API_URL,
            params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1},
            headers={"User-Agent": USER_AGENT},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError:
            return []
        lines: List[str] = []
        if data.get("AbstractText"):
            lines.append(data["AbstractText"])
            if data.get("AbstractURL"):
                lines.append(f"   Source: {data['AbstractURL']}")
        for topic in (data.get("RelatedTopics") or [])[: self.max_results]:
            if topic.get("Text"):
                lines.append(f"- {topic['Text']}")
                if topic.get("FirstURL"):
                    lines.append(f"  {topic['FirstURL']}")
        return lines

    def _scrape(self, query: str) -> List[str]:
        resp = requests.get(
            self.HTML_URL,
            params={"q": query},
            headers={"User-Agent": USER_AGENT},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        soup = BeautifulSoup(resp.text, "html.parser")
        lines: List[str] = []
        for link in soup.select("a.result__a")[: self.max_results]:
            lines.append(f"- {link.get_text(' ', strip=True)}")
            lines.append(f"  {link.get('href', '')}")
        return lines

    def _search(self, query: str) -> List[str]:
        lines = self._instant_answer(query)
        if not lines:
            logger.debug("Instant answer API empty for %r, scraping results page", query)
            lines = self._scrape(query)
        return lines

    async def run(self, tool_input: Dict[str, Any], working_dir: str) -> ToolResult:
        query = str(require(tool_input, "query"))
        try:
            lines = await asyncio.to_thread(self._search, query)
        except requests.RequestException as exc:
            return self.fail(f"Search failed: {exc}")
        if not lines:
            return self.ok(
                f'No results for "{query}". Try a different query or use web_fetch with a specific URL.'
            )
        return self.ok("\n".join(lines))
