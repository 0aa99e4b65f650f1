from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import asdict, dataclass
import random
import time
from typing import Any
from urllib.parse import unquote

from bs4 import BeautifulSoup
import httpx


DDG_HTML_URL = "https://html.duckduckgo.com/html"
READ_URL_TIMEOUT_S = 30.0
SEARCH_TIMEOUT_S = 30.0
SEARCH_MAX_RESULTS = 10
SEARCH_MAX_RETRIES = 5

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
)

_STRIP_TAGS = ("script", "style", "header", "footer", "nav", "aside")


class RateLimiter:
    """Sliding one-minute window; `acquire()` sleeps until a slot frees up."""

    def __init__(self, requests_per_minute: int = 30) -> None:
        self.requests_per_minute = requests_per_minute
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            while self._stamps and now - self._stamps[0] >= 60.0:
                self._stamps.popleft()
            if len(self._stamps) >= self.requests_per_minute:
                wait_s = 60.0 - (now - self._stamps[0])
                if wait_s > 0:
                    await asyncio.sleep(wait_s)
                self._stamps.popleft()
            self._stamps.append(time.monotonic())


@dataclass(frozen=True)
class SearchResult:
    title: str
    link: str
    snippet: str
    position: int


def extract_page(html: str) -> dict[str, Any]:
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    body = soup.body or soup
    content = " ".join(body.get_text(" ").split())
    links = [str(a.get("href")) for a in soup.find_all("a") if a.get("href")]
    return {"content": content, "links": links}


def unwrap_ddg_link(href: str) -> str:
    link = str(href or "")
    if link.startswith("//duckduckgo.com/l/?uddg=") or "duckduckgo.com/l/?uddg=" in link:
        link = unquote(link.split("uddg=", 1)[1].split("&", 1)[0])
    return link


def parse_ddg_results(html: str, max_results: int = SEARCH_MAX_RESULTS) -> list[SearchResult]:
    soup = BeautifulSoup(html or "", "html.parser")
    results: list[SearchResult] = []
    for block in soup.select(".result"):
        if len(results) >= max_results:
            break
        title_el = block.select_one(".result__title a")
        if title_el is None:
            continue
        href = str(title_el.get("href") or "")
        # Ad redirects.
        if "y.js" in href:
            continue
        snippet_el = block.select_one(".result__snippet")
        results.append(
            SearchResult(
                title=title_el.get_text().strip(),
                link=unwrap_ddg_link(href),
                snippet=snippet_el.get_text().strip() if snippet_el is not None else "",
                position=len(results) + 1,
            )
        )
    return results


async def read_url(url: str, *, client: httpx.AsyncClient | None = None) -> dict[str, Any]:
    target = str(url or "").strip()
    if not target:
        raise ValueError("URL is required")
    owns = client is None
    http = client or httpx.AsyncClient(timeout=READ_URL_TIMEOUT_S, follow_redirects=True)
    try:
        r = await http.get(target, headers={"User-Agent": "Mozilla/5.0"})
        r.raise_for_status()
        return extract_page(r.text)
    finally:
        if owns:
            await http.aclose()


class DuckDuckGoSearcher:
    def __init__(self, *, client: httpx.AsyncClient | None = None, limiter: RateLimiter | None = None) -> None:
        self._client = client
        self.limiter = limiter or RateLimiter()

    async def search(
        self,
        query: str,
        *,
        max_results: int = SEARCH_MAX_RESULTS,
        max_retries: int = SEARCH_MAX_RETRIES,
    ) -> list[dict[str, Any]]:
        q = str(query or "").strip()
        if not q:
            raise ValueError("Query is required")
        owns = self._client is None
        http = self._client or httpx.AsyncClient(timeout=SEARCH_TIMEOUT_S, follow_redirects=True)
        try:
            for attempt in range(1, max_retries + 1):
                await self.limiter.acquire()
                try:
                    r = await http.post(
                        DDG_HTML_URL,
                        data={"q": q, "b": "", "kl": ""},
                        headers={"User-Agent": random.choice(USER_AGENTS)},
                    )
                    r.raise_for_status()
                except httpx.HTTPError as e:
                    if attempt == max_retries:
                        raise RuntimeError(f"Failed to fetch search results after {max_retries} attempts: {e}") from e
                    continue
                results = parse_ddg_results(r.text, max_results=max_results)
                if results:
                    return [asdict(x) for x in results]
            return []
        finally:
            if owns:
                await http.aclose()
