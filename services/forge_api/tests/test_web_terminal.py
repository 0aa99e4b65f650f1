from __future__ import annotations

import asyncio
import sys

import httpx
import pytest

from services.forge_api.app.terminal import CommandFailed, run_terminal_command
from services.forge_api.app.web import DuckDuckGoSearcher, RateLimiter, extract_page, parse_ddg_results, read_url


DDG_HTML = """
<div class="result">
  <h2 class="result__title"><a href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fdocs&rut=abc">Example Docs</a></h2>
  <a class="result__snippet">The official docs.</a>
</div>
<div class="result">
  <h2 class="result__title"><a href="https://duckduckgo.com/y.js?ad=1">Sponsored</a></h2>
</div>
<div class="result">
  <h2 class="result__title"><a href="https://python.org/">Python</a></h2>
</div>
"""


def test_parse_ddg_results_unwraps_links_and_skips_ads() -> None:
    results = parse_ddg_results(DDG_HTML)
    assert [(r.title, r.link, r.position) for r in results] == [
        ("Example Docs", "https://example.com/docs", 1),
        ("Python", "https://python.org/", 2),
    ]
    assert results[0].snippet == "The official docs."
    assert results[1].snippet == ""
    assert len(parse_ddg_results(DDG_HTML, max_results=1)) == 1


def test_extract_page_strips_chrome() -> None:
    html = (
        "<html><head><style>.x{}</style></head><body><nav>Menu</nav>"
        "<p>Hello   <b>world</b></p><script>var x;</script><a href='/next'>next</a>"
        "<footer>bye</footer></body></html>"
    )
    page = extract_page(html)
    assert page["content"] == "Hello world next"
    assert page["links"] == ["/next"]


def test_read_url_and_search_through_mock_transport() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            return httpx.Response(200, text=DDG_HTML)
        return httpx.Response(200, text="<body><p>Page body</p></body>")

    async def run() -> tuple[dict, list]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            page = await read_url("https://example.com/", client=client)
            results = await DuckDuckGoSearcher(client=client).search("python docs")
            return page, results

    page, results = asyncio.run(run())
    assert page["content"] == "Page body"
    assert results[0]["link"] == "https://example.com/docs"
    assert seen[1].url.host == "html.duckduckgo.com"
    assert b"q=python+docs" in seen[1].content


def test_search_gives_up_after_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await DuckDuckGoSearcher(client=client).search("x", max_retries=2)

    with pytest.raises(RuntimeError, match="after 2 attempts"):
        asyncio.run(run())


def test_rate_limiter_allows_burst_under_limit() -> None:
    async def run() -> None:
        limiter = RateLimiter(requests_per_minute=5)
        for _ in range(5):
            await asyncio.wait_for(limiter.acquire(), timeout=1.0)

    asyncio.run(run())


def test_terminal_command_output_and_failures(tmp_path) -> None:
    py = sys.executable
    out = run_terminal_command(f'"{py}" -c "print(40 + 2)"', str(tmp_path))
    assert out.strip() == "42"

    with pytest.raises(CommandFailed, match="exit code 3"):
        run_terminal_command(f'"{py}" -c "import sys; sys.exit(3)"', str(tmp_path))

    with pytest.raises(ValueError):
        run_terminal_command("   ", str(tmp_path))
