from __future__ import annotations

import asyncio
import ipaddress

import httpx
import pytest

from pickleai.config import CacheConfig, ContentConfig, OptimizerConfig
from pickleai.content.retrieval import (
    WebContentRetriever,
    analyze_sentiment,
    is_public_address,
    extract_topics,
    generate_summary,
    link_type,
)
from pickleai.exceptions import BlockedURLError, UpstreamError, UpstreamTimeout
from pickleai.optimizer import RequestOptimizer, ResponseCache
from pickleai.storage.kv_store import MemoryKVStore

PAGE = """<html><head>
<title>Kitchen Rules &amp; Tips</title>
<meta name="description" content="Everything about the non-volley zone">
<meta name="author" content="Coach Dana">
<script>var note = "<b>hidden</b> secret";</script>
<style>p { color: green; }</style>
</head><body>
<h1>The Kitchen</h1>
<p>The kitchen is the best place to learn patience at the net.
Great players never volley while standing inside the kitchen.
Dinking keeps the rally slow and forces mistakes from opponents.
Short answer: stay behind the line!</p>
<a href="/rules">Rules</a>
<a href="/rules">Rules</a>
<a href="https://cdn.example.com/guide.pdf">Printable guide</a>
<a href="https://usapickleball.org">USA Pickleball</a>
</body></html>"""


HOSTS = {
    "example.com": ["93.184.216.34"],
    "down.example.com": ["93.184.216.35"],
    "cdn.example.com": ["2606:2800:220:1::1"],
    "intranet.example.com": ["10.1.2.3"],
    "sneaky.example.com": ["93.184.216.36", "::ffff:127.0.0.1"],
}


async def _resolve(host: str, port: int) -> list[str]:
    if host not in HOSTS:
        raise OSError(f"unknown host {host}")
    return HOSTS[host]


def _retriever(
    handler, optimizer: bool = False, **cfg,
) -> tuple[WebContentRetriever, ResponseCache]:
    cache = ResponseCache(MemoryKVStore(), CacheConfig(enabled=True))
    opt = RequestOptimizer(cache, OptimizerConfig()) if optimizer else None
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    retriever = WebContentRetriever(
        cache, ContentConfig(**cfg), optimizer=opt, client=client, resolver=_resolve,
    )
    return retriever, cache


def test_page_metadata_links_and_content():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, _ = _retriever(handler)
        page = await retriever.fetch_and_parse("https://example.com/kitchen")
        await retriever.close()
        return page

    page = asyncio.run(_run())
    assert page.title == "Kitchen Rules & Tips"
    assert page.description == "Everything about the non-volley zone"
    assert page.author == "Coach Dana"
    assert "secret" not in page.content
    assert "color" not in page.content
    assert page.content.startswith("Kitchen Rules & Tips")
    assert [(l.text, l.type) for l in page.live_links] == [
        ("Rules", "internal"),
        ("Printable guide", "resource"),
        ("USA Pickleball", "external"),
    ]
    assert page.summary.endswith("...")


def test_retrieval_is_cached():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, _ = _retriever(handler)
        first = await retriever.retrieve_content("https://example.com/kitchen")
        second = await retriever.retrieve_content("https://example.com/kitchen")
        assert first.title == second.title
        assert retriever.clear_cache() == 1
        await retriever.retrieve_content("https://example.com/kitchen")
        await retriever.close()

    asyncio.run(_run())
    assert calls == 2


def test_http_errors_raise_and_are_not_cached():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404, text="missing")

    async def _run():
        retriever, _ = _retriever(handler)
        for _ in range(2):
            with pytest.raises(UpstreamError) as info:
                await retriever.retrieve_content("https://example.com/gone")
            assert info.value.retryable is False
        await retriever.close()

    asyncio.run(_run())
    assert calls == 2


def test_timeout_maps_to_upstream_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    async def _run():
        retriever, _ = _retriever(handler)
        with pytest.raises(UpstreamTimeout):
            await retriever.fetch_and_parse("https://example.com/slow")
        await retriever.close()

    asyncio.run(_run())


def test_validate_urls():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("refused", request=request)
        if request.url.path == "/missing":
            return httpx.Response(404)
        return httpx.Response(200)

    async def _run():
        retriever, _ = _retriever(handler)
        result = await retriever.validate_urls([
            "https://example.com/ok",
            "https://example.com/missing",
            "https://down.example.com/",
        ])
        await retriever.close()
        return result

    assert asyncio.run(_run()) == {
        "https://example.com/ok": True,
        "https://example.com/missing": False,
        "https://down.example.com/": False,
    }


def test_optimizer_path_counts_content_requests():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, _ = _retriever(handler, optimizer=True)
        summary = await retriever.get_content_summary("https://example.com/kitchen")
        await retriever.get_content_summary("https://example.com/kitchen")
        stats = retriever.optimizer.usage_stats()
        await retriever.optimizer.close()
        await retriever.close()
        return summary, stats

    summary, stats = asyncio.run(_run())
    assert summary.sentiment == "positive"
    assert summary.key_points
    assert summary.original_length > summary.summary_length
    assert stats.request_count == {"contentRetrieval": 1}
    assert stats.cache_hits == 1


def test_text_helpers():
    assert generate_summary("") == ""
    assert generate_summary("Hi. Yo.") == "Hi. Yo."
    assert analyze_sentiment("the worst, awful paddle") == "negative"
    assert analyze_sentiment("a paddle") == "neutral"
    assert extract_topics("paddle paddle paddle kitchen kitchen volleys")[:2] == ["paddle", "kitchen"]
    assert link_type("/clubs") == "internal"
    assert link_type("https://example.com/rules.PDF") == "resource"
    assert link_type("https://example.com") == "external"


@pytest.mark.parametrize("url", [
    "http://127.0.0.1/admin",
    "http://169.254.169.254/latest/meta-data/",
    "http://[::1]:8080/",
    "http://10.0.0.7/",
    "http://0.0.0.0/",
    "https://intranet.example.com/wiki",
    "https://sneaky.example.com/",
    "ftp://example.com/file.txt",
    "file:///etc/passwd",
    "example.com/kitchen",
])
def test_internal_or_non_http_urls_are_never_requested(url):
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, cache = _retriever(handler)
        with pytest.raises(BlockedURLError):
            await retriever.retrieve_content(url)
        assert await retriever.validate_url(url) is False
        await retriever.close()
        return cache

    cache = asyncio.run(_run())
    assert requested == []
    assert cache.kv.keys("ai_cache:") == []


def test_redirect_to_internal_address_is_blocked():
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.path == "/hop":
            return httpx.Response(302, headers={"Location": "/kitchen"})
        if request.url.path == "/kitchen":
            return httpx.Response(200, text=PAGE)
        return httpx.Response(302, headers={"Location": "http://169.254.169.254/latest/meta-data/"})

    async def _run():
        retriever, _ = _retriever(handler)
        page = await retriever.fetch_and_parse("https://example.com/hop")
        with pytest.raises(BlockedURLError):
            await retriever.fetch_and_parse("https://example.com/escape")
        await retriever.close()
        return page

    page = asyncio.run(_run())
    assert page.title == "Kitchen Rules & Tips"
    assert requested == [
        "https://example.com/hop",
        "https://example.com/kitchen",
        "https://example.com/escape",
    ]


def test_redirect_loops_are_cut_off():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "/again"})

    async def _run():
        retriever, _ = _retriever(handler, max_redirects=3)
        with pytest.raises(UpstreamError, match="too many redirects") as info:
            await retriever.fetch_and_parse("https://example.com/loop")
        await retriever.close()
        return info.value

    assert asyncio.run(_run()).retryable is False


def test_oversized_bodies_are_rejected():
    async def chunks():
        for _ in range(10):
            yield b"<p>" + b"dink " * 40 + b"</p>"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/declared":
            return httpx.Response(200, content=b"x" * 5000)
        if request.url.path == "/streamed":
            return httpx.Response(200, content=chunks())
        return httpx.Response(200, text=PAGE[:900])

    async def _run():
        retriever, _ = _retriever(handler, max_body_bytes=1024)
        for path in ("/declared", "/streamed"):
            with pytest.raises(UpstreamError, match="larger than 1024 bytes") as info:
                await retriever.fetch_and_parse(f"https://example.com{path}")
            assert info.value.retryable is False
        small = await retriever.fetch_and_parse("https://example.com/small")
        await retriever.close()
        return small

    assert asyncio.run(_run()).title == "Kitchen Rules & Tips"


def test_unresolvable_host_is_an_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, _ = _retriever(handler)
        with pytest.raises(UpstreamError, match="could not resolve"):
            await retriever.fetch_and_parse("https://nowhere.invalid/")
        await retriever.close()

    asyncio.run(_run())


def test_private_networks_can_be_allowed_explicitly():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=PAGE)

    async def _run():
        retriever, _ = _retriever(handler, allow_private_networks=True)
        page = await retriever.fetch_and_parse("http://127.0.0.1:8000/kitchen")
        with pytest.raises(BlockedURLError):
            await retriever.fetch_and_parse("gopher://127.0.0.1/")
        await retriever.close()
        return page

    assert asyncio.run(_run()).title == "Kitchen Rules & Tips"


def test_is_public_address():
    assert is_public_address(ipaddress.ip_address("93.184.216.34"))
    assert is_public_address(ipaddress.ip_address("2606:2800:220:1::1"))
    for private in ("127.0.0.1", "10.0.0.1", "172.16.0.1", "192.168.1.1", "169.254.169.254",
                    "100.64.0.1", "224.0.0.1", "::1", "fe80::1", "fc00::1", "::ffff:10.0.0.1"):
        assert not is_public_address(ipaddress.ip_address(private)), private
