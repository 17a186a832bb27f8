"""External web content retrieval with bounded timeouts and a 24h cache."""

from __future__ import annotations

import asyncio
import html as html_lib
import ipaddress
import math
import re
import socket
from collections import Counter
from typing import Awaitable, Callable

import httpx
from loguru import logger

from pickleai.config import ContentConfig
from pickleai.exceptions import BlockedURLError, UpstreamError, UpstreamTimeout
from pickleai.optimizer import RequestOptimizer, ResponseCache
from pickleai.types import ContentSummary, WebContent, WebLink

_CACHE_NAMESPACE = "web:"
_MAX_CONTENT_CHARS = 5000
_MAX_LINKS = 20
_ALLOWED_SCHEMES = ("http", "https")

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"[.!?]+")
_TITLE_RE = re.compile(r"<title\b[^<]*(?:(?!</title>)<[^<]*)*</title>", re.IGNORECASE)
_H1_RE = re.compile(r"<h1\b[^<]*(?:(?!</h1>)<[^<]*)*</h1>", re.IGNORECASE)
_LINK_RE = re.compile(r"""<a\s+[^>]*href=["']([^"']+)["'][^>]*>([^<]+)</a>""", re.IGNORECASE)
_IMG_RE = re.compile(r"""<img\s+[^>]*src=["']([^"']+)["']""", re.IGNORECASE)
_SCHEMA_DATE_RE = re.compile(r'"datePublished":\s*"([^"]+)"')

RESOURCE_EXTENSIONS = (".pdf", ".doc", ".xls", ".zip", ".mp4", ".jpg", ".png")

COMMON_WORDS = frozenset(
    "the a an and or but in on at to for of with by from is are be been have has "
    "do does did will would could should may might must can that this as if "
    "because while when".split()
)
POSITIVE_WORDS = ("good", "great", "excellent", "amazing", "love", "best", "awesome", "fantastic")
NEGATIVE_WORDS = ("bad", "terrible", "hate", "worst", "poor", "awful", "horrible", "disappointing")


def _meta(attr: str, name: str) -> re.Pattern[str]:
    return re.compile(
        rf"""<meta\s+{attr}=["']{re.escape(name)}["']\s+content=["']([^"']+)["']""",
        re.IGNORECASE,
    )


_OG_TITLE = _meta("property", "og:title")
_OG_DESC = _meta("property", "og:description")
_OG_IMAGE = _meta("property", "og:image")
_OG_PUBLISHED = _meta("property", "og:article:published_time")
_META_DESC = _meta("name", "description")
_META_AUTHOR = _meta("name", "author")


# --- Address checks ---

Resolver = Callable[[str, int], Awaitable[list[str]]]


async def resolve_host(host: str, port: int) -> list[str]:
    infos = await asyncio.get_running_loop().getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def is_public_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return address.is_global and not address.is_multicast


# --- HTML extraction ---

def _strip_tags(fragment: str) -> str:
    return html_lib.unescape(_TAG_RE.sub("", fragment)).strip()


def extract_title(page: str) -> str:
    m = _TITLE_RE.search(page)
    if m:
        return _strip_tags(m.group(0))
    m = _OG_TITLE.search(page)
    if m:
        return m.group(1)
    m = _H1_RE.search(page)
    if m:
        return _strip_tags(m.group(0))
    return "Untitled"


def extract_description(page: str) -> str:
    for pattern in (_OG_DESC, _META_DESC):
        m = pattern.search(page)
        if m:
            return m.group(1)
    return ""


def extract_image_url(page: str) -> str | None:
    for pattern in (_OG_IMAGE, _IMG_RE):
        m = pattern.search(page)
        if m:
            return m.group(1)
    return None


def extract_author(page: str) -> str | None:
    m = _META_AUTHOR.search(page)
    return m.group(1) if m else None


def extract_publish_date(page: str) -> str | None:
    for pattern in (_OG_PUBLISHED, _SCHEMA_DATE_RE):
        m = pattern.search(page)
        if m:
            return m.group(1)
    return None


def extract_main_content(page: str) -> str:
    text = _SCRIPT_RE.sub("", page)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    text = html_lib.unescape(text)
    return _WS_RE.sub(" ", text).strip()[:_MAX_CONTENT_CHARS]


def link_type(url: str) -> str:
    if not url.startswith("http"):
        return "internal"
    lowered = url.lower()
    if any(ext in lowered for ext in RESOURCE_EXTENSIONS):
        return "resource"
    return "external"


def extract_links(page: str) -> list[WebLink]:
    seen: set[tuple[str, str]] = set()
    links: list[WebLink] = []
    for m in _LINK_RE.finditer(page):
        url = m.group(1)
        text = html_lib.unescape(m.group(2)).strip()
        if not text or not url or (text, url) in seen:
            continue
        seen.add((text, url))
        links.append(WebLink(text=text, url=url, type=link_type(url)))
        if len(links) >= _MAX_LINKS:
            break
    return links


# --- Text analysis ---

def _sentences(text: str, min_len: int) -> list[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text) if len(s.strip()) > min_len]


def _word_frequencies(text: str, min_len: int) -> Counter:
    return Counter(
        w for w in text.lower().split()
        if len(w) > min_len and w not in COMMON_WORDS
    )


def generate_summary(content: str) -> str:
    """Extractive summary: the top 30% of sentences by keyword weight, in page order."""
    if not content:
        return ""
    sentences = _sentences(content, 10)
    if not sentences:
        return content[:200]

    freq = _word_frequencies(content, 3)
    scored = [
        (sum(freq.get(w, 0) for w in s.lower().split()), i, s)
        for i, s in enumerate(sentences)
    ]
    keep = math.ceil(len(sentences) * 0.3)
    top = sorted(scored, key=lambda t: -t[0])[:keep]
    ordered = [s for _, _, s in sorted(top, key=lambda t: t[1])]
    return ". ".join(ordered)[:500] + "..."


def extract_key_points(content: str) -> list[str]:
    return _sentences(content, 20)[:5]


def extract_topics(content: str) -> list[str]:
    return [w for w, _ in _word_frequencies(content, 5).most_common(5)]


def analyze_sentiment(content: str) -> str:
    lowered = content.lower()
    positive = sum(lowered.count(w) for w in POSITIVE_WORDS)
    negative = sum(lowered.count(w) for w in NEGATIVE_WORDS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


class WebContentRetriever:
    """Fetches pages, extracts metadata and links, and summarizes text.

    Successful retrievals are cached for ``cache_ttl`` seconds. A fetch that
    exceeds ``request_timeout`` raises ``UpstreamTimeout``; other HTTP
    failures raise ``UpstreamError``. Neither is cached.

    Only http(s) URLs whose host resolves to public addresses are fetched,
    and every redirect hop is checked again before it is followed. Other URLs
    raise ``BlockedURLError``. Bodies larger than ``max_body_bytes`` are
    rejected without being buffered in full.
    """

    def __init__(
        self,
        cache: ResponseCache,
        config: ContentConfig | None = None,
        optimizer: RequestOptimizer | None = None,
        client: httpx.AsyncClient | None = None,
        resolver: Resolver = resolve_host,
    ) -> None:
        self.cache = cache
        self.config = config or ContentConfig()
        self.optimizer = optimizer
        self._client = client
        self._resolver = resolver

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(headers={"User-Agent": self.config.user_agent})
        return self._client

    async def retrieve_content(self, url: str) -> WebContent:
        key = f"{_CACHE_NAMESPACE}{url}"
        if self.optimizer is not None:
            raw = await self.optimizer.cached_request(
                key, "contentRetrieval", lambda: self._fetch_serialized(url), ttl=self.config.cache_ttl,
            )
            return WebContent.model_validate(raw)

        cached = self.cache.get(key)
        if cached is not None:
            return WebContent.model_validate(cached)
        raw = await self._fetch_serialized(url)
        self.cache.set(key, raw, self.config.cache_ttl)
        return WebContent.model_validate(raw)

    async def _fetch_serialized(self, url: str) -> dict:
        content = await self.fetch_and_parse(url)
        return content.model_dump(mode="json")

    async def fetch_and_parse(self, url: str) -> WebContent:
        page = await self._fetch_page(url)
        content = extract_main_content(page)
        return WebContent(
            url=url,
            title=extract_title(page),
            description=extract_description(page),
            content=content,
            summary=generate_summary(content),
            image_url=extract_image_url(page),
            publish_date=extract_publish_date(page),
            author=extract_author(page),
            live_links=extract_links(page),
        )

    async def _fetch_page(self, url: str) -> str:
        client = await self._get_client()
        try:
            resp = await self._open(client, "GET", url, self.config.request_timeout)
            try:
                if not resp.is_success:
                    raise UpstreamError(
                        f"HTTP {resp.status_code} fetching {url}",
                        retryable=resp.status_code >= 500,
                    )
                return await self._read_capped(resp, url)
            finally:
                await resp.aclose()
        except httpx.TimeoutException as e:
            logger.warning("Content fetch timed out for {}", url)
            raise UpstreamTimeout(f"fetching {url} timed out after {self.config.request_timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Content fetch failed for {}: {}", url, e)
            raise UpstreamError(f"fetching {url} failed: {e}") from e

    async def check_url(self, url: str) -> httpx.URL:
        """Return the parsed URL, or raise ``BlockedURLError`` if it may not be fetched."""
        try:
            target = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise BlockedURLError(f"Invalid URL: {url}") from e
        if target.scheme not in _ALLOWED_SCHEMES:
            raise BlockedURLError(f"URL scheme not allowed: {target.scheme or 'none'}")
        if not target.host:
            raise BlockedURLError("URL has no host")
        if self.config.allow_private_networks:
            return target

        try:
            addresses = [ipaddress.ip_address(target.host)]
        except ValueError:
            port = target.port or (443 if target.scheme == "https" else 80)
            try:
                resolved = await self._resolver(target.host, port)
            except OSError as e:
                raise UpstreamError(f"could not resolve {target.host}: {e}", retryable=False) from e
            addresses = [ipaddress.ip_address(a.split("%", 1)[0]) for a in resolved]
        if not addresses:
            raise UpstreamError(f"could not resolve {target.host}", retryable=False)
        for address in addresses:
            if not is_public_address(address):
                logger.warning("Blocked fetch of {}: {} is not a public address", url, address)
                raise BlockedURLError(f"URL host is not allowed: {target.host}")
        return target

    async def _open(
        self, client: httpx.AsyncClient, method: str, url: str, timeout: float,
    ) -> httpx.Response:
        """Send ``method`` and follow redirects by hand, checking each hop."""
        target = await self.check_url(url)
        for _ in range(self.config.max_redirects + 1):
            request = client.build_request(method, target, timeout=timeout)
            resp = await client.send(request, stream=True, follow_redirects=False)
            location = resp.headers.get("location")
            if not resp.is_redirect or not location:
                return resp
            await resp.aclose()
            target = await self.check_url(str(target.join(location)))
        raise UpstreamError(f"too many redirects fetching {url}", retryable=False)

    async def _read_capped(self, resp: httpx.Response, url: str) -> str:
        limit = self.config.max_body_bytes
        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise UpstreamError(f"{url} is larger than {limit} bytes", retryable=False)
        body = bytearray()
        async for chunk in resp.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise UpstreamError(f"{url} is larger than {limit} bytes", retryable=False)
        try:
            return body.decode(resp.encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    async def validate_url(self, url: str) -> bool:
        client = await self._get_client()
        try:
            resp = await self._open(client, "HEAD", url, self.config.validate_timeout)
        except (httpx.HTTPError, UpstreamError, BlockedURLError):
            return False
        await resp.aclose()
        return resp.is_success

    async def validate_urls(self, urls: list[str]) -> dict[str, bool]:
        results = await asyncio.gather(*(self.validate_url(u) for u in urls))
        return dict(zip(urls, results))

    async def get_content_summary(self, url: str) -> ContentSummary:
        page = await self.retrieve_content(url)
        return ContentSummary(
            original_length=len(page.content),
            summary_length=len(page.summary),
            key_points=extract_key_points(page.content),
            topics=extract_topics(page.content),
            sentiment=analyze_sentiment(page.content),
        )

    def clear_cache(self) -> int:
        return self.cache.clear_all(_CACHE_NAMESPACE)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
