"""
Page fetching and HTML extraction.

PageFetcher turns one URL into one CrawledPage (or a FetchFailure).
extract_page() is pure: HTML in, CrawledPage out, so it is tested
without any network.
"""

from __future__ import annotations

import hashlib
import re
from urllib.parse import urldefrag, urljoin, urlparse

import structlog
from bs4 import BeautifulSoup

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import ParseError
from siteaudit.core.http import FetchFailure, FetchGateway
from siteaudit.engines.base import (
    CrawledPage,
    HreflangTag,
    PageImage,
    PageLink,
    hosts_match,
)

logger = structlog.get_logger(__name__)

NON_CONTENT_TAGS = ["script", "style", "noscript", "template"]
SKIPPED_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:")

_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^\w\s]", re.ASCII)


# ─────────────────────────────────────────────
# Text helpers
# ─────────────────────────────────────────────

def normalize_text(text: str) -> str:
    text = _WHITESPACE_RE.sub(" ", text.lower())
    return _NON_WORD_RE.sub("", text).strip()


def content_fingerprint(text: str) -> str:
    """md5 of the normalized rendered text; equal text modulo case/punctuation/spacing → equal hash."""
    return hashlib.md5(normalize_text(text).encode("utf-8")).hexdigest()


def _clean(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _robots_directives(content: str) -> frozenset[str]:
    return frozenset(d.strip().lower() for d in content.split(",") if d.strip())


# ─────────────────────────────────────────────
# Extraction
# ─────────────────────────────────────────────

def extract_page(
    url: str,
    html: str,
    status_code: int = 200,
    depth: int = 0,
    final_url: str | None = None,
    x_robots_tag: str | None = None,
    load_time_ms: float = 0.0,
    page_size_bytes: int = 0,
    redirect_count: int = 0,
) -> CrawledPage:
    """Extract the SEO-relevant facts of one HTML document."""
    soup = BeautifulSoup(html, "lxml")
    base_url = final_url or url

    base_tag = soup.find("base", href=True)
    if base_tag:
        base_url = urljoin(base_url, base_tag["href"].strip())

    page_host = urlparse(final_url or url).hostname or ""

    title_tag = soup.find("title")
    title = _clean(title_tag.get_text()) if title_tag else ""

    meta_description = ""
    meta_robots = ""
    for tag in soup.find_all("meta"):
        name = (tag.get("name") or "").strip().lower()
        content = tag.get("content") or ""
        if name == "description" and not meta_description:
            meta_description = _clean(content)
        elif name == "robots" and not meta_robots:
            meta_robots = content.strip()

    h1_tag = soup.find("h1")
    h1 = _clean(h1_tag.get_text(" ")) if h1_tag else ""
    heading_counts = {f"h{level}": len(soup.find_all(f"h{level}")) for level in range(1, 7)}

    canonical_url = None
    canonical = soup.find("link", rel="canonical", href=True)
    if canonical and canonical["href"].strip():
        canonical_url = urljoin(base_url, canonical["href"].strip())

    hreflang = [
        HreflangTag(hreflang=link["hreflang"].strip(), href=urljoin(base_url, link["href"].strip()))
        for link in soup.find_all("link", rel="alternate", hreflang=True, href=True)
    ]

    images = []
    for img in soup.find_all("img"):
        alt = img.get("alt")
        images.append(PageImage(
            src=img.get("src") or img.get("data-src") or "",
            alt=alt or "",
            has_alt=bool(alt and alt.strip()),
            lazy=(img.get("loading") or "").lower() == "lazy" or img.has_attr("data-src"),
        ))

    internal_links: list[PageLink] = []
    external_links: list[PageLink] = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
            continue
        resolved, _ = urldefrag(urljoin(base_url, href))
        parsed = urlparse(resolved)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            continue
        rel = a.get("rel") or []
        link = PageLink(
            url=resolved,
            anchor_text=_clean(a.get_text(" ")),
            title=a.get("title"),
            rel=" ".join(rel) if isinstance(rel, list) else str(rel),
        )
        if hosts_match(parsed.hostname, page_host):
            internal_links.append(link)
        else:
            external_links.append(link)

    # Rendered text last: decompose() mutates the tree
    for tag in soup(NON_CONTENT_TAGS):
        tag.decompose()
    body = soup.body or soup
    text = body.get_text(" ")
    word_count = len(text.split())

    return CrawledPage(
        url=url,
        final_url=final_url or url,
        status_code=status_code,
        depth=depth,
        title=title,
        meta_description=meta_description,
        h1=h1,
        canonical_url=canonical_url,
        meta_robots=meta_robots,
        meta_robots_directives=_robots_directives(meta_robots),
        x_robots_tag=sorted(_robots_directives(x_robots_tag or "")),
        heading_counts=heading_counts,
        word_count=word_count,
        content_fingerprint=content_fingerprint(text),
        images=images,
        internal_links=internal_links,
        external_links=external_links,
        hreflang=hreflang,
        load_time_ms=load_time_ms,
        page_size_bytes=page_size_bytes,
        redirect_count=redirect_count,
        is_indexable=status_code == 200 and "noindex" not in meta_robots.lower(),
    )


# ─────────────────────────────────────────────
# Fetcher
# ─────────────────────────────────────────────

class PageFetcher:
    """Fetch a page through the gateway (following redirects) and extract it."""

    def __init__(self, gateway: FetchGateway, timeout_ms: int | None = None):
        self.gateway = gateway
        self.timeout_ms = get_settings().CRAWLER_REQUEST_TIMEOUT_MS if timeout_ms is None else timeout_ms

    async def fetch(self, url: str, depth: int = 0) -> CrawledPage | FetchFailure:
        result = await self.gateway.fetch(url, timeout_ms=self.timeout_ms, follow_redirects=True)
        if isinstance(result, FetchFailure):
            logger.debug("Page fetch failed", url=url, kind=result.kind.value, error=result.message)
            return result

        if not result.ok:
            return CrawledPage(
                url=url,
                final_url=result.final_url or url,
                status_code=result.status_code,
                depth=depth,
                load_time_ms=result.elapsed_ms,
                page_size_bytes=result.size_bytes,
                redirect_count=result.redirect_count,
                is_indexable=False,
            )

        try:
            return self._extract(
                url,
                result.body,
                status_code=result.status_code,
                depth=depth,
                final_url=result.final_url or url,
                x_robots_tag=result.header("x-robots-tag"),
                load_time_ms=result.elapsed_ms,
                page_size_bytes=result.size_bytes,
                redirect_count=result.redirect_count,
            )
        except ParseError as e:
            logger.warning("HTML parse error", url=url, error=e.args[0])
            return CrawledPage(
                url=url,
                final_url=result.final_url or url,
                status_code=result.status_code,
                depth=depth,
                load_time_ms=result.elapsed_ms,
                page_size_bytes=result.size_bytes,
                redirect_count=result.redirect_count,
                is_indexable=result.status_code == 200,
            )

    @staticmethod
    def _extract(url: str, html: str, **kwargs) -> CrawledPage:
        try:
            return extract_page(url, html, **kwargs)
        except (RecursionError, ValueError, TypeError) as exc:
            raise ParseError(f"Unparseable HTML at {url}: {exc}") from exc
