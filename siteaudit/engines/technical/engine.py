"""
Technical Engine

Analyzes the crawled root page:
- HTTP status, redirects, load time and page size
- Heading structure and image alt coverage
- Indexability signals (meta robots, X-Robots-Tag, canonical, hreflang)
- Custom 404 handling, checked with a URL that cannot exist
"""

from __future__ import annotations

from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup

from siteaudit.core.config import get_settings
from siteaudit.core.http import FetchFailure, FetchGateway
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AuditEngine,
    CanonicalInfo,
    CrawledPage,
    HreflangInfo,
    ImageStats,
    Issue,
    MetaRobotsFlags,
    NotFoundPageCheck,
    SiteContext,
    TechnicalFactors,
)
from siteaudit.engines.crawler.engine import URLNormalizer

logger = structlog.get_logger(__name__)

SEARCH_BOX_SELECTOR = 'input[type="search"], input[name*="search"], input[id*="search"]'
NAVIGATION_SELECTOR = "nav, .navigation, .menu"


def meta_robots_flags(page: CrawledPage) -> MetaRobotsFlags:
    directives = page.meta_robots_directives
    return MetaRobotsFlags(
        content=page.meta_robots,
        noindex="noindex" in directives or "none" in directives,
        nofollow="nofollow" in directives or "none" in directives,
        noarchive="noarchive" in directives,
        nosnippet="nosnippet" in directives,
        noimageindex="noimageindex" in directives,
    )


def canonical_info(page: CrawledPage) -> CanonicalInfo:
    if not page.canonical_url:
        return CanonicalInfo(issues=["Missing canonical tag"])
    own = URLNormalizer.normalize(page.url, page.url)
    target = URLNormalizer.normalize(page.canonical_url, page.url)
    info = CanonicalInfo(present=True, url=page.canonical_url, self_referencing=own is not None and own == target)
    if not info.self_referencing:
        info.issues.append("Canonical URL points to a different page")
    return info


def hreflang_info(page: CrawledPage) -> HreflangInfo:
    info = HreflangInfo(present=bool(page.hreflang), tags=list(page.hreflang))
    values = [tag.hreflang.lower() for tag in page.hreflang]
    if len(values) != len(set(values)):
        info.issues.append("Duplicate hreflang values found")
    return info


def image_stats(page: CrawledPage) -> ImageStats:
    with_alt = len([img for img in page.images if img.has_alt])
    return ImageStats(
        total=len(page.images),
        with_alt=with_alt,
        without_alt=len(page.images) - with_alt,
        lazy=len([img for img in page.images if img.lazy]),
    )


def inspect_not_found_page(url: str, status_code: int, html: str) -> NotFoundPageCheck:
    soup = BeautifulSoup(html or "", "lxml")
    body = soup.body or soup
    check = NotFoundPageCheck(
        checked=True,
        url=url,
        status_code=status_code,
        returns_404=status_code == 404,
        has_search_box=bool(soup.select(SEARCH_BOX_SELECTOR)),
        has_navigation=bool(soup.select(NAVIGATION_SELECTOR)) or len(soup.find_all("a")) > 5,
        has_helpful_content=len(body.get_text()) > 200,
    )
    if not check.has_search_box:
        check.recommendations.append("Add a search box to help users find what they're looking for")
    if not check.has_navigation:
        check.recommendations.append("Include navigation menu or important links")
    if not check.has_helpful_content:
        check.recommendations.append("Provide helpful content and suggestions for users")
    return check


class TechnicalEngine(AuditEngine):
    """
    Technical audit of the root page.
    Evaluates protocol-level and markup-level crawl signals.
    """

    ENGINE_NAME = "technical"

    def __init__(self, gateway: FetchGateway, registry: RuleRegistry | None = None):
        super().__init__()
        self.gateway = gateway
        self.registry = registry or get_rule_registry()
        self.settings = get_settings()

    async def run(self, context: SiteContext) -> TechnicalFactors:
        root = context.crawl.root_page if context.crawl else None
        if root is None:
            # Root unreachable is reported by the crawler
            return TechnicalFactors()

        factors = TechnicalFactors(
            http_status=root.status_code,
            redirects=root.redirect_count,
            load_time_ms=root.load_time_ms,
            page_size_bytes=root.page_size_bytes,
            word_count=root.word_count,
            heading_structure=dict(root.heading_counts),
            images=image_stats(root),
            meta_robots=meta_robots_flags(root),
            x_robots_tag=list(root.x_robots_tag),
            canonical=canonical_info(root),
            hreflang=hreflang_info(root),
        )
        factors.not_found_page = await self._check_not_found_page(context)
        factors.issues = self._build_issues(factors, context.pages)
        return factors

    async def _check_not_found_page(self, context: SiteContext) -> NotFoundPageCheck:
        missing_url = urljoin(f"{context.origin}/", self.settings.NOT_FOUND_TEST_PATH.lstrip("/"))
        result = await self.gateway.fetch(missing_url, follow_redirects=True)
        if isinstance(result, FetchFailure):
            self.logger.debug("404 check failed", url=missing_url, error=result.message)
            return NotFoundPageCheck(url=missing_url)
        return inspect_not_found_page(missing_url, result.status_code, result.body)

    def _build_issues(self, factors: TechnicalFactors, pages: list[CrawledPage]) -> list[Issue]:
        issues: list[Issue] = []

        if factors.meta_robots.noindex:
            issues.append(self.registry.build_issue("noindex_directive"))

        if any("noindex" in directive or directive == "none" for directive in factors.x_robots_tag):
            issues.append(self.registry.build_issue("x_robots_noindex"))

        if factors.load_time_ms > self.settings.SLOW_LOAD_ISSUE_MS:
            issues.append(self.registry.build_issue("slow_load_time", load_time_ms=round(factors.load_time_ms)))

        h1_count = factors.heading_structure.get("h1", 0)
        if h1_count == 0:
            issues.append(self.registry.build_issue("missing_h1"))
        elif h1_count > 1:
            issues.append(self.registry.build_issue("multiple_h1", h1_count=h1_count))

        not_found = factors.not_found_page
        if not_found.checked and not_found.status_code is not None and 200 <= not_found.status_code < 300:
            issues.append(self.registry.build_issue(
                "soft_404", affected_urls=[not_found.url], status_code=not_found.status_code,
            ))

        missing_alt = [(p.url, len([i for i in p.images if not i.has_alt])) for p in pages]
        missing_alt = [(url, n) for url, n in missing_alt if n]
        if missing_alt:
            issues.append(self.registry.build_issue(
                "images_missing_alt",
                affected_count=sum(n for _, n in missing_alt),
                affected_urls=[url for url, _ in missing_alt],
            ))

        return issues

    def fallback(self, context: SiteContext, error: Exception) -> TechnicalFactors:
        return TechnicalFactors()
