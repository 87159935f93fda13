"""
Crawler Engine - bounded BFS over same-site links.

Architecture:
- FIFO frontier seeded with the root URL at depth 0
- Visited and queued sets keyed by normalized URL, so each URL is fetched once
- Redirect targets count as visited, so a page reached twice is recorded once
- Strictly sequential: one page in flight at a time
- max_pages bounds visited + frontier, max_depth bounds link distance from root
- robots.txt rules from the robots engine are honoured when enabled
- Optional monotonic deadline checked between iterations
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.http import FetchFailure, FetchGateway
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AuditEngine,
    CrawledPage,
    CrawlSummary,
    EngineStatus,
    Issue,
    SiteContext,
    hosts_match,
)
from siteaudit.engines.page.extractor import PageFetcher

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Data Structures
# ─────────────────────────────────────────────

@dataclass
class CrawlURL:
    """URL in the crawl frontier with metadata."""
    url: str
    depth: int
    parent_url: str | None = None


@dataclass
class CrawlStats:
    """Live crawl statistics."""
    total_queued: int = 0
    total_crawled: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    start_time: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000


# ─────────────────────────────────────────────
# URL Utilities
# ─────────────────────────────────────────────

class URLNormalizer:
    """Normalizes URLs for deduplication and comparison."""

    IGNORED_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "ref", "fbclid", "gclid"}
    IGNORED_EXTENSIONS = {
        ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".css", ".js",
        ".woff", ".woff2", ".ttf", ".zip", ".tar", ".gz", ".mp4", ".mp3", ".wav", ".xml",
    }

    @classmethod
    def normalize(cls, url: str, base_url: str) -> str | None:
        """
        Normalize a URL relative to base_url.
        Returns None if URL should be skipped.
        """
        try:
            url = urljoin(base_url, url.strip())
            parsed = urlparse(url)
        except ValueError:
            return None

        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return None

        path_lower = parsed.path.lower()
        if any(path_lower.endswith(ext) for ext in cls.IGNORED_EXTENSIONS):
            return None

        query = ""
        if parsed.query:
            params = parse_qsl(parsed.query, keep_blank_values=True)
            query = urlencode([(k, v) for k, v in params if k not in cls.IGNORED_PARAMS])

        # Trailing slash removed for non-root paths; empty path becomes "/"
        path = parsed.path or "/"
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/") or "/"

        return urlunparse((
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            path,
            parsed.params,
            query,
            "",  # No fragment
        ))

    @classmethod
    def is_same_domain(cls, url: str, root_host: str) -> bool:
        """Same host as the root, `www.` prefix ignored. Other subdomains are external."""
        return hosts_match(urlparse(url).hostname or "", root_host)


# ─────────────────────────────────────────────
# Main Crawler
# ─────────────────────────────────────────────

class SiteCrawler(AuditEngine):
    """
    Sequential BFS crawler.

    Flow:
    1. Seed frontier with the normalized root URL
    2. Pop → skip visited / too deep / robots-blocked → fetch → record
    3. Enqueue same-site links of 2xx pages at depth + 1 while capacity remains
    4. Stop when the frontier empties, max_pages is reached, or the deadline passes
    """

    ENGINE_NAME = "crawler"

    def __init__(
        self,
        gateway: FetchGateway,
        registry: RuleRegistry | None = None,
        deadline: float | None = None,
    ):
        super().__init__()
        self.settings = get_settings()
        self.fetcher = PageFetcher(gateway)
        self.registry = registry or get_rule_registry()
        self.deadline = deadline

    async def run(self, context: SiteContext) -> CrawlSummary:
        request = context.request
        max_pages = min(request.max_pages, self.settings.CRAWLER_MAX_PAGES_LIMIT)
        max_depth = request.max_depth
        respect_robots = self.settings.CRAWLER_RESPECT_ROBOTS and context.robots is not None

        root = URLNormalizer.normalize(context.root_url, context.root_url) or context.root_url
        site_host = urlparse(root).hostname or context.domain
        stats = CrawlStats()

        frontier: deque[CrawlURL] = deque([CrawlURL(url=root, depth=0)])
        queued: set[str] = {root}
        visited: set[str] = set()
        redirect_targets: set[str] = set()
        pages: list[CrawledPage] = []
        unreachable: list[str] = []
        unreachable_sources: dict[str, str] = {}
        robots_blocked: list[str] = []
        root_failure: FetchFailure | None = None
        timed_out = False

        while frontier and len(visited) < max_pages:
            if self.deadline is not None and time.monotonic() >= self.deadline:
                timed_out = True
                self.logger.warning("Crawl deadline reached", crawled=len(pages), frontier=len(frontier))
                break

            item = frontier.popleft()
            if item.url in visited or item.url in redirect_targets or item.depth > max_depth:
                stats.total_skipped += 1
                continue

            # The root is always fetched; robots only gates discovered links
            if (
                respect_robots
                and item.depth > 0
                and not context.robots.is_allowed(item.url, self.settings.CRAWLER_USER_AGENT)
            ):
                robots_blocked.append(item.url)
                stats.total_skipped += 1
                continue

            visited.add(item.url)
            result = await self.fetcher.fetch(item.url, depth=item.depth)

            if isinstance(result, FetchFailure):
                stats.total_failed += 1
                unreachable.append(item.url)
                if item.parent_url:
                    unreachable_sources[item.url] = item.parent_url
                self.logger.debug(
                    "Page unreachable", url=item.url, linked_from=item.parent_url, kind=result.kind.value,
                )
                if item.depth == 0:
                    root_failure = result
                continue

            final = URLNormalizer.normalize(result.final_url, item.url) if result.final_url else None
            if final and final != item.url:
                if final in visited or final in redirect_targets:
                    stats.total_skipped += 1
                    continue
                redirect_targets.add(final)

            pages.append(result)
            stats.total_crawled += 1

            if item.depth == 0 and result.final_url:
                # Follow the root's own redirect, e.g. apex → www
                site_host = urlparse(result.final_url).hostname or site_host

            if stats.total_crawled % 10 == 0:
                self.logger.debug("Crawl progress", crawled=stats.total_crawled, queued=len(frontier))

            if not result.ok or item.depth + 1 > max_depth:
                continue

            page_base = result.final_url or item.url
            for link in result.internal_links:
                if len(visited) + len(frontier) >= max_pages:
                    break
                normalized = URLNormalizer.normalize(link.url, page_base)
                if (
                    not normalized
                    or normalized in visited
                    or normalized in queued
                    or normalized in redirect_targets
                    or not URLNormalizer.is_same_domain(normalized, site_host)
                ):
                    continue
                frontier.append(CrawlURL(
                    url=normalized,
                    depth=item.depth + 1,
                    parent_url=item.url,
                ))
                queued.add(normalized)
                stats.total_queued += 1

        summary = CrawlSummary(
            status=EngineStatus.PARTIAL if timed_out else EngineStatus.SUCCESS,
            pages=pages,
            unreachable=unreachable,
            unreachable_sources=unreachable_sources,
            robots_blocked=robots_blocked,
            max_depth=max_depth,
            max_pages=max_pages,
            elapsed_ms=round(stats.elapsed_ms, 2),
        )
        summary.issues = self._analyze_crawl_issues(summary, root, root_failure)

        self.logger.info(
            "Crawl finished",
            **self.summarize({
                "crawled": stats.total_crawled,
                "failed": stats.total_failed,
                "skipped": stats.total_skipped,
                "robots_blocked": len(robots_blocked),
                "elapsed_ms": summary.elapsed_ms,
            }),
        )
        return summary

    def _analyze_crawl_issues(
        self,
        summary: CrawlSummary,
        root: str,
        root_failure: FetchFailure | None,
    ) -> list[Issue]:
        issues: list[Issue] = []

        if root_failure is not None:
            issues.append(self.registry.build_issue(
                "root_unreachable",
                affected_urls=[root],
                reason=root_failure.message or root_failure.kind.value,
            ))

        error_5xx = [p.url for p in summary.pages if p.status_code >= 500]
        if error_5xx:
            issues.append(self.registry.build_issue(
                "server_errors", affected_count=len(error_5xx), affected_urls=error_5xx,
            ))

        error_4xx = [p.url for p in summary.pages if 400 <= p.status_code < 500]
        if error_4xx:
            issues.append(self.registry.build_issue(
                "client_error_pages", affected_count=len(error_4xx), affected_urls=error_4xx,
            ))

        unreachable = [u for u in summary.unreachable if u != root]
        if unreachable:
            issues.append(self.registry.build_issue(
                "unreachable_pages", affected_count=len(unreachable), affected_urls=unreachable,
            ))

        return issues

    def fallback(self, context: SiteContext, error: Exception) -> CrawlSummary:
        return CrawlSummary(
            max_depth=context.request.max_depth,
            max_pages=context.request.max_pages,
            issues=[self.registry.build_issue(
                "root_unreachable", affected_urls=[context.root_url], reason=str(error),
            )],
        )
