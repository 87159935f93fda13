"""
Sitemap Engine - locates the site's XML sitemap and summarises it.

Candidates are tried in order: sitemaps declared in robots.txt, then
<origin>/sitemap.xml. The first candidate answering 2xx wins; child
sitemaps of an index are counted, not fetched. Per-URL lastmod, changefreq
and priority coverage is reported alongside the counts.
"""

from __future__ import annotations

from urllib.parse import urljoin

import structlog
from bs4 import BeautifulSoup, Tag

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import FetchError, HttpError
from siteaudit.core.http import FetchGateway, FetchResponse, require_body
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import AuditEngine, Issue, SiteContext, SitemapSummary

logger = structlog.get_logger(__name__)


def _count_tags(soup: BeautifulSoup, local_name: str, prefix: str | None = None) -> int:
    if prefix is None:
        return len(soup.find_all(local_name))
    qualified = f"{prefix}:{local_name}"
    return len([
        tag for tag in soup.find_all(True)
        if tag.name == qualified or (tag.name == local_name and tag.prefix == prefix)
    ])


def parse_sitemap(url: str, content: str) -> SitemapSummary:
    """Summarise one sitemap document. Format problems are recorded, never raised."""
    summary = SitemapSummary(exists=True, url=url)

    if "<?xml" not in content:
        summary.parse_errors.append("Missing XML declaration")
    if "xmlns" not in content:
        summary.parse_errors.append("Missing XML namespace")

    soup = BeautifulSoup(content, "xml")
    root = next((child for child in soup.children if isinstance(child, Tag)), None)
    root_name = root.name if root is not None else ""

    if root_name == "sitemapindex":
        summary.is_index = True
        summary.child_sitemaps = _count_tags(soup, "sitemap")
    elif root_name != "urlset":
        summary.parse_errors.append("Unrecognised sitemap root element")

    entries = soup.find_all("url")
    summary.url_count = len(entries)
    locs: list[str] = []
    for entry in entries:
        loc = entry.find("loc", recursive=False)
        if loc is not None:
            locs.append(loc.get_text(strip=True))
        if entry.find("lastmod", recursive=False) is not None:
            summary.with_lastmod += 1
        if entry.find("changefreq", recursive=False) is not None:
            summary.with_changefreq += 1
        if entry.find("priority", recursive=False) is not None:
            summary.with_priority += 1
    summary.duplicate_urls = len(locs) - len(set(locs))

    summary.image_count = _count_tags(soup, "image", prefix="image")
    summary.video_count = _count_tags(soup, "video", prefix="video")
    return summary


class SitemapEngine(AuditEngine):
    ENGINE_NAME = "sitemap"

    def __init__(self, gateway: FetchGateway, registry: RuleRegistry | None = None):
        super().__init__()
        self.gateway = gateway
        self.registry = registry or get_rule_registry()
        self.settings = get_settings()

    def candidates(self, context: SiteContext, declared: list[str]) -> list[str]:
        base = f"{context.origin}/"
        urls: list[str] = []
        for candidate in [*declared, f"{context.origin}/sitemap.xml"]:
            resolved = urljoin(base, candidate.strip())
            if resolved not in urls:
                urls.append(resolved)
        return urls

    async def run(self, context: SiteContext) -> SitemapSummary:
        declared = context.robots.sitemap_urls if context.robots else []
        fetch_errors: list[str] = []
        found: SitemapSummary | None = None

        for candidate in self.candidates(context, declared):
            result = await self.gateway.fetch(
                candidate,
                timeout_ms=self.settings.SITEMAP_TIMEOUT_MS,
                follow_redirects=True,
            )
            try:
                response = require_body(result)
            except HttpError:
                continue
            except FetchError:
                fetch_errors.append(f"Unable to fetch sitemap: {candidate}")
                continue
            found = self._summarise(candidate, response)
            break

        if found is None:
            self.logger.info("No sitemap found", domain=context.domain, tried=len(fetch_errors))
            return SitemapSummary(
                exists=False,
                parse_errors=fetch_errors,
                issues=[self.registry.build_issue("missing_sitemap")],
            )

        found.parse_errors = fetch_errors + found.parse_errors
        found.issues = self._issues(found)
        found.recommendations = self._recommendations(found)
        return found

    def _summarise(self, url: str, response: FetchResponse) -> SitemapSummary:
        summary = parse_sitemap(url, response.body)
        summary.last_modified = response.header("last-modified")
        return summary

    def _issues(self, summary: SitemapSummary) -> list[Issue]:
        issues: list[Issue] = []
        affected = [summary.url] if summary.url else []
        if summary.parse_errors:
            issues.append(self.registry.build_issue(
                "sitemap_parse_errors",
                affected_count=len(summary.parse_errors),
                affected_urls=affected,
                errors="; ".join(summary.parse_errors),
            ))
        if summary.is_index:
            if summary.child_sitemaps == 0:
                issues.append(self.registry.build_issue("empty_sitemap_index", affected_urls=affected))
        elif summary.url_count == 0:
            issues.append(self.registry.build_issue("empty_sitemap", affected_urls=affected))
        elif summary.url_count > self.settings.SITEMAP_MAX_URLS:
            issues.append(self.registry.build_issue(
                "sitemap_too_large",
                affected_urls=affected,
                url_count=summary.url_count,
                max_urls=self.settings.SITEMAP_MAX_URLS,
            ))
        return issues

    def _recommendations(self, summary: SitemapSummary) -> list[str]:
        if summary.is_index or summary.url_count == 0:
            return []
        advice: list[str] = []
        if summary.with_lastmod < summary.url_count * self.settings.SITEMAP_LASTMOD_MIN_RATIO:
            advice.append("Add lastmod dates to more URLs for better crawl prioritization")
        if summary.with_priority == 0:
            advice.append("Consider adding priority values to important pages")
        if summary.duplicate_urls:
            advice.append(f"Remove {summary.duplicate_urls} duplicate URLs from the sitemap")
        return advice

    def fallback(self, context: SiteContext, error: Exception) -> SitemapSummary:
        return SitemapSummary(
            exists=False,
            parse_errors=["Unable to check sitemap"],
            issues=[self.registry.build_issue("missing_sitemap")],
        )
