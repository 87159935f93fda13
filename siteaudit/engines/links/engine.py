"""
Link Integrity Engine - status checks, redirect chains and anchor profile.

The only concurrent stage of the pipeline. Links are checked with HEAD in
fixed-size batches: every request in a batch is awaited before the next
batch starts, and a fixed pause separates batches. Each task owns exactly
one LinkRecord, so no state is shared while a batch is in flight.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from urllib.parse import urljoin, urlparse

import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.http import FailureKind, FetchFailure, FetchGateway
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AnchorTextProfile,
    AuditEngine,
    CrawledPage,
    Issue,
    LinkClassification,
    LinkEquity,
    LinkIntegrityReport,
    LinkRecord,
    LinkStatus,
    PageLink,
    RedirectChain,
    RedirectHop,
    RedirectType,
    SiteContext,
    strip_www,
)

logger = structlog.get_logger(__name__)

GENERIC_ANCHORS = ["click here", "read more", "learn more", "here", "this", "more info", "continue"]


# ─────────────────────────────────────────────
# Link collection
# ─────────────────────────────────────────────

def collect_link_records(pages: list[CrawledPage], max_links: int | None = None) -> list[LinkRecord]:
    """One record per unique target URL; the first source and anchor seen are kept."""
    settings = get_settings()
    max_links = settings.LINKCHECK_MAX_LINKS if max_links is None else max_links
    records: dict[str, LinkRecord] = {}

    for page in pages:
        candidates = [
            *((link, LinkClassification.INTERNAL) for link in page.internal_links),
            *((link, LinkClassification.EXTERNAL) for link in page.external_links),
        ]
        for link, classification in candidates:
            if link.url in records:
                continue
            if len(records) >= max_links:
                return list(records.values())
            records[link.url] = LinkRecord(
                source_url=page.url,
                target_url=link.url,
                anchor_text=link.anchor_text,
                rel=link.rel,
                classification=classification,
                issues=_link_hygiene(link, settings.LINK_TEXT_MAX_LENGTH),
            )
    return list(records.values())


def _link_hygiene(link: PageLink, max_text_length: int) -> list[str]:
    problems = []
    if not link.anchor_text and not link.title:
        problems.append("Missing anchor text")
    if len(link.anchor_text) > max_text_length:
        problems.append("Anchor text too long")
    if " " in link.url:
        problems.append("URL contains spaces")
    return problems


# ─────────────────────────────────────────────
# Status probing
# ─────────────────────────────────────────────

class LinkIntegrityChecker:
    """Batched HEAD probing that moves each LinkRecord to valid, redirect or broken."""

    def __init__(
        self,
        gateway: FetchGateway,
        internal_batch_size: int | None = None,
        external_batch_size: int | None = None,
        timeout_ms: int | None = None,
        batch_delay_s: float | None = None,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.internal_batch_size = (
            settings.LINKCHECK_INTERNAL_BATCH_SIZE if internal_batch_size is None else internal_batch_size
        )
        self.external_batch_size = (
            settings.LINKCHECK_EXTERNAL_BATCH_SIZE if external_batch_size is None else external_batch_size
        )
        self.timeout_ms = settings.LINKCHECK_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self.batch_delay_s = settings.LINKCHECK_BATCH_DELAY_S if batch_delay_s is None else batch_delay_s

    async def check(self, records: list[LinkRecord]) -> list[LinkRecord]:
        internal = [r for r in records if r.classification == LinkClassification.INTERNAL]
        external = [r for r in records if r.classification == LinkClassification.EXTERNAL]
        await self._check_in_batches(internal, self.internal_batch_size)
        await self._check_in_batches(external, self.external_batch_size)
        return records

    async def _check_in_batches(self, records: list[LinkRecord], batch_size: int) -> None:
        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            await asyncio.gather(*(self.check_link(record) for record in batch))
            if start + batch_size < len(records) and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)

    async def check_link(self, record: LinkRecord) -> LinkRecord:
        result = await self.gateway.fetch(record.target_url, method="HEAD", timeout_ms=self.timeout_ms)

        if isinstance(result, FetchFailure):
            record.status = LinkStatus.BROKEN
            if result.kind == FailureKind.TIMEOUT:
                record.issues.append("Request timeout")
            else:
                record.issues.append(f"Network error: {result.message}")
            return record

        record.status_code = result.status_code
        if result.ok:
            record.status = LinkStatus.VALID
        elif result.is_redirect:
            record.status = LinkStatus.REDIRECT
            location = result.header("location")
            if location:
                try:
                    record.redirect_chain = [urljoin(record.target_url, location)]
                except ValueError:
                    record.status = LinkStatus.BROKEN
                    record.issues.append("Invalid redirect location")
        else:
            record.status = LinkStatus.BROKEN
            record.issues.append(f"HTTP {result.status_code} error")
        return record


# ─────────────────────────────────────────────
# Redirect chains
# ─────────────────────────────────────────────

def redirect_type_for(status_code: int) -> RedirectType:
    if status_code == 301:
        return RedirectType.PERMANENT
    if status_code == 302:
        return RedirectType.TEMPORARY
    return RedirectType.OTHER


class RedirectChainResolver:
    """Follow redirects hop by hop with HEAD, never letting the client follow them."""

    def __init__(
        self,
        gateway: FetchGateway,
        max_hops: int | None = None,
        long_chain_threshold: int | None = None,
        timeout_ms: int | None = None,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.max_hops = settings.REDIRECT_MAX_HOPS if max_hops is None else max_hops
        self.long_chain_threshold = (
            settings.REDIRECT_LONG_CHAIN_THRESHOLD if long_chain_threshold is None else long_chain_threshold
        )
        self.timeout_ms = settings.LINKCHECK_TIMEOUT_MS if timeout_ms is None else timeout_ms

    async def resolve(self, url: str) -> RedirectChain:
        """
        Walk the chain starting at url.

        Stops on a non-3xx answer, a missing or malformed Location, a hop pointing at itself
        or at an earlier hop, a fetch failure, or after max_hops redirects.
        The chain therefore holds at most max_hops + 1 entries.
        """
        hops: list[RedirectHop] = []
        seen: set[str] = set()
        current = url
        is_loop = False
        bad_location = False

        while True:
            seen.add(current)
            result = await self.gateway.fetch(current, method="HEAD", timeout_ms=self.timeout_ms)
            if isinstance(result, FetchFailure):
                break

            hops.append(RedirectHop(
                url=current,
                status_code=result.status_code,
                redirect_type=redirect_type_for(result.status_code),
            ))
            if not result.is_redirect or len(hops) > self.max_hops:
                break

            location = result.header("location")
            if not location:
                break
            try:
                target = urljoin(current, location)
            except ValueError:
                bad_location = True
                break
            if target in seen:
                is_loop = True
                break
            current = target

        chain = self._finalize(url, current, hops, is_loop)
        if bad_location:
            chain.issues.append("Invalid redirect location")
            chain.recommendations.append("Point the redirect at a valid absolute or relative URL")
        return chain

    def _finalize(self, url: str, final_url: str, hops: list[RedirectHop], is_loop: bool) -> RedirectChain:
        chain = RedirectChain(original_url=url, final_url=final_url, hops=hops, is_loop=is_loop)
        chain.is_long = chain.length > self.long_chain_threshold
        chain.has_temporary = any(h.redirect_type == RedirectType.TEMPORARY for h in hops)

        if chain.is_long:
            chain.issues.append(f"Long redirect chain (over {self.long_chain_threshold} redirects)")
            chain.recommendations.append("Reduce redirect chain length for better performance")
        if chain.has_temporary:
            chain.issues.append("Contains temporary redirects (302)")
            chain.recommendations.append("Use permanent redirects (301) when appropriate")
        if is_loop:
            chain.issues.append("Redirect loop detected")
            chain.recommendations.append("Break the redirect loop so the URL resolves to a final page")
        return chain

    async def resolve_all(self, urls: list[str]) -> list[RedirectChain]:
        """Resolve sequentially; only chains with more than one entry are kept."""
        chains = []
        for url in urls:
            chain = await self.resolve(url)
            if chain.length > 1:
                chains.append(chain)
        return chains


# ─────────────────────────────────────────────
# Anchor text & link equity
# ─────────────────────────────────────────────

def brand_label(domain: str) -> str:
    return strip_www(domain).split(".")[0]


def classify_anchor_text(text: str, brand: str) -> str | None:
    """Bucket for one anchor, or None when it is too short to classify."""
    text = text.lower().strip()
    if "http://" in text or "https://" in text:
        return "naked"
    if brand and brand in text:
        return "branded"
    if any(term in text for term in GENERIC_ANCHORS):
        return "generic"
    if len(text) > 3:
        return "exact_match" if len(text) < 10 else "partial_match"
    return None


def analyze_anchor_text(anchors: list[str], domain: str) -> AnchorTextProfile:
    settings = get_settings()
    brand = brand_label(domain)
    counts = Counter(
        bucket for bucket in (classify_anchor_text(a, brand) for a in anchors if a) if bucket
    )
    profile = AnchorTextProfile(
        exact_match=counts["exact_match"],
        partial_match=counts["partial_match"],
        generic=counts["generic"],
        branded=counts["branded"],
        naked=counts["naked"],
    )

    total = profile.total
    if total == 0:
        return profile

    profile.over_optimized = profile.exact_match / total > settings.ANCHOR_OVER_OPTIMIZATION_RATIO
    if profile.generic / total > 0.3:
        profile.recommendations.append('Reduce use of generic anchor text like "click here" and "read more"')
    if profile.over_optimized:
        profile.recommendations.append("Diversify anchor text to avoid over-optimization")
    if profile.naked / total > 0.2:
        profile.recommendations.append("Replace naked URLs with descriptive anchor text")
    return profile


def analyze_link_equity(internal: list[PageLink], external: list[PageLink]) -> LinkEquity:
    total_internal = len(internal)
    total_external = len(external)
    nofollow_external = len([link for link in external if link.nofollow])
    nofollow_ratio = nofollow_external / total_external if total_external else 0.0

    distribution = Counter(urlparse(link.url).path or "/" for link in internal)

    recommendations = []
    if total_internal < 10:
        recommendations.append("Consider adding more internal links to improve site navigation and SEO")
    if nofollow_ratio > 0.8:
        recommendations.append("High ratio of nofollow external links may indicate over-optimization")
    if total_external > 3 * total_internal:
        recommendations.append("High ratio of external to internal links may leak link equity")

    return LinkEquity(
        total_internal_links=total_internal,
        total_external_links=total_external,
        nofollow_ratio=round(nofollow_ratio, 2),
        link_distribution=dict(distribution),
        recommendations=recommendations,
    )


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

class LinkIntegrityEngine(AuditEngine):
    ENGINE_NAME = "links"

    def __init__(
        self,
        gateway: FetchGateway,
        registry: RuleRegistry | None = None,
        checker: LinkIntegrityChecker | None = None,
        resolver: RedirectChainResolver | None = None,
    ):
        super().__init__()
        self.registry = registry or get_rule_registry()
        self.checker = checker or LinkIntegrityChecker(gateway)
        self.resolver = resolver or RedirectChainResolver(gateway)
        self.settings = get_settings()

    async def run(self, context: SiteContext) -> LinkIntegrityReport:
        pages = context.pages
        request = context.request
        records = collect_link_records(pages)

        report = LinkIntegrityReport(links=records)
        if request.check_broken_links:
            await self.checker.check(records)
            report.links_checked = True

        if request.check_redirects:
            report.redirect_chains = await self.resolver.resolve_all(self._redirect_candidates(records, pages))
            report.redirects_checked = True

        internal = [link for p in pages for link in p.internal_links]
        external = [link for p in pages for link in p.external_links]
        report.anchor_text = analyze_anchor_text([link.anchor_text for link in internal + external], context.domain)
        report.link_equity = analyze_link_equity(internal, external)
        report.issues = self._build_issues(report)

        self.logger.info(
            "Links analysed",
            **self.summarize({
                "links": len(records),
                "broken": len([r for r in records if r.status == LinkStatus.BROKEN]),
                "redirect_chains": len(report.redirect_chains),
            }),
        )
        return report

    @staticmethod
    def _redirect_candidates(records: list[LinkRecord], pages: list[CrawledPage]) -> list[str]:
        """Links seen redirecting; without status probing, crawled pages that redirected."""
        candidates = [r.target_url for r in records if r.status == LinkStatus.REDIRECT]
        if not any(r.status != LinkStatus.UNKNOWN for r in records):
            candidates = [p.url for p in pages if p.redirect_count > 0]
        return list(dict.fromkeys(candidates))

    def _build_issues(self, report: LinkIntegrityReport) -> list[Issue]:
        issues: list[Issue] = []

        for classification, rule_id in (
            (LinkClassification.INTERNAL, "broken_internal_links"),
            (LinkClassification.EXTERNAL, "broken_external_links"),
        ):
            broken = [
                r.target_url for r in report.links
                if r.classification == classification and r.status == LinkStatus.BROKEN
            ]
            if broken:
                issues.append(self.registry.build_issue(rule_id, affected_count=len(broken), affected_urls=broken))

        long_chains = [c.original_url for c in report.redirect_chains if c.is_long]
        if long_chains:
            issues.append(self.registry.build_issue(
                "long_redirect_chains",
                affected_count=len(long_chains),
                affected_urls=long_chains,
                threshold=self.resolver.long_chain_threshold,
            ))

        loops = [c.original_url for c in report.redirect_chains if c.is_loop]
        if loops:
            issues.append(self.registry.build_issue("redirect_loops", affected_count=len(loops), affected_urls=loops))

        temporary = [c.original_url for c in report.redirect_chains if c.has_temporary]
        if temporary:
            issues.append(self.registry.build_issue(
                "temporary_redirects", affected_count=len(temporary), affected_urls=temporary,
            ))

        minor = [r.target_url for r in report.links if r.issues and r.status != LinkStatus.BROKEN]
        if minor:
            issues.append(self.registry.build_issue("links_with_issues", affected_count=len(minor), affected_urls=minor))

        if report.anchor_text.over_optimized:
            ratio = round(100 * report.anchor_text.exact_match / report.anchor_text.total)
            issues.append(self.registry.build_issue("over_optimized_anchors", ratio=ratio))

        return issues

    def fallback(self, context: SiteContext, error: Exception) -> LinkIntegrityReport:
        return LinkIntegrityReport(
            link_equity=LinkEquity(recommendations=["Unable to analyze link equity due to fetch error"]),
            anchor_text=AnchorTextProfile(recommendations=["Unable to analyze anchor text due to fetch error"]),
        )
