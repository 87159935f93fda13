"""
Base class and type contracts for all site analysis engines.
Every engine MUST inherit from AuditEngine and implement run() and fallback().

Design principles:
- Engines are stateless: all state comes from the SiteContext
- Engines communicate only through the SiteContext
- Engines return a typed EngineResult subclass
- Engines handle their own errors and return a well-formed fallback on failure
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import InvalidURLError

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Severity(str, Enum):
    CRITICAL = "critical"   # Blocks crawling or indexing - fix immediately
    WARNING = "warning"     # Measurable impact - fix soon
    MINOR = "minor"         # Hygiene - fix when convenient


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueCategory(str, Enum):
    CRAWLABILITY = "crawlability"
    INDEXABILITY = "indexability"
    TECHNICAL = "technical"
    CONTENT = "content"
    LINKS = "links"
    CRAWL_BUDGET = "crawl_budget"


class EngineStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"       # Ran but with some failures
    FAILED = "failed"
    SKIPPED = "skipped"       # Disabled by request options


class LinkClassification(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class LinkStatus(str, Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    BROKEN = "broken"
    REDIRECT = "redirect"


class RedirectType(str, Enum):
    PERMANENT = "permanent"   # 301
    TEMPORARY = "temporary"   # 302
    OTHER = "other"


class RobotsDirective(str, Enum):
    ALLOW = "Allow"
    DISALLOW = "Disallow"


class DuplicateKey(str, Enum):
    TITLE = "title"
    META_DESCRIPTION = "meta_description"
    H1 = "h1"


# ─────────────────────────────────────────────
# URL helpers shared by every engine
# ─────────────────────────────────────────────

def strip_www(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def hosts_match(host_a: str, host_b: str) -> bool:
    """Same registrable host, treating `host` and `www.host` as equivalent."""
    return bool(host_a) and strip_www(host_a) == strip_www(host_b)


def validate_root_url(url: str) -> str:
    """Return a cleaned root URL or raise InvalidURLError."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidURLError("Root URL is required")
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https"):
        raise InvalidURLError(f"Unsupported URL scheme: {parsed.scheme}")
    host = parsed.hostname or ""
    if not host or " " in parsed.netloc or ("." not in host and host != "localhost"):
        raise InvalidURLError(f"Invalid root URL: {url}")
    return candidate


# ─────────────────────────────────────────────
# Core data types
# ─────────────────────────────────────────────

class PageLink(BaseModel):
    """An anchor found on a crawled page, resolved to an absolute URL."""
    model_config = ConfigDict(frozen=True)

    url: str
    anchor_text: str = ""
    title: str | None = None
    rel: str = ""

    @property
    def nofollow(self) -> bool:
        return "nofollow" in self.rel.lower()


class PageImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    src: str = ""
    alt: str = ""
    has_alt: bool = False
    lazy: bool = False


class HreflangTag(BaseModel):
    model_config = ConfigDict(frozen=True)

    hreflang: str
    href: str


def _empty_heading_counts() -> dict[str, int]:
    return {f"h{level}": 0 for level in range(1, 7)}


class CrawledPage(BaseModel):
    """One fetched URL. Created once per unique URL in a run, never mutated."""
    model_config = ConfigDict(frozen=True)

    url: str
    status_code: int
    depth: int = 0
    final_url: str = ""
    title: str = ""
    meta_description: str = ""
    h1: str = ""
    canonical_url: str | None = None
    meta_robots: str = ""
    meta_robots_directives: frozenset[str] = frozenset()
    x_robots_tag: list[str] = Field(default_factory=list)
    heading_counts: dict[str, int] = Field(default_factory=_empty_heading_counts)
    word_count: int = 0
    content_fingerprint: str = ""
    images: list[PageImage] = Field(default_factory=list)
    internal_links: list[PageLink] = Field(default_factory=list)
    external_links: list[PageLink] = Field(default_factory=list)
    hreflang: list[HreflangTag] = Field(default_factory=list)
    load_time_ms: float = 0.0
    page_size_bytes: int = 0
    redirect_count: int = 0
    is_indexable: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class RobotsRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    directive: RobotsDirective
    path: str


class Issue(BaseModel):
    """A single typed finding contributed by an engine."""
    type: str
    severity: Severity
    category: IssueCategory
    description: str
    recommendation: str = ""
    impact: str = ""
    affected_count: int = 0
    affected_urls: list[str] = Field(default_factory=list)


class Recommendation(BaseModel):
    """A prioritized fix recommendation."""
    priority: Priority
    category: str
    issue: str
    recommendation: str
    impact: str = ""


# ─────────────────────────────────────────────
# Engine results
# ─────────────────────────────────────────────

class EngineResult(BaseModel):
    """Fields shared by every engine output."""
    engine_name: str = ""
    status: EngineStatus = EngineStatus.SUCCESS
    issues: list[Issue] = Field(default_factory=list)
    execution_time_ms: float = 0.0
    error_message: str | None = None


class RobotsPolicy(EngineResult):
    exists: bool = False
    url: str = ""
    size_bytes: int = 0
    rules_by_agent: dict[str, list[RobotsRule]] = Field(default_factory=dict)
    sitemap_urls: list[str] = Field(default_factory=list)
    crawl_delay_seconds: float | None = None
    recommendations: list[str] = Field(default_factory=list)

    def rules_for(self, user_agent: str) -> list[RobotsRule]:
        """Rules of the most specific group naming user_agent, else the `*` group."""
        ua = user_agent.lower()
        for agent, rules in self.rules_by_agent.items():
            if agent != "*" and agent.lower() in ua:
                return rules
        return self.rules_by_agent.get("*", [])

    def is_allowed(self, url: str, user_agent: str = "*") -> bool:
        """
        Longest-match evaluation of Allow/Disallow for a URL or path.
        On equal length Allow wins. No matching rule means allowed.
        """
        if not self.exists:
            return True
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        best: tuple[int, bool] | None = None
        for rule in self.rules_for(user_agent):
            if not rule.path or not _robots_pattern_matches(rule.path, path):
                continue
            candidate = (len(rule.path), rule.directive == RobotsDirective.ALLOW)
            if best is None or candidate > best:
                best = candidate
        return True if best is None else best[1]

    def blocks_all(self, user_agent: str = "*") -> bool:
        return any(
            r.directive == RobotsDirective.DISALLOW and r.path == "/"
            for r in self.rules_by_agent.get(user_agent, [])
        )


def _robots_pattern_matches(pattern: str, path: str) -> bool:
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    if anchored:
        regex += "$"
    return re.match(regex, path) is not None


class SitemapSummary(EngineResult):
    exists: bool = False
    url: str | None = None
    is_index: bool = False
    url_count: int = 0
    child_sitemaps: int = 0
    image_count: int = 0
    video_count: int = 0
    last_modified: str | None = None
    with_lastmod: int = 0
    with_changefreq: int = 0
    with_priority: int = 0
    duplicate_urls: int = 0
    parse_errors: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class CrawlSummary(EngineResult):
    pages: list[CrawledPage] = Field(default_factory=list)
    unreachable: list[str] = Field(default_factory=list)
    unreachable_sources: dict[str, str] = Field(default_factory=dict)
    robots_blocked: list[str] = Field(default_factory=list)
    max_depth: int = 0
    max_pages: int = 0
    elapsed_ms: float = 0.0

    @computed_field
    @property
    def total_pages_crawled(self) -> int:
        return len(self.pages)

    @computed_field
    @property
    def indexable_pages(self) -> int:
        return len([p for p in self.pages if p.is_indexable])

    @computed_field
    @property
    def non_indexable_pages(self) -> int:
        return len(self.pages) - self.indexable_pages

    @property
    def root_page(self) -> CrawledPage | None:
        for page in self.pages:
            if page.depth == 0:
                return page
        return None


class DuplicateGroup(BaseModel):
    key_type: DuplicateKey
    key_value: str
    member_urls: list[str]

    @computed_field
    @property
    def count(self) -> int:
        return len(self.member_urls)


class SimilarPagePair(BaseModel):
    url_a: str
    url_b: str
    similarity: float = Field(ge=0.0, le=1.0)
    fingerprint_a: str = ""
    fingerprint_b: str = ""


class CanonicalMismatch(BaseModel):
    url: str
    canonical: str


class CanonicalAudit(BaseModel):
    missing: list[str] = Field(default_factory=list)
    self_referencing: list[str] = Field(default_factory=list)
    cross_canonical: list[CanonicalMismatch] = Field(default_factory=list)


class ThinContentPage(BaseModel):
    url: str
    word_count: int
    content_ratio: float
    notes: list[str] = Field(default_factory=list)


class DuplicateImageGroup(BaseModel):
    src: str
    member_urls: list[str]

    @computed_field
    @property
    def count(self) -> int:
        return len(self.member_urls)


class MissingContentElements(BaseModel):
    no_headings: list[str] = Field(default_factory=list)
    no_images: list[str] = Field(default_factory=list)
    no_internal_links: list[str] = Field(default_factory=list)


class DuplicateContentReport(EngineResult):
    groups: list[DuplicateGroup] = Field(default_factory=list)
    similar_pages: list[SimilarPagePair] = Field(default_factory=list)
    similarity_threshold: float = 0.8
    similarity_checked: bool = False
    canonical: CanonicalAudit = Field(default_factory=CanonicalAudit)
    thin_content: list[ThinContentPage] = Field(default_factory=list)
    duplicate_images: list[DuplicateImageGroup] = Field(default_factory=list)
    missing_content: MissingContentElements = Field(default_factory=MissingContentElements)
    recommendations: list[str] = Field(default_factory=list)

    def groups_for(self, key_type: DuplicateKey) -> list[DuplicateGroup]:
        return [g for g in self.groups if g.key_type == key_type]


class LinkRecord(BaseModel):
    """A link target under test. Starts unknown; the checker moves it to a terminal status."""
    source_url: str
    target_url: str
    anchor_text: str = ""
    rel: str = ""
    classification: LinkClassification
    status: LinkStatus = LinkStatus.UNKNOWN
    status_code: int | None = None
    redirect_chain: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)


class RedirectHop(BaseModel):
    url: str
    status_code: int
    redirect_type: RedirectType


class RedirectChain(BaseModel):
    original_url: str
    final_url: str
    hops: list[RedirectHop] = Field(default_factory=list)
    is_long: bool = False
    has_temporary: bool = False
    is_loop: bool = False
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def length(self) -> int:
        return len(self.hops)


class AnchorTextProfile(BaseModel):
    exact_match: int = 0
    partial_match: int = 0
    generic: int = 0
    branded: int = 0
    naked: int = 0
    over_optimized: bool = False
    recommendations: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def total(self) -> int:
        return self.exact_match + self.partial_match + self.generic + self.branded + self.naked


class LinkEquity(BaseModel):
    total_internal_links: int = 0
    total_external_links: int = 0
    nofollow_ratio: float = 0.0
    link_distribution: dict[str, int] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)


class LinkIntegrityReport(EngineResult):
    links: list[LinkRecord] = Field(default_factory=list)
    redirect_chains: list[RedirectChain] = Field(default_factory=list)
    anchor_text: AnchorTextProfile = Field(default_factory=AnchorTextProfile)
    link_equity: LinkEquity = Field(default_factory=LinkEquity)
    links_checked: bool = False
    redirects_checked: bool = False

    def count(self, classification: LinkClassification, status: LinkStatus) -> int:
        return len([
            link for link in self.links
            if link.classification == classification and link.status == status
        ])


class ImageStats(BaseModel):
    total: int = 0
    with_alt: int = 0
    without_alt: int = 0
    lazy: int = 0


class MetaRobotsFlags(BaseModel):
    content: str = ""
    noindex: bool = False
    nofollow: bool = False
    noarchive: bool = False
    nosnippet: bool = False
    noimageindex: bool = False


class CanonicalInfo(BaseModel):
    present: bool = False
    url: str | None = None
    self_referencing: bool = False
    issues: list[str] = Field(default_factory=list)


class HreflangInfo(BaseModel):
    present: bool = False
    tags: list[HreflangTag] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)


class NotFoundPageCheck(BaseModel):
    checked: bool = False
    url: str = ""
    status_code: int | None = None
    returns_404: bool = False
    has_search_box: bool = False
    has_navigation: bool = False
    has_helpful_content: bool = False
    recommendations: list[str] = Field(default_factory=list)


class TechnicalFactors(EngineResult):
    http_status: int = 0
    redirects: int = 0
    load_time_ms: float = 0.0
    page_size_bytes: int = 0
    word_count: int = 0
    heading_structure: dict[str, int] = Field(default_factory=_empty_heading_counts)
    images: ImageStats = Field(default_factory=ImageStats)
    meta_robots: MetaRobotsFlags = Field(default_factory=MetaRobotsFlags)
    x_robots_tag: list[str] = Field(default_factory=list)
    canonical: CanonicalInfo = Field(default_factory=CanonicalInfo)
    hreflang: HreflangInfo = Field(default_factory=HreflangInfo)
    not_found_page: NotFoundPageCheck = Field(default_factory=NotFoundPageCheck)


class CrawlBudget(EngineResult):
    estimated_budget: int = 0
    optimization_score: int = 0
    factors_affecting: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ScoreAdjustment(BaseModel):
    reason: str
    points: float


class ScoreResult(EngineResult):
    score: float = Field(ge=0.0, le=100.0, default=0.0)
    grade: str = "F"
    deductions: list[ScoreAdjustment] = Field(default_factory=list)
    bonuses: list[ScoreAdjustment] = Field(default_factory=list)


class PrioritizationResult(EngineResult):
    recommendations: list[Recommendation] = Field(default_factory=list)


# ─────────────────────────────────────────────
# Request / report
# ─────────────────────────────────────────────

class AnalysisRequest(BaseModel):
    root_url: str
    max_depth: int = Field(default_factory=lambda: get_settings().CRAWLER_MAX_DEPTH, ge=0, le=10)
    max_pages: int = Field(default_factory=lambda: get_settings().CRAWLER_MAX_PAGES, ge=1)
    check_similarity: bool = True
    similarity_threshold: float = Field(
        default_factory=lambda: get_settings().SIMILARITY_THRESHOLD, ge=0.0, le=1.0
    )
    check_redirects: bool = True
    check_broken_links: bool = True

    @field_validator("root_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return validate_root_url(v)


class AnalysisReport(BaseModel):
    """The final, immutable output of one analysis run."""
    model_config = ConfigDict(frozen=True)

    url: str
    domain: str
    robots: RobotsPolicy
    sitemap: SitemapSummary
    crawl: CrawlSummary
    duplicate_content: DuplicateContentReport
    link_integrity: LinkIntegrityReport
    technical_factors: TechnicalFactors
    crawl_budget: CrawlBudget
    issues: list[Issue] = Field(default_factory=list)
    score: float = Field(ge=0.0, le=100.0)
    grade: str = "F"
    recommendations: list[Recommendation] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed_ms: float = 0.0


class SiteContext(BaseModel):
    """Aggregated run state passed to all engines; filled in pipeline order."""
    request: AnalysisRequest
    domain: str
    robots: RobotsPolicy | None = None
    sitemap: SitemapSummary | None = None
    crawl: CrawlSummary | None = None
    duplicate_content: DuplicateContentReport | None = None
    link_integrity: LinkIntegrityReport | None = None
    technical_factors: TechnicalFactors | None = None
    crawl_budget: CrawlBudget | None = None
    score: ScoreResult | None = None

    @property
    def root_url(self) -> str:
        return self.request.root_url

    @property
    def origin(self) -> str:
        parsed = urlparse(self.request.root_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def pages(self) -> list[CrawledPage]:
        return self.crawl.pages if self.crawl else []

    def engine_results(self) -> list[EngineResult]:
        return [
            r for r in (
                self.robots,
                self.sitemap,
                self.crawl,
                self.technical_factors,
                self.duplicate_content,
                self.link_integrity,
                self.crawl_budget,
            )
            if r is not None
        ]


# ─────────────────────────────────────────────
# Base Engine
# ─────────────────────────────────────────────

class AuditEngine(ABC):
    """
    Abstract base class for all analysis engines.

    All engines MUST:
    1. Implement run(context) -> EngineResult subclass
    2. Implement fallback(context, error) -> well-formed empty result
    3. Be stateless - store nothing on self between calls
    """

    ENGINE_NAME: str = "base"

    def __init__(self):
        self.logger = structlog.get_logger(self.__class__.__name__)

    @abstractmethod
    async def run(self, context: SiteContext) -> EngineResult:
        """
        Execute the engine against the run context.

        Args:
            context: Aggregated run state produced by earlier engines

        Returns:
            The engine's typed result, including any issues found
        """
        ...

    @abstractmethod
    def fallback(self, context: SiteContext, error: Exception) -> EngineResult:
        """Well-formed, zeroed result used when run() raises."""
        ...

    async def execute(self, context: SiteContext) -> EngineResult:
        """
        Wrapper around run() that adds timing, logging, and error handling.
        Call this instead of run() directly. Never raises.
        """
        start = time.perf_counter()
        self.logger.info(
            "Engine starting",
            engine=self.ENGINE_NAME,
            domain=context.domain,
            page_count=len(context.pages),
        )

        try:
            result = await self.run(context)
            elapsed = (time.perf_counter() - start) * 1000
            result.engine_name = self.ENGINE_NAME
            result.execution_time_ms = round(elapsed, 2)
            self.logger.info(
                "Engine complete",
                engine=self.ENGINE_NAME,
                domain=context.domain,
                status=result.status.value,
                issue_count=len(result.issues),
                elapsed_ms=round(elapsed, 2),
            )
            return result

        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.error(
                "Engine failed",
                engine=self.ENGINE_NAME,
                domain=context.domain,
                error=str(exc),
                elapsed_ms=round(elapsed, 2),
                exc_info=True,
            )
            result = self.fallback(context, exc)
            result.engine_name = self.ENGINE_NAME
            result.status = EngineStatus.FAILED
            result.execution_time_ms = round(elapsed, 2)
            result.error_message = str(exc)
            return result

    @staticmethod
    def calculate_grade(score: float) -> str:
        """Convert numeric score to letter grade."""
        if score >= 90:
            return "A"
        elif score >= 80:
            return "B"
        elif score >= 65:
            return "C"
        elif score >= 50:
            return "D"
        return "F"

    @staticmethod
    def summarize(values: dict[str, Any]) -> dict[str, Any]:
        """Drop empty values before logging a summary."""
        return {k: v for k, v in values.items() if v not in (None, [], {}, "")}
