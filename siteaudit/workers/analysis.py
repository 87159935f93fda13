"""
Analysis pipeline - orchestrates one full site analysis.

Flow:
1. robots.txt          → RobotsPolicy
2. sitemap             → SitemapSummary (uses robots-declared sitemaps)
3. crawl               → CrawlSummary (sequential BFS)
4. technical           → TechnicalFactors (root page + 404 check)
5. duplicates          → DuplicateContentReport
6. links               → LinkIntegrityReport (batched probing + redirects)
7. crawl budget        → CrawlBudget
8. scoring + ranking   → AnalysisReport

Error handling:
- Every engine is wrapped by AuditEngine.execute() and degrades on failure
- Anything escaping the pipeline produces a minimal fallback report
- Only an invalid root URL reaches the caller as an exception
"""

from __future__ import annotations

import asyncio
import time
from typing import Any
from urllib.parse import urlparse

import structlog

from siteaudit.core.exceptions import InvalidURLError
from siteaudit.core.http import FetchGateway
from siteaudit.core.logging import bind_analysis, unbind_analysis
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AnalysisReport,
    AnalysisRequest,
    CrawlBudget,
    CrawlSummary,
    DuplicateContentReport,
    EngineStatus,
    LinkIntegrityReport,
    Priority,
    Recommendation,
    RobotsPolicy,
    SiteContext,
    SitemapSummary,
    TechnicalFactors,
    validate_root_url,
)
from siteaudit.engines.budget.engine import CrawlBudgetEngine
from siteaudit.engines.crawler.engine import SiteCrawler
from siteaudit.engines.duplicates.engine import DuplicateContentEngine
from siteaudit.engines.links.engine import LinkIntegrityEngine
from siteaudit.engines.prioritization.engine import PrioritizationEngine
from siteaudit.engines.robots.engine import RobotsEngine
from siteaudit.engines.scoring.engine import ScoringEngine
from siteaudit.engines.sitemap.engine import SitemapEngine
from siteaudit.engines.technical.engine import TechnicalEngine

logger = structlog.get_logger(__name__)


def run_async(coro):
    """Run an async coroutine from synchronous code."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ─────────────────────────────────────────────
# Entry points
# ─────────────────────────────────────────────

async def run_site_analysis(
    request: AnalysisRequest,
    gateway: FetchGateway | None = None,
    deadline: float | None = None,
) -> AnalysisReport:
    """
    Run the full analysis for request.root_url.

    Args:
        request: Validated analysis options
        gateway: Shared FetchGateway; one is created (and closed) when omitted
        deadline: time.monotonic() value after which the crawl stops early

    Returns:
        A well-formed AnalysisReport, even when the site is unreachable
    """
    validate_root_url(request.root_url)
    domain = urlparse(request.root_url).hostname or ""
    registry = get_rule_registry()
    owns_gateway = gateway is None
    gateway = gateway or FetchGateway()
    start = time.perf_counter()

    bind_analysis(request.root_url)
    logger.info("Starting site analysis", url=request.root_url, domain=domain)
    try:
        report = await _run_pipeline(request, domain, gateway, registry, deadline, start)
    except InvalidURLError:
        raise
    except Exception as exc:
        logger.error("Site analysis failed", url=request.root_url, error=str(exc), exc_info=True)
        report = build_fallback_report(request, domain, registry, elapsed_ms=_elapsed(start))
    finally:
        if owns_gateway:
            await gateway.aclose()
        unbind_analysis()

    logger.info(
        "Site analysis complete",
        url=request.root_url,
        score=report.score,
        grade=report.grade,
        issues=len(report.issues),
        pages=report.crawl.total_pages_crawled,
        elapsed_ms=report.elapsed_ms,
    )
    return report


def analyze_site(root_url: str, **options: Any) -> AnalysisReport:
    """
    Synchronous convenience wrapper.

    Raises:
        InvalidURLError: root_url is structurally invalid
    """
    request = AnalysisRequest(root_url=validate_root_url(root_url), **options)
    return run_async(run_site_analysis(request))


# ─────────────────────────────────────────────
# Pipeline
# ─────────────────────────────────────────────

async def _run_pipeline(
    request: AnalysisRequest,
    domain: str,
    gateway: FetchGateway,
    registry: RuleRegistry,
    deadline: float | None,
    start: float,
) -> AnalysisReport:
    context = SiteContext(request=request, domain=domain)

    context.robots = await RobotsEngine(gateway, registry).execute(context)
    context.sitemap = await SitemapEngine(gateway, registry).execute(context)
    context.crawl = await SiteCrawler(gateway, registry, deadline=deadline).execute(context)
    context.technical_factors = await TechnicalEngine(gateway, registry).execute(context)
    context.duplicate_content = await DuplicateContentEngine(registry).execute(context)
    context.link_integrity = await LinkIntegrityEngine(gateway, registry).execute(context)
    context.crawl_budget = await CrawlBudgetEngine().execute(context)

    score = await ScoringEngine(registry).execute(context)
    ranking = await PrioritizationEngine().execute(context)

    failed = [r.engine_name for r in context.engine_results() if r.status == EngineStatus.FAILED]
    if failed:
        logger.warning("Analysis completed with failed engines", engines=failed)

    return AnalysisReport(
        url=request.root_url,
        domain=domain,
        robots=context.robots,
        sitemap=context.sitemap,
        crawl=context.crawl,
        duplicate_content=context.duplicate_content,
        link_integrity=context.link_integrity,
        technical_factors=context.technical_factors,
        crawl_budget=context.crawl_budget,
        issues=score.issues,
        score=score.score,
        grade=score.grade,
        recommendations=ranking.recommendations,
        elapsed_ms=_elapsed(start),
    )


def build_fallback_report(
    request: AnalysisRequest,
    domain: str,
    registry: RuleRegistry,
    elapsed_ms: float = 0.0,
) -> AnalysisReport:
    """Minimal report used when the pipeline itself breaks."""
    issue = registry.build_issue("analysis_error", affected_urls=[request.root_url])
    return AnalysisReport(
        url=request.root_url,
        domain=domain,
        robots=RobotsPolicy(status=EngineStatus.FAILED),
        sitemap=SitemapSummary(status=EngineStatus.FAILED),
        crawl=CrawlSummary(
            status=EngineStatus.FAILED,
            max_depth=request.max_depth,
            max_pages=request.max_pages,
        ),
        duplicate_content=DuplicateContentReport(
            status=EngineStatus.FAILED,
            similarity_threshold=request.similarity_threshold,
        ),
        link_integrity=LinkIntegrityReport(status=EngineStatus.FAILED),
        technical_factors=TechnicalFactors(status=EngineStatus.FAILED),
        crawl_budget=CrawlBudget(status=EngineStatus.FAILED),
        issues=[issue],
        score=0.0,
        grade="F",
        recommendations=[Recommendation(
            priority=Priority.HIGH,
            category=issue.category.value,
            issue=issue.description,
            recommendation=issue.recommendation,
            impact=issue.impact,
        )],
        elapsed_ms=elapsed_ms,
    )


def _elapsed(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
