"""
Crawl Budget Engine - a coarse heuristic, not a model of real crawler behaviour.

Starts from 100 and subtracts a fixed penalty for each factor known to waste
crawl budget. The estimate scales a documented, arbitrary baseline.
"""

from __future__ import annotations

import structlog

from siteaudit.core.config import get_settings
from siteaudit.engines.base import AuditEngine, CrawlBudget, SiteContext

logger = structlog.get_logger(__name__)


class CrawlBudgetEngine(AuditEngine):
    ENGINE_NAME = "crawl_budget"

    def __init__(self):
        super().__init__()
        self.settings = get_settings()

    async def run(self, context: SiteContext) -> CrawlBudget:
        s = self.settings
        technical = context.technical_factors
        score = 100
        factors: list[str] = []
        recommendations: list[str] = []

        def deduct(points: int, factor: str, recommendation: str) -> None:
            nonlocal score
            score -= points
            factors.append(factor)
            recommendations.append(recommendation)

        if technical is not None and technical.load_time_ms > s.BUDGET_SLOW_LOAD_MS:
            deduct(s.BUDGET_PENALTY_SLOW_LOAD, "Slow page load time",
                   "Optimize page load speed to improve crawl efficiency")

        if technical is not None and technical.page_size_bytes > s.BUDGET_LARGE_PAGE_BYTES:
            deduct(s.BUDGET_PENALTY_LARGE_PAGE, "Large page size",
                   "Reduce page size for better crawl budget utilization")

        if context.robots is None or not context.robots.exists:
            deduct(s.BUDGET_PENALTY_MISSING_ROBOTS, "Missing robots.txt",
                   "Create robots.txt to guide crawler behavior")

        if context.sitemap is None or not context.sitemap.exists:
            deduct(s.BUDGET_PENALTY_MISSING_SITEMAP, "Missing XML sitemap",
                   "Create and submit XML sitemap")

        if technical is not None and technical.meta_robots.noindex:
            deduct(s.BUDGET_PENALTY_NOINDEX, "Page blocked from indexing",
                   "Review meta robots noindex directive")

        return CrawlBudget(
            estimated_budget=max(s.BUDGET_MINIMUM, round(s.BUDGET_BASELINE * score / 100)),
            optimization_score=max(0, score),
            factors_affecting=factors,
            recommendations=recommendations,
        )

    def fallback(self, context: SiteContext, error: Exception) -> CrawlBudget:
        return CrawlBudget(estimated_budget=self.settings.BUDGET_MINIMUM)
