"""Tests for the crawl budget heuristic."""

import pytest

from siteaudit.engines.base import MetaRobotsFlags, RobotsPolicy, SitemapSummary, TechnicalFactors
from siteaudit.engines.budget.engine import CrawlBudgetEngine


class TestCrawlBudgetEngine:

    @pytest.mark.asyncio
    async def test_clean_site(self, make_context):
        context = make_context()
        context.robots = RobotsPolicy(exists=True)
        context.sitemap = SitemapSummary(exists=True)
        context.technical_factors = TechnicalFactors(load_time_ms=400.0, page_size_bytes=50_000)

        budget = await CrawlBudgetEngine().execute(context)

        assert budget.optimization_score == 100
        assert budget.estimated_budget == 1000
        assert budget.factors_affecting == []
        assert budget.recommendations == []

    @pytest.mark.asyncio
    async def test_missing_files_and_noindex(self, make_context):
        context = make_context()
        context.robots = RobotsPolicy(exists=False)
        context.sitemap = SitemapSummary(exists=False)
        context.technical_factors = TechnicalFactors(meta_robots=MetaRobotsFlags(noindex=True))

        budget = await CrawlBudgetEngine().execute(context)

        assert budget.optimization_score == 45
        assert budget.estimated_budget == 450
        assert budget.recommendations == [
            "Create robots.txt to guide crawler behavior",
            "Create and submit XML sitemap",
            "Review meta robots noindex directive",
        ]

    @pytest.mark.asyncio
    async def test_every_factor_hits_floor(self, make_context):
        context = make_context()
        context.technical_factors = TechnicalFactors(
            load_time_ms=4_500.0,
            page_size_bytes=3 * 1024 * 1024,
            meta_robots=MetaRobotsFlags(noindex=True),
        )

        budget = await CrawlBudgetEngine().execute(context)

        assert budget.optimization_score == 10
        assert budget.estimated_budget == 100
        assert budget.factors_affecting == [
            "Slow page load time",
            "Large page size",
            "Missing robots.txt",
            "Missing XML sitemap",
            "Page blocked from indexing",
        ]

    @pytest.mark.asyncio
    async def test_missing_sitemap_costs_more_than_missing_robots(self, make_context):
        no_robots = make_context()
        no_robots.sitemap = SitemapSummary(exists=True)
        no_sitemap = make_context()
        no_sitemap.robots = RobotsPolicy(exists=True)

        engine = CrawlBudgetEngine()
        a = await engine.execute(no_robots)
        b = await engine.execute(no_sitemap)

        assert b.optimization_score < a.optimization_score
