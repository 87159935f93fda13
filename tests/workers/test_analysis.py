"""End-to-end pipeline tests against a mocked site."""

import time

import httpx
import pytest

from siteaudit.core.exceptions import InvalidURLError
from siteaudit.engines.base import AnalysisRequest, EngineStatus
from siteaudit.workers import analysis
from siteaudit.workers.analysis import analyze_site, run_site_analysis

ROOT = "https://example.com/"


def _words(n: int, word: str = "content") -> str:
    return " ".join([word] * n)


class TestRunSiteAnalysis:

    @pytest.mark.asyncio
    async def test_missing_files_and_noindex(self, fake_site, make_page):
        fake_site.page(ROOT, make_page(
            title="Home",
            head='<meta name="robots" content="noindex"><link rel="canonical" href="https://example.com/">',
            body="<h1>Welcome</h1><p>Hello</p>",
        ))

        async with fake_site.gateway() as gateway:
            report = await run_site_analysis(AnalysisRequest(root_url=ROOT), gateway=gateway)

        assert not report.robots.exists
        assert not report.sitemap.exists
        assert report.crawl.total_pages_crawled == 1
        assert report.crawl.non_indexable_pages == 1
        assert [i.type for i in report.issues] == ["missing_robots", "missing_sitemap", "noindex_directive"]
        assert report.score == 40.0
        assert report.grade == "F"

        texts = [r.recommendation for r in report.recommendations]
        assert "Create a robots.txt file to guide search engine crawlers" in texts
        assert "Create and submit XML sitemap" in texts
        assert "Review meta robots noindex directive" in texts
        assert report.recommendations[0].priority.value == "high"

    @pytest.mark.asyncio
    async def test_healthy_site(self, fake_site, make_page):
        fake_site.add(
            "https://example.com/robots.txt",
            "User-agent: *\nDisallow: /admin\nSitemap: https://example.com/sitemap.xml\n",
            content_type="text/plain",
        )
        fake_site.add(
            "https://example.com/sitemap.xml",
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/</loc></url>"
            "<url><loc>https://example.com/about</loc></url>"
            "</urlset>",
            content_type="application/xml",
        )
        fake_site.page(ROOT, make_page(
            title="Acme Home",
            head='<meta name="description" content="Acme home page">'
                 '<link rel="canonical" href="https://example.com/">',
            body=f"<h1>Acme</h1><p>{_words(600, 'home')}</p>",
            links=["/about"],
        ))
        fake_site.page("https://example.com/about", make_page(
            title="About Acme",
            head='<meta name="description" content="About the company">'
                 '<link rel="canonical" href="https://example.com/about">',
            body=f"<h1>About</h1><p>{_words(310, 'about')}</p>",
            links=["/"],
        ))

        async with fake_site.gateway() as gateway:
            report = await run_site_analysis(AnalysisRequest(root_url=ROOT), gateway=gateway)

        assert report.robots.exists
        assert report.sitemap.url_count == 2
        assert report.crawl.total_pages_crawled == 2
        assert report.issues == []
        assert report.score == 100.0
        assert report.grade == "A"
        assert report.link_integrity.links_checked
        assert all(link.status.value == "valid" for link in report.link_integrity.links)
        assert report.technical_factors.not_found_page.returns_404

    @pytest.mark.asyncio
    async def test_unreachable_root_still_reports(self, fake_site):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        fake_site.routes[ROOT] = refused

        async with fake_site.gateway() as gateway:
            report = await run_site_analysis(AnalysisRequest(root_url=ROOT), gateway=gateway)

        assert report.crawl.pages == []
        assert "root_unreachable" in [i.type for i in report.issues]
        assert report.technical_factors.http_status == 0
        # missing robots (20) + missing sitemap (25) + unreachable root (25)
        assert report.score == 30.0
        assert report.grade == "F"

    @pytest.mark.asyncio
    async def test_deadline_returns_partial_crawl(self, fake_site, make_page):
        fake_site.page(ROOT, make_page())

        async with fake_site.gateway() as gateway:
            report = await run_site_analysis(
                AnalysisRequest(root_url=ROOT),
                gateway=gateway,
                deadline=time.monotonic() - 1,
            )

        assert report.crawl.status == EngineStatus.PARTIAL
        assert report.crawl.pages == []

    @pytest.mark.asyncio
    async def test_pipeline_crash_gives_fallback_report(self, fake_site, monkeypatch):
        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(analysis, "_run_pipeline", explode)

        async with fake_site.gateway() as gateway:
            report = await run_site_analysis(AnalysisRequest(root_url=ROOT), gateway=gateway)

        assert report.score == 0.0
        assert report.grade == "F"
        assert [i.type for i in report.issues] == ["analysis_error"]
        assert report.recommendations[0].recommendation == "Check if the website is accessible and try again"
        assert report.crawl.status == EngineStatus.FAILED


class TestAnalyzeSite:

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com", "https://", "http://localhost_only"])
    def test_invalid_root_url(self, url):
        with pytest.raises(InvalidURLError):
            analyze_site(url)

    def test_request_adds_scheme(self):
        assert AnalysisRequest(root_url="example.com").root_url == "https://example.com"
