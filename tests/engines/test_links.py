"""Tests for link probing, redirect chains, anchor profile and the links engine."""

import asyncio

import httpx
import pytest

from siteaudit.core.http import FetchGateway
from siteaudit.engines.base import (
    CrawledPage,
    CrawlSummary,
    EngineStatus,
    LinkClassification,
    LinkRecord,
    LinkStatus,
    PageLink,
)
from siteaudit.engines.links.engine import (
    LinkIntegrityChecker,
    LinkIntegrityEngine,
    RedirectChainResolver,
    analyze_anchor_text,
    analyze_link_equity,
    classify_anchor_text,
    collect_link_records,
)


def _record(url: str, classification=LinkClassification.INTERNAL) -> LinkRecord:
    return LinkRecord(
        source_url="https://example.com/",
        target_url=url,
        anchor_text="anchor",
        classification=classification,
    )


class ConcurrencyTracker:
    """Async transport handler that records how many requests overlap."""

    def __init__(self):
        self.in_flight = 0
        self.peak = 0
        self.total = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.in_flight += 1
        self.total += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return httpx.Response(200)


# ─────────────────────────────────────────────
# Link collection
# ─────────────────────────────────────────────

class TestCollectLinkRecords:

    def test_unique_targets_with_hygiene(self):
        page = CrawledPage(
            url="https://example.com/",
            status_code=200,
            internal_links=[
                PageLink(url="https://example.com/a", anchor_text="A page"),
                PageLink(url="https://example.com/a", anchor_text="Again"),
                PageLink(url="https://example.com/b", anchor_text=""),
            ],
            external_links=[PageLink(url="https://other.org/", anchor_text="x" * 120)],
        )
        records = collect_link_records([page])
        assert [r.target_url for r in records] == [
            "https://example.com/a",
            "https://example.com/b",
            "https://other.org/",
        ]
        assert records[0].anchor_text == "A page"
        assert records[1].issues == ["Missing anchor text"]
        assert records[2].issues == ["Anchor text too long"]
        assert records[2].classification == LinkClassification.EXTERNAL
        assert all(r.status == LinkStatus.UNKNOWN for r in records)

    def test_max_links(self):
        page = CrawledPage(
            url="https://example.com/",
            status_code=200,
            internal_links=[PageLink(url=f"https://example.com/{i}", anchor_text="p") for i in range(10)],
        )
        assert len(collect_link_records([page], max_links=4)) == 4


# ─────────────────────────────────────────────
# Status probing
# ─────────────────────────────────────────────

class TestLinkIntegrityChecker:

    @pytest.mark.asyncio
    async def test_terminal_statuses(self, fake_site):
        fake_site.add("https://example.com/ok")
        fake_site.redirect("https://example.com/moved", "/ok")
        fake_site.add("https://example.com/gone", status=410)

        def timeout(request):
            raise httpx.ConnectTimeout("too slow", request=request)

        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        fake_site.routes["https://example.com/slow"] = timeout
        fake_site.routes["https://down.example.org/"] = refused

        records = [
            _record("https://example.com/ok"),
            _record("https://example.com/moved"),
            _record("https://example.com/gone"),
            _record("https://example.com/slow"),
            _record("https://down.example.org/", LinkClassification.EXTERNAL),
        ]
        async with fake_site.gateway() as gateway:
            await LinkIntegrityChecker(gateway, batch_delay_s=0).check(records)

        ok, moved, gone, slow, down = records
        assert ok.status == LinkStatus.VALID
        assert moved.status == LinkStatus.REDIRECT
        assert moved.redirect_chain == ["https://example.com/ok"]
        assert gone.status == LinkStatus.BROKEN
        assert gone.issues == ["HTTP 410 error"]
        assert slow.status == LinkStatus.BROKEN
        assert slow.issues == ["Request timeout"]
        assert down.status == LinkStatus.BROKEN
        assert down.issues[0].startswith("Network error:")
        assert fake_site.count("https://example.com/ok", "HEAD") == 1

    @pytest.mark.asyncio
    async def test_batch_size_bounds_concurrency(self):
        tracker = ConcurrencyTracker()
        records = [_record(f"https://example.com/{i}") for i in range(12)]
        records += [_record(f"https://other.org/{i}", LinkClassification.EXTERNAL) for i in range(7)]

        async with FetchGateway(transport=httpx.MockTransport(tracker.handler)) as gateway:
            checker = LinkIntegrityChecker(gateway, internal_batch_size=5, external_batch_size=2, batch_delay_s=0)
            await checker.check(records)

        assert tracker.total == 19
        assert tracker.peak == 5
        assert all(r.status == LinkStatus.VALID for r in records)


    @pytest.mark.asyncio
    async def test_fixed_pause_between_batches_only(self, monkeypatch):
        events: list[str] = []
        pauses: list[float] = []

        def handler(request):
            events.append("R")
            return httpx.Response(200)

        async def fake_sleep(delay, *args, **kwargs):
            if delay:
                events.append("S")
                pauses.append(delay)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        records = [_record(f"https://example.com/{i}") for i in range(12)]
        records += [_record(f"https://other.org/{i}", LinkClassification.EXTERNAL) for i in range(7)]

        async with FetchGateway(transport=httpx.MockTransport(handler)) as gateway:
            checker = LinkIntegrityChecker(gateway, internal_batch_size=5, external_batch_size=2, batch_delay_s=0.25)
            await checker.check(records)

        # internal: ceil(12/5) - 1 = 2 pauses, external: ceil(7/2) - 1 = 3 pauses
        assert pauses == [0.25] * 5
        assert "".join(events) == "RRRRRSRRRRRSRR" + "RRSRRSRRSR"

    @pytest.mark.asyncio
    async def test_malformed_location_marks_link_broken(self, fake_site):
        fake_site.redirect("https://example.com/weird", "http://[broken")
        fake_site.add("https://example.com/ok")
        records = [_record("https://example.com/weird"), _record("https://example.com/ok")]

        async with fake_site.gateway() as gateway:
            await LinkIntegrityChecker(gateway, batch_delay_s=0).check(records)

        weird, ok = records
        assert weird.status == LinkStatus.BROKEN
        assert weird.status_code == 301
        assert weird.issues == ["Invalid redirect location"]
        assert ok.status == LinkStatus.VALID

# ─────────────────────────────────────────────
# Redirect chains
# ─────────────────────────────────────────────

class TestRedirectChainResolver:

    @pytest.mark.asyncio
    async def test_two_permanent_hops(self, fake_site):
        fake_site.redirect("https://example.com/r1", "/r2")
        fake_site.redirect("https://example.com/r2", "https://example.com/final")
        fake_site.add("https://example.com/final")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway).resolve("https://example.com/r1")

        assert chain.length == 3
        assert [h.status_code for h in chain.hops] == [301, 301, 200]
        assert chain.final_url == "https://example.com/final"
        assert not chain.is_long
        assert not chain.has_temporary
        assert not chain.is_loop

    @pytest.mark.asyncio
    async def test_loop_detected(self, fake_site):
        fake_site.redirect("https://example.com/a", "/b")
        fake_site.redirect("https://example.com/b", "/a")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway).resolve("https://example.com/a")

        assert chain.is_loop
        assert chain.length == 2
        assert "Redirect loop detected" in chain.issues

    @pytest.mark.asyncio
    async def test_self_redirect_is_loop(self, fake_site):
        fake_site.redirect("https://example.com/self", "https://example.com/self")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway).resolve("https://example.com/self")

        assert chain.is_loop
        assert chain.length == 1

    @pytest.mark.asyncio
    async def test_long_chain_capped(self, fake_site):
        for i in range(10):
            fake_site.redirect(f"https://example.com/h{i}", f"/h{i + 1}")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway, max_hops=5).resolve("https://example.com/h0")

        assert chain.length == 6
        assert chain.is_long
        assert "Reduce redirect chain length for better performance" in chain.recommendations

    @pytest.mark.asyncio
    async def test_temporary_redirect_flagged(self, fake_site):
        fake_site.redirect("https://example.com/promo", "/sale", status=302)
        fake_site.add("https://example.com/sale")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway).resolve("https://example.com/promo")

        assert chain.has_temporary
        assert chain.hops[0].redirect_type.value == "temporary"
        assert "Use permanent redirects (301) when appropriate" in chain.recommendations

    @pytest.mark.asyncio
    async def test_resolve_all_drops_direct_answers(self, fake_site):
        fake_site.add("https://example.com/direct")
        fake_site.redirect("https://example.com/old", "/direct")

        async with fake_site.gateway() as gateway:
            chains = await RedirectChainResolver(gateway).resolve_all([
                "https://example.com/direct",
                "https://example.com/old",
            ])

        assert [c.original_url for c in chains] == ["https://example.com/old"]


    @pytest.mark.asyncio
    async def test_malformed_location_ends_chain(self, fake_site):
        fake_site.redirect("https://example.com/r1", "/r2")
        fake_site.redirect("https://example.com/r2", "http://[broken")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway).resolve("https://example.com/r1")

        assert chain.length == 2
        assert chain.final_url == "https://example.com/r2"
        assert not chain.is_loop
        assert "Invalid redirect location" in chain.issues

    @pytest.mark.asyncio
    async def test_zero_max_hops_respected(self, fake_site):
        fake_site.redirect("https://example.com/r1", "/r2")
        fake_site.redirect("https://example.com/r2", "/r3")
        fake_site.add("https://example.com/r3")

        async with fake_site.gateway() as gateway:
            chain = await RedirectChainResolver(gateway, max_hops=0).resolve("https://example.com/r1")

        assert chain.length == 1
        assert fake_site.count("https://example.com/r2") == 0

# ─────────────────────────────────────────────
# Anchor text & link equity
# ─────────────────────────────────────────────

class TestAnchorText:

    @pytest.mark.parametrize("text,expected", [
        ("https://example.com/page", "naked"),
        ("Example homepage", "branded"),
        ("Click here", "generic"),
        ("Shoes", "exact_match"),
        ("Buy red running shoes", "partial_match"),
        ("go", None),
    ])
    def test_classify(self, text, expected):
        assert classify_anchor_text(text, "example") == expected

    def test_over_optimized(self):
        profile = analyze_anchor_text(["Shoes", "Boots", "Hats", "Socks", "Example store"], "www.example.com")
        assert profile.exact_match == 4
        assert profile.branded == 1
        assert profile.total == 5
        assert profile.over_optimized
        assert "Diversify anchor text to avoid over-optimization" in profile.recommendations

    def test_empty(self):
        profile = analyze_anchor_text([], "example.com")
        assert profile.total == 0
        assert not profile.over_optimized

    def test_link_equity(self):
        internal = [PageLink(url="https://example.com/a"), PageLink(url="https://example.com/a")]
        external = [PageLink(url=f"https://other.org/{i}", rel="nofollow") for i in range(8)]
        equity = analyze_link_equity(internal, external)
        assert equity.total_internal_links == 2
        assert equity.total_external_links == 8
        assert equity.nofollow_ratio == 1.0
        assert equity.link_distribution == {"/a": 2}
        assert len(equity.recommendations) == 3


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

class TestLinkIntegrityEngine:

    @pytest.mark.asyncio
    async def test_broken_links_reported(self, fake_site, make_context):
        fake_site.add("https://example.com/a")
        fake_site.add("https://other.org/", status=500)
        fake_site.redirect("https://example.com/moved", "/a")
        context = make_context()
        context.crawl = CrawlSummary(pages=[CrawledPage(
            url="https://example.com/",
            status_code=200,
            internal_links=[
                PageLink(url="https://example.com/a", anchor_text="About"),
                PageLink(url="https://example.com/broken", anchor_text="Broken page"),
                PageLink(url="https://example.com/moved", anchor_text="Moved"),
            ],
            external_links=[PageLink(url="https://other.org/", anchor_text="Other site")],
        )])

        async with fake_site.gateway() as gateway:
            report = await LinkIntegrityEngine(gateway).execute(context)

        assert report.links_checked
        assert report.count(LinkClassification.INTERNAL, LinkStatus.BROKEN) == 1
        assert report.count(LinkClassification.EXTERNAL, LinkStatus.BROKEN) == 1
        assert report.count(LinkClassification.INTERNAL, LinkStatus.REDIRECT) == 1
        assert [c.original_url for c in report.redirect_chains] == ["https://example.com/moved"]
        assert {i.type for i in report.issues} == {"broken_internal_links", "broken_external_links"}
        assert not any(r.status == LinkStatus.UNKNOWN for r in report.links)

    @pytest.mark.asyncio
    async def test_probing_disabled(self, fake_site, make_context):
        fake_site.redirect("https://example.com/old", "/new")
        fake_site.add("https://example.com/new")
        context = make_context(check_broken_links=False)
        context.crawl = CrawlSummary(pages=[CrawledPage(
            url="https://example.com/old",
            final_url="https://example.com/new",
            status_code=200,
            redirect_count=1,
            internal_links=[PageLink(url="https://example.com/x", anchor_text="Somewhere")],
        )])

        async with fake_site.gateway() as gateway:
            report = await LinkIntegrityEngine(gateway).execute(context)

        assert not report.links_checked
        assert all(r.status == LinkStatus.UNKNOWN for r in report.links)
        assert fake_site.count("https://example.com/x") == 0
        assert [c.length for c in report.redirect_chains] == [2]

    @pytest.mark.asyncio
    async def test_redirect_checks_disabled(self, fake_site, make_context):
        fake_site.redirect("https://example.com/moved", "/a")
        context = make_context(check_redirects=False)
        context.crawl = CrawlSummary(pages=[CrawledPage(
            url="https://example.com/",
            status_code=200,
            internal_links=[PageLink(url="https://example.com/moved", anchor_text="Moved")],
        )])

        async with fake_site.gateway() as gateway:
            report = await LinkIntegrityEngine(gateway).execute(context)

        assert not report.redirects_checked
        assert report.redirect_chains == []

    @pytest.mark.asyncio
    async def test_malformed_location_keeps_other_findings(self, fake_site, make_context):
        fake_site.redirect("https://example.com/weird", "http://[broken")
        context = make_context()
        context.crawl = CrawlSummary(pages=[CrawledPage(
            url="https://example.com/",
            status_code=200,
            internal_links=[
                PageLink(url="https://example.com/missing", anchor_text="Missing page"),
                PageLink(url="https://example.com/weird", anchor_text="Weird redirect"),
            ],
        )])

        async with fake_site.gateway() as gateway:
            report = await LinkIntegrityEngine(gateway).execute(context)

        assert report.status == EngineStatus.SUCCESS
        assert report.count(LinkClassification.INTERNAL, LinkStatus.BROKEN) == 2
        assert {i.type for i in report.issues} == {"broken_internal_links"}
