"""
Robots Engine - fetches and interprets <origin>/robots.txt.

The parser is a small line-oriented state machine, not an RFC 9309
implementation: it tracks the current user-agent group and attaches
Allow/Disallow rules to every agent in that group.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.exceptions import FetchError
from siteaudit.core.http import FetchGateway, require_body
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AuditEngine,
    EngineStatus,
    Issue,
    RobotsDirective,
    RobotsPolicy,
    RobotsRule,
    SiteContext,
)

logger = structlog.get_logger(__name__)


# ─────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────

@dataclass
class ParsedRobots:
    rules_by_agent: dict[str, list[RobotsRule]] = field(default_factory=dict)
    sitemap_urls: list[str] = field(default_factory=list)
    crawl_delay_seconds: float | None = None


class RobotsTxtParser:
    """Parse robots.txt text into agent groups, sitemaps and crawl-delay."""

    @classmethod
    def parse(cls, text: str) -> ParsedRobots:
        parsed = ParsedRobots()
        current_agents: list[str] = []
        collecting_agents = False

        for raw_line in text.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line or ":" not in line:
                continue

            name, _, value = line.partition(":")
            name = name.strip().lower()
            value = value.strip()

            if name == "user-agent":
                # Consecutive User-agent lines share the rules that follow them
                if not collecting_agents:
                    current_agents = []
                collecting_agents = True
                if value:
                    current_agents.append(value)
                    parsed.rules_by_agent.setdefault(value, [])
                continue

            if name in ("allow", "disallow"):
                collecting_agents = False
                if not current_agents:
                    continue
                rule = RobotsRule(
                    directive=RobotsDirective.ALLOW if name == "allow" else RobotsDirective.DISALLOW,
                    path=value,
                )
                for agent in current_agents:
                    parsed.rules_by_agent[agent].append(rule)

            elif name == "sitemap":
                if value and value not in parsed.sitemap_urls:
                    parsed.sitemap_urls.append(value)

            elif name == "crawl-delay":
                collecting_agents = False
                try:
                    parsed.crawl_delay_seconds = float(value)
                except ValueError:
                    logger.debug("Ignoring invalid crawl-delay", value=value)

        return parsed


# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

class RobotsEngine(AuditEngine):
    """
    Fetch robots.txt and evaluate it.

    Missing or unreachable robots.txt is a finding, never an error.
    """

    ENGINE_NAME = "robots"

    def __init__(self, gateway: FetchGateway, registry: RuleRegistry | None = None):
        super().__init__()
        self.gateway = gateway
        self.registry = registry or get_rule_registry()
        self.settings = get_settings()

    async def run(self, context: SiteContext) -> RobotsPolicy:
        robots_url = f"{context.origin}/robots.txt"
        result = await self.gateway.fetch(
            robots_url,
            timeout_ms=self.settings.ROBOTS_TIMEOUT_MS,
            follow_redirects=True,
        )

        try:
            result = require_body(result)
        except FetchError as exc:
            self.logger.info("robots.txt not available", url=robots_url, reason=exc.message)
            return self._missing(robots_url)

        parsed = RobotsTxtParser.parse(result.body)
        issues: list[Issue] = []
        recommendations: list[str] = []
        size_bytes = result.size_bytes or len(result.body.encode("utf-8"))

        policy = RobotsPolicy(
            exists=True,
            url=robots_url,
            size_bytes=size_bytes,
            rules_by_agent=parsed.rules_by_agent,
            sitemap_urls=parsed.sitemap_urls,
            crawl_delay_seconds=parsed.crawl_delay_seconds,
        )

        if policy.blocks_all("*"):
            issues.append(self.registry.build_issue("robots_blocks_all", affected_urls=[robots_url]))
            recommendations.append("Remove 'Disallow: /' for User-agent: * unless the site must stay hidden")

        if size_bytes > self.settings.ROBOTS_MAX_BYTES:
            issues.append(self.registry.build_issue(
                "robots_too_large",
                affected_urls=[robots_url],
                size_kb=round(size_bytes / 1024),
            ))
            recommendations.append("Optimize robots.txt file size for better crawler efficiency")

        delay = parsed.crawl_delay_seconds
        if delay is not None and delay > self.settings.ROBOTS_HIGH_CRAWL_DELAY_S:
            issues.append(self.registry.build_issue("high_crawl_delay", delay=delay))

        if not parsed.rules_by_agent:
            recommendations.append("Add User-agent and crawling directives")

        if not parsed.sitemap_urls:
            recommendations.append("Add sitemap reference to robots.txt")

        blocks_assets = any(
            r.directive == RobotsDirective.DISALLOW and (".css" in r.path or ".js" in r.path)
            for rules in parsed.rules_by_agent.values()
            for r in rules
        )
        if blocks_assets:
            recommendations.append("Allow CSS and JS files so search engines can render pages")

        policy.issues = issues
        policy.recommendations = recommendations
        return policy

    def fallback(self, context: SiteContext, error: Exception) -> RobotsPolicy:
        return self._missing(f"{context.origin}/robots.txt")

    def _missing(self, robots_url: str) -> RobotsPolicy:
        return RobotsPolicy(
            exists=False,
            url=robots_url,
            status=EngineStatus.SUCCESS,
            issues=[self.registry.build_issue("missing_robots", affected_urls=[robots_url])],
            recommendations=["Create a robots.txt file to guide search engine crawlers"],
        )
