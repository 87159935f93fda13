"""
Prioritization Engine

Turns issues and engine advice into one ordered recommendation list.

Priority mapping:
  critical issue           → high
  warning issue            → medium
  minor issue              → low
  crawl-budget advice      → medium
  robots / link advice     → medium
  anchor-text advice       → high when the profile is over-optimized, else medium
  custom 404 page advice   → low

The sort is stable, so within one priority the pipeline order is kept.
The same recommendation text is only listed once.
"""

from __future__ import annotations

import structlog

from siteaudit.engines.base import (
    AuditEngine,
    IssueCategory,
    PrioritizationResult,
    Priority,
    Recommendation,
    Severity,
    SiteContext,
)
from siteaudit.engines.scoring.engine import collect_issues

logger = structlog.get_logger(__name__)


PRIORITY_BY_SEVERITY = {
    Severity.CRITICAL: Priority.HIGH,
    Severity.WARNING: Priority.MEDIUM,
    Severity.MINOR: Priority.LOW,
}

PRIORITY_ORDER = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}


def rank_recommendations(recommendations: list[Recommendation]) -> list[Recommendation]:
    seen: set[str] = set()
    unique = []
    for rec in recommendations:
        if rec.recommendation in seen:
            continue
        seen.add(rec.recommendation)
        unique.append(rec)
    return sorted(unique, key=lambda r: PRIORITY_ORDER[r.priority])


class PrioritizationEngine(AuditEngine):
    """
    Generates ordered, actionable recommendations from all findings.
    Runs after all other engines complete.
    """

    ENGINE_NAME = "prioritization"

    async def run(self, context: SiteContext) -> PrioritizationResult:
        recommendations: list[Recommendation] = []

        for issue in collect_issues(context):
            recommendations.append(Recommendation(
                priority=PRIORITY_BY_SEVERITY[issue.severity],
                category=issue.category.value,
                issue=issue.description,
                recommendation=issue.recommendation,
                impact=issue.impact,
            ))

        budget = context.crawl_budget
        if budget is not None:
            for factor, advice in zip(budget.factors_affecting, budget.recommendations):
                recommendations.append(Recommendation(
                    priority=Priority.MEDIUM,
                    category=IssueCategory.CRAWL_BUDGET.value,
                    issue=factor,
                    recommendation=advice,
                    impact="Improves crawl efficiency",
                ))

        if context.robots is not None:
            for advice in context.robots.recommendations:
                recommendations.append(Recommendation(
                    priority=Priority.MEDIUM,
                    category=IssueCategory.CRAWLABILITY.value,
                    issue="robots.txt configuration",
                    recommendation=advice,
                ))

        if context.sitemap is not None:
            for advice in context.sitemap.recommendations:
                recommendations.append(Recommendation(
                    priority=Priority.LOW,
                    category=IssueCategory.CRAWLABILITY.value,
                    issue="XML sitemap metadata",
                    recommendation=advice,
                ))

        duplicates = context.duplicate_content
        if duplicates is not None:
            for advice in duplicates.recommendations:
                recommendations.append(Recommendation(
                    priority=Priority.LOW,
                    category=IssueCategory.CONTENT.value,
                    issue="Content elements",
                    recommendation=advice,
                ))

        links = context.link_integrity
        if links is not None:
            for advice in links.link_equity.recommendations:
                recommendations.append(Recommendation(
                    priority=Priority.MEDIUM,
                    category=IssueCategory.LINKS.value,
                    issue="Link equity distribution needs optimization",
                    recommendation=advice,
                    impact="Better distribution of page authority",
                ))
            anchor_priority = Priority.HIGH if links.anchor_text.over_optimized else Priority.MEDIUM
            for advice in links.anchor_text.recommendations:
                recommendations.append(Recommendation(
                    priority=anchor_priority,
                    category=IssueCategory.LINKS.value,
                    issue="Anchor text distribution",
                    recommendation=advice,
                    impact="More natural anchor profile",
                ))

        technical = context.technical_factors
        if technical is not None and technical.not_found_page.returns_404:
            for advice in technical.not_found_page.recommendations:
                recommendations.append(Recommendation(
                    priority=Priority.LOW,
                    category=IssueCategory.TECHNICAL.value,
                    issue="Custom 404 page",
                    recommendation=advice,
                ))

        ranked = rank_recommendations(recommendations)
        self.logger.info(
            "Prioritization complete",
            recommendations=len(ranked),
            high=len([r for r in ranked if r.priority == Priority.HIGH]),
        )
        return PrioritizationResult(recommendations=ranked)

    def fallback(self, context: SiteContext, error: Exception) -> PrioritizationResult:
        return PrioritizationResult()
