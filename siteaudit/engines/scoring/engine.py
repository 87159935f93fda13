"""
Scoring Engine - Aggregates every engine's issues into one 0-100 score.

Scoring Model:
- Start at 100
- Each issue subtracts the constant penalty of its rule (critical > warning > minor)
- Positive signals add fixed bonuses (robots, sitemap, self-canonical, single H1)
- Clamp to [0, 100] and map to an A-F grade
"""

from __future__ import annotations

import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AuditEngine,
    Issue,
    ScoreAdjustment,
    ScoreResult,
    Severity,
    SiteContext,
)

logger = structlog.get_logger(__name__)


def collect_issues(context: SiteContext) -> list[Issue]:
    """All issues in pipeline order: robots, sitemap, crawl, technical, content, links, budget."""
    return [issue for result in context.engine_results() for issue in result.issues]


def score_bonuses(context: SiteContext) -> list[ScoreAdjustment]:
    settings = get_settings()
    bonuses: list[ScoreAdjustment] = []

    if context.robots is not None and context.robots.exists:
        bonuses.append(ScoreAdjustment(reason="robots.txt present", points=settings.SCORE_BONUS_ROBOTS))
    if context.sitemap is not None and context.sitemap.exists:
        bonuses.append(ScoreAdjustment(reason="XML sitemap present", points=settings.SCORE_BONUS_SITEMAP))

    technical = context.technical_factors
    if technical is not None:
        if technical.canonical.self_referencing:
            bonuses.append(ScoreAdjustment(
                reason="Self-referencing canonical", points=settings.SCORE_BONUS_SELF_CANONICAL,
            ))
        if technical.heading_structure.get("h1", 0) == 1:
            bonuses.append(ScoreAdjustment(reason="Exactly one H1", points=settings.SCORE_BONUS_SINGLE_H1))

    return bonuses


class ScoringEngine(AuditEngine):
    """
    Aggregates all engine results into the overall site score.
    This engine runs AFTER all other engines complete.
    """

    ENGINE_NAME = "scoring"

    def __init__(self, registry: RuleRegistry | None = None):
        super().__init__()
        self.registry = registry or get_rule_registry()

    async def run(self, context: SiteContext) -> ScoreResult:
        issues = collect_issues(context)

        deductions = [
            ScoreAdjustment(reason=issue.type, points=self.registry.penalty_for(issue))
            for issue in issues
        ]
        bonuses = score_bonuses(context)

        raw = 100.0 - sum(d.points for d in deductions) + sum(b.points for b in bonuses)
        score = round(max(0.0, min(100.0, raw)), 2)

        self.logger.info(
            "Score calculated",
            score=score,
            raw=raw,
            issues=len(issues),
            critical=len([i for i in issues if i.severity == Severity.CRITICAL]),
            warning=len([i for i in issues if i.severity == Severity.WARNING]),
            minor=len([i for i in issues if i.severity == Severity.MINOR]),
        )

        return ScoreResult(
            score=score,
            grade=self.calculate_grade(score),
            issues=issues,
            deductions=deductions,
            bonuses=bonuses,
        )

    def fallback(self, context: SiteContext, error: Exception) -> ScoreResult:
        return ScoreResult(score=0.0, grade="F", issues=collect_issues(context))
