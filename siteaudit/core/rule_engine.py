"""
Rule Engine - Issue catalogue driven by JSON rule definitions.

Design:
- Rules are loaded from JSON files at startup
- Each rule declares severity, category, score penalty and fix text
- Engines detect a condition and ask the registry to build the Issue
- Penalty magnitudes are configuration; their ordering is enforced here
- New issue types added without code changes to the scorer
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator

from siteaudit.engines.base import Issue, IssueCategory, Severity

logger = structlog.get_logger(__name__)

# ─────────────────────────────────────────────
# Penalty model
# ─────────────────────────────────────────────

# Inclusive bounds per severity; critical > warning > minor must always hold.
SEVERITY_PENALTY_RANGES: dict[Severity, tuple[float, float]] = {
    Severity.CRITICAL: (20.0, 25.0),
    Severity.WARNING: (10.0, 10.0),
    Severity.MINOR: (0.0, 5.0),
}

SEVERITY_DEFAULT_PENALTIES: dict[Severity, float] = {
    Severity.CRITICAL: 25.0,
    Severity.WARNING: 10.0,
    Severity.MINOR: 2.0,
}


# ─────────────────────────────────────────────
# Rule Schema
# ─────────────────────────────────────────────

class Rule(BaseModel):
    """
    Complete rule definition loaded from JSON.
    Rules are the atomic unit of the issue catalogue.
    """
    id: str
    name: str
    category: IssueCategory
    severity: Severity
    penalty: float = Field(ge=0.0, le=25.0)
    description: str            # str.format template, receives {count} and engine context
    recommendation: str
    impact: str = ""
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(r"^[a-z][a-z0-9_-]{2,63}$", v):
            raise ValueError(f"Rule ID '{v}' must be lowercase alphanumeric with hyphens/underscores")
        return v

    @model_validator(mode="after")
    def validate_penalty_range(self) -> "Rule":
        low, high = SEVERITY_PENALTY_RANGES[self.severity]
        if not low <= self.penalty <= high:
            raise ValueError(
                f"Rule '{self.id}' penalty {self.penalty} outside {self.severity.value} range [{low}, {high}]"
            )
        return self


class _FormatContext(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


# ─────────────────────────────────────────────
# Rule Registry
# ─────────────────────────────────────────────

class RuleRegistry:
    """
    Loads and manages all rule definitions.
    Rules are loaded from JSON files organized by category.
    """

    def __init__(self, rules_dir: Path):
        self.rules_dir = rules_dir
        self._rules: dict[str, Rule] = {}
        self._loaded = False

    def load(self) -> None:
        """Load all rule JSON files from the rules directory."""
        count = 0
        files = sorted(self.rules_dir.glob("**/*.json"))
        for json_file in files:
            try:
                with open(json_file, encoding="utf-8") as f:
                    data = json.load(f)

                rules_data = data if isinstance(data, list) else [data]
                for rule_data in rules_data:
                    rule = Rule.model_validate(rule_data)
                    if rule.enabled:
                        self._rules[rule.id] = rule
                        count += 1

            except Exception as e:
                logger.error("Failed to load rule file", file=str(json_file), error=str(e))

        self._loaded = True
        logger.debug("Rules loaded", total=count, files=len(files))

    def get_by_category(self, category: IssueCategory) -> list[Rule]:
        return [r for r in self._rules.values() if r.category == category]

    def get_by_id(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def get_all(self) -> list[Rule]:
        return list(self._rules.values())

    @property
    def loaded(self) -> bool:
        return self._loaded

    def build_issue(
        self,
        rule_id: str,
        affected_count: int = 1,
        affected_urls: list[str] | None = None,
        **context: Any,
    ) -> Issue:
        """Instantiate the Issue declared by rule_id, filling the description template."""
        rule = self._rules.get(rule_id)
        if rule is None:
            raise KeyError(f"Unknown rule '{rule_id}'")

        values = _FormatContext(count=affected_count, **context)
        return Issue(
            type=rule.id,
            severity=rule.severity,
            category=rule.category,
            description=rule.description.format_map(values),
            recommendation=rule.recommendation.format_map(values),
            impact=rule.impact,
            affected_count=affected_count,
            affected_urls=(affected_urls or [])[:50],
        )

    def penalty_for(self, issue: Issue) -> float:
        """Score penalty for an issue; unknown types fall back to the severity default."""
        rule = self._rules.get(issue.type)
        if rule is not None:
            return rule.penalty
        return SEVERITY_DEFAULT_PENALTIES.get(Severity(issue.severity), 0.0)


# ─────────────────────────────────────────────
# Global Registry Instance
# ─────────────────────────────────────────────

_registry: RuleRegistry | None = None


def get_rule_registry() -> RuleRegistry:
    global _registry
    if _registry is None:
        rules_dir = Path(__file__).parent.parent / "rules" / "definitions"
        _registry = RuleRegistry(rules_dir)
        _registry.load()
    return _registry
