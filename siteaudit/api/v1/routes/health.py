"""Health endpoints. The service has no backing stores; health means the rule catalogue is usable."""

from fastapi import APIRouter
from pydantic import BaseModel

from siteaudit.core.config import get_settings
from siteaudit.core.rule_engine import get_rule_registry
from siteaudit.engines.base import IssueCategory

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    rules_by_category: dict[str, int]
    checks: dict[str, str]


@router.get("", response_model=HealthResponse, include_in_schema=False)
async def health_check() -> HealthResponse:
    registry = get_rule_registry()
    by_category = {c.value: len(registry.get_by_category(c)) for c in IssueCategory}
    # crawl_budget findings are advice, not scored rules
    scored = {k: v for k, v in by_category.items() if k != IssueCategory.CRAWL_BUDGET.value}

    checks = {
        "rules": "healthy" if registry.loaded and registry.get_all() else "unhealthy: no rules loaded",
        "rule_categories": (
            "healthy" if all(scored.values())
            else "unhealthy: empty " + ", ".join(k for k, v in scored.items() if not v)
        ),
    }
    overall = "healthy" if all(not v.startswith("unhealthy") for v in checks.values()) else "degraded"

    return HealthResponse(
        status=overall,
        version=get_settings().APP_VERSION,
        rules_by_category=by_category,
        checks=checks,
    )


@router.get("/ready", include_in_schema=False)
async def readiness() -> dict:
    return {"ready": get_rule_registry().loaded}


@router.get("/live", include_in_schema=False)
async def liveness() -> dict:
    return {"alive": True}
