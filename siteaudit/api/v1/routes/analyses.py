"""
Analysis API Routes

No business logic lives here.
Routes validate input, call the pipeline, return responses.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, status

from siteaudit.core.config import get_settings
from siteaudit.engines.base import AnalysisReport, AnalysisRequest
from siteaudit.workers.analysis import run_site_analysis

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("", response_model=AnalysisReport)
async def create_analysis(payload: AnalysisRequest) -> AnalysisReport:
    """
    Run a full site analysis synchronously and return the report.

    The crawl is bounded by max_pages and max_depth, so the request
    always terminates; large sites should lower max_pages.
    """
    settings = get_settings()
    if payload.max_pages > settings.CRAWLER_MAX_PAGES_LIMIT:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"max_pages must be between 1 and {settings.CRAWLER_MAX_PAGES_LIMIT}",
        )

    logger.info("Analysis requested", url=payload.root_url, max_pages=payload.max_pages, max_depth=payload.max_depth)
    # InvalidURLError is mapped to 422 by the application exception handler
    return await run_site_analysis(payload)
