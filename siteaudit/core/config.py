"""
Configuration system with environment-based settings.
Uses pydantic-settings for validation and type safety.

Every threshold and scoring constant used by the engines lives here so that
the heuristics can be tuned per deployment without code changes.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_VERSION: str = "1.0.0"
    ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Crawler
    CRAWLER_USER_AGENT: str = "SiteAuditBot/1.0 (+https://example.com/bot)"
    CRAWLER_REQUEST_TIMEOUT_MS: int = 15_000
    CRAWLER_MAX_PAGES: int = 50
    CRAWLER_MAX_DEPTH: int = 2
    CRAWLER_MAX_PAGES_LIMIT: int = 1_000
    CRAWLER_RESPECT_ROBOTS: bool = True
    CRAWLER_VERIFY_TLS: bool = True
    CRAWLER_MAX_CONNECTIONS: int = 20
    ROBOTS_TIMEOUT_MS: int = 10_000
    ROBOTS_MAX_BYTES: int = 500 * 1024
    ROBOTS_HIGH_CRAWL_DELAY_S: float = 10.0
    SITEMAP_TIMEOUT_MS: int = 15_000
    SITEMAP_MAX_URLS: int = 50_000
    SITEMAP_LASTMOD_MIN_RATIO: float = Field(default=0.5, ge=0.0, le=1.0)

    # Link integrity
    LINKCHECK_INTERNAL_BATCH_SIZE: int = Field(default=10, ge=1)
    LINKCHECK_EXTERNAL_BATCH_SIZE: int = Field(default=5, ge=1)
    LINKCHECK_TIMEOUT_MS: int = 10_000
    LINKCHECK_BATCH_DELAY_S: float = 1.0
    LINKCHECK_MAX_LINKS: int = 500
    LINK_TEXT_MAX_LENGTH: int = 100

    # Redirects
    REDIRECT_MAX_HOPS: int = Field(default=5, ge=1)
    REDIRECT_LONG_CHAIN_THRESHOLD: int = 3

    # Content
    SIMILARITY_THRESHOLD: float = Field(default=0.8, ge=0.0, le=1.0)
    SIMILARITY_SATURATION_POINT: float = 0.9
    SIMILARITY_SATURATED_VALUE: float = 0.95
    THIN_CONTENT_WORDS: int = 300
    ANCHOR_OVER_OPTIMIZATION_RATIO: float = 0.6

    # Technical factors
    SLOW_LOAD_ISSUE_MS: int = 5_000
    NOT_FOUND_TEST_PATH: str = "/this-page-does-not-exist-404-test"

    # Crawl budget heuristic (1000 is an arbitrary baseline, not a prediction)
    BUDGET_BASELINE: int = 1_000
    BUDGET_MINIMUM: int = 100
    BUDGET_SLOW_LOAD_MS: int = 3_000
    BUDGET_LARGE_PAGE_BYTES: int = 2 * 1024 * 1024
    BUDGET_PENALTY_SLOW_LOAD: int = 20
    BUDGET_PENALTY_LARGE_PAGE: int = 15
    BUDGET_PENALTY_MISSING_ROBOTS: int = 10
    BUDGET_PENALTY_MISSING_SITEMAP: int = 15
    BUDGET_PENALTY_NOINDEX: int = 30

    # Composite score bonuses
    SCORE_BONUS_ROBOTS: float = 5.0
    SCORE_BONUS_SITEMAP: float = 10.0
    SCORE_BONUS_SELF_CANONICAL: float = 5.0
    SCORE_BONUS_SINGLE_H1: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors(cls, v: str | list) -> list:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @model_validator(mode="after")
    def check_budget_ordering(self) -> "Settings":
        # A missing sitemap must always cost more than a missing robots.txt
        if self.BUDGET_PENALTY_MISSING_SITEMAP <= self.BUDGET_PENALTY_MISSING_ROBOTS:
            raise ValueError("BUDGET_PENALTY_MISSING_SITEMAP must exceed BUDGET_PENALTY_MISSING_ROBOTS")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance - created once per process."""
    return Settings()
