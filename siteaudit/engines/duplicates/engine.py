"""
Duplicate Content Engine - exact and near-duplicate detection over the crawled set.

- Exact groups: identical title / meta description / H1 across pages
- Canonical audit: missing, self-referencing and cross-canonical pages
- Similarity: fingerprint equality, else a word-count ratio heuristic
- Thin content: indexable pages under the word threshold
- Content elements: images reused across pages, pages without headings,
  images or internal links (advice only, never scored)
"""

from __future__ import annotations

from collections import defaultdict
from itertools import combinations

import structlog

from siteaudit.core.config import get_settings
from siteaudit.core.rule_engine import RuleRegistry, get_rule_registry
from siteaudit.engines.base import (
    AuditEngine,
    CanonicalAudit,
    CanonicalMismatch,
    CrawledPage,
    DuplicateContentReport,
    DuplicateGroup,
    DuplicateImageGroup,
    DuplicateKey,
    Issue,
    MissingContentElements,
    SimilarPagePair,
    SiteContext,
    ThinContentPage,
)
from siteaudit.engines.crawler.engine import URLNormalizer

logger = structlog.get_logger(__name__)

_DUPLICATE_RULES = {
    DuplicateKey.TITLE: "duplicate_titles",
    DuplicateKey.META_DESCRIPTION: "duplicate_meta_descriptions",
    DuplicateKey.H1: "duplicate_h1s",
}


def content_similarity(
    fingerprint_a: str,
    fingerprint_b: str,
    word_count_a: int,
    word_count_b: int,
) -> float:
    """
    Heuristic similarity in [0, 1].

    Equal fingerprints are 1.0. Otherwise similarity is the word-count ratio,
    saturated to a fixed high value above the saturation point. Word counts are
    a proxy, not a content comparison.
    """
    if fingerprint_a and fingerprint_a == fingerprint_b:
        return 1.0

    largest = max(word_count_a, word_count_b)
    if largest == 0:
        return 0.0

    settings = get_settings()
    similarity = 1 - abs(word_count_a - word_count_b) / largest
    if similarity > settings.SIMILARITY_SATURATION_POINT:
        similarity = settings.SIMILARITY_SATURATED_VALUE
    return round(similarity, 2)


def find_duplicate_groups(pages: list[CrawledPage]) -> list[DuplicateGroup]:
    groups: list[DuplicateGroup] = []
    for key_type in DuplicateKey:
        members: dict[str, list[str]] = defaultdict(list)
        for page in pages:
            value = getattr(page, key_type.value)
            if value:
                members[value].append(page.url)
        groups.extend(
            DuplicateGroup(key_type=key_type, key_value=value, member_urls=urls)
            for value, urls in members.items()
            if len(urls) > 1
        )
    return groups


def audit_canonicals(pages: list[CrawledPage]) -> CanonicalAudit:
    audit = CanonicalAudit()
    for page in pages:
        if not page.ok:
            continue
        if not page.canonical_url:
            audit.missing.append(page.url)
            continue
        own = URLNormalizer.normalize(page.url, page.url)
        canonical = URLNormalizer.normalize(page.canonical_url, page.url)
        if canonical is not None and canonical == own:
            audit.self_referencing.append(page.url)
        else:
            audit.cross_canonical.append(CanonicalMismatch(url=page.url, canonical=page.canonical_url))
    return audit


def find_similar_pages(pages: list[CrawledPage], threshold: float) -> list[SimilarPagePair]:
    candidates = [p for p in pages if p.ok and p.content_fingerprint]
    pairs: list[SimilarPagePair] = []
    for a, b in combinations(candidates, 2):
        similarity = content_similarity(a.content_fingerprint, b.content_fingerprint, a.word_count, b.word_count)
        if similarity >= threshold:
            pairs.append(SimilarPagePair(
                url_a=a.url,
                url_b=b.url,
                similarity=similarity,
                fingerprint_a=a.content_fingerprint,
                fingerprint_b=b.content_fingerprint,
            ))
    return pairs


def find_thin_content(pages: list[CrawledPage], min_words: int) -> list[ThinContentPage]:
    thin: list[ThinContentPage] = []
    for page in pages:
        if not page.is_indexable or page.word_count >= min_words:
            continue
        notes = ["Extremely thin content (under 100 words)" if page.word_count < 100 else "Thin content"]
        if page.heading_counts.get("h1", 0) == 0:
            notes.append("Missing H1 heading")
        if not page.meta_description:
            notes.append("Missing meta description")
        thin.append(ThinContentPage(
            url=page.url,
            word_count=page.word_count,
            content_ratio=round(page.word_count / min_words, 2),
            notes=notes,
        ))
    return thin


def find_duplicate_images(pages: list[CrawledPage]) -> list[DuplicateImageGroup]:
    """Image sources used on more than one page, in first-seen order."""
    by_src: dict[str, list[str]] = defaultdict(list)
    for page in pages:
        if not page.ok:
            continue
        for image in page.images:
            if image.src and page.url not in by_src[image.src]:
                by_src[image.src].append(page.url)
    return [
        DuplicateImageGroup(src=src, member_urls=urls)
        for src, urls in by_src.items()
        if len(urls) > 1
    ]


def find_missing_content(pages: list[CrawledPage]) -> MissingContentElements:
    missing = MissingContentElements()
    for page in pages:
        if not page.ok:
            continue
        if not any(page.heading_counts.values()):
            missing.no_headings.append(page.url)
        if not page.images:
            missing.no_images.append(page.url)
        if not page.internal_links:
            missing.no_internal_links.append(page.url)
    return missing


class DuplicateContentEngine(AuditEngine):
    ENGINE_NAME = "duplicates"

    def __init__(self, registry: RuleRegistry | None = None):
        super().__init__()
        self.registry = registry or get_rule_registry()
        self.settings = get_settings()

    async def run(self, context: SiteContext) -> DuplicateContentReport:
        pages = context.pages
        request = context.request

        report = DuplicateContentReport(
            groups=find_duplicate_groups(pages),
            canonical=audit_canonicals(pages),
            similarity_threshold=request.similarity_threshold,
            thin_content=find_thin_content(pages, self.settings.THIN_CONTENT_WORDS),
            duplicate_images=find_duplicate_images(pages),
            missing_content=find_missing_content(pages),
        )
        if request.check_similarity:
            report.similar_pages = find_similar_pages(pages, request.similarity_threshold)
            report.similarity_checked = True

        report.issues = self._build_issues(report)
        report.recommendations = self._content_advice(report)
        return report

    @staticmethod
    def _content_advice(report: DuplicateContentReport) -> list[str]:
        advice: list[str] = []
        if report.duplicate_images:
            advice.append(
                f"Review {len(report.duplicate_images)} images reused across pages"
                " and use page-specific images where they carry content"
            )
        missing = report.missing_content
        if missing.no_headings:
            advice.append(f"Add headings to {len(missing.no_headings)} pages without any heading structure")
        if missing.no_images:
            advice.append(f"Add relevant images to {len(missing.no_images)} text-only pages")
        if missing.no_internal_links:
            advice.append(f"Link {len(missing.no_internal_links)} dead-end pages into the rest of the site")
        return advice

    def _build_issues(self, report: DuplicateContentReport) -> list[Issue]:
        issues: list[Issue] = []

        for key_type, rule_id in _DUPLICATE_RULES.items():
            groups = report.groups_for(key_type)
            if groups:
                urls = [url for g in groups for url in g.member_urls]
                issues.append(self.registry.build_issue(
                    rule_id, affected_count=len(urls), affected_urls=urls, groups=len(groups),
                ))

        if report.similar_pages:
            urls = list(dict.fromkeys(u for p in report.similar_pages for u in (p.url_a, p.url_b)))
            issues.append(self.registry.build_issue(
                "similar_content", affected_count=len(report.similar_pages), affected_urls=urls,
            ))

        if report.thin_content:
            issues.append(self.registry.build_issue(
                "thin_content",
                affected_count=len(report.thin_content),
                affected_urls=[p.url for p in report.thin_content],
                threshold=self.settings.THIN_CONTENT_WORDS,
            ))

        if report.canonical.missing:
            issues.append(self.registry.build_issue(
                "missing_canonical",
                affected_count=len(report.canonical.missing),
                affected_urls=report.canonical.missing,
            ))

        return issues

    def fallback(self, context: SiteContext, error: Exception) -> DuplicateContentReport:
        return DuplicateContentReport(similarity_threshold=context.request.similarity_threshold)
