"""Source scoring: rank and filter raw search hits without touching the network."""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

from propex.config.settings import ScoringConfig
from propex.pipeline.models import DomainCategory, SearchHit, Source

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")
_SEPARATOR_RE = re.compile(r"[\s\-_./]+")

# Tokens too generic to say anything about relevance
_STOPWORDS = frozenset({"der", "die", "das", "und", "mit", "the", "and", "for", "von", "with"})


def normalize_domain(entry: str) -> str:
    """Reduce a configured domain or URL to a bare lowercase host."""
    value = entry.strip().lower()
    if "://" not in value:
        value = f"http://{value}"
    host = urlparse(value).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host.rstrip(".")


def domain_of(url: str) -> str:
    return normalize_domain(url)


def domain_matches(host: str, patterns: tuple[str, ...] | list[str]) -> bool:
    """True if ``host`` is one of ``patterns`` or a subdomain of one."""
    if not host:
        return False
    for pattern in patterns:
        domain = normalize_domain(pattern)
        if not domain:
            continue
        if host == domain or host.endswith(f".{domain}"):
            return True
    return False


def classify_domain(url: str, config: ScoringConfig) -> DomainCategory:
    host = domain_of(url)
    if domain_matches(host, config.excluded_domains):
        return DomainCategory.EXCLUDED
    if domain_matches(host, config.manufacturer_domains):
        return DomainCategory.MANUFACTURER
    return DomainCategory.NEUTRAL


def _tokens(text: str) -> list[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text) if len(t) > 1]


def _compact(text: str) -> str:
    return _SEPARATOR_RE.sub("", text.lower())


def query_terms(product_name: str) -> list[str]:
    terms: list[str] = []
    for token in _tokens(product_name):
        if token not in _STOPWORDS and token not in terms:
            terms.append(token)
    return terms


def relevance(
    hit: SearchHit,
    article_number: str | None,
    product_name: str,
) -> float:
    """Token overlap between the query and the hit's title, snippet and URL.

    The article number counts double and is matched with separators ignored,
    so "KF-1200" matches "kf1200" in a URL path.
    """
    haystack = f"{hit.title} {hit.snippet} {hit.url}"
    hit_tokens = set(_tokens(haystack))
    terms = query_terms(product_name)

    weight_total = 0.0
    weight_hit = 0.0
    for term in terms:
        weight_total += 1.0
        if term in hit_tokens:
            weight_hit += 1.0

    if article_number and article_number.strip():
        weight_total += 2.0
        if _compact(article_number) in _compact(haystack):
            weight_hit += 2.0

    if weight_total == 0:
        return 0.0
    return weight_hit / weight_total


def score_sources(
    hits: list[SearchHit],
    article_number: str | None,
    product_name: str,
    config: ScoringConfig,
    max_results: int | None = None,
) -> list[Source]:
    """Turn raw hits into an ordered, truncated list of sources.

    Excluded domains are dropped outright. Remaining hits are scored as
    ``(1 - bonus) * overlap + bonus`` for manufacturer domains and
    ``(1 - bonus) * overlap`` otherwise, then sorted by descending score.
    The sort is stable, so equal scores keep search-rank order.
    """
    limit = config.max_results if max_results is None else max_results
    if limit <= 0 or not hits:
        return []

    bonus = config.manufacturer_bonus
    seen_urls: set[str] = set()
    scored: list[Source] = []
    excluded = 0

    for hit in hits:
        url = hit.url.strip()
        if not url or url in seen_urls:
            continue
        seen_urls.add(url)

        category = classify_domain(url, config)
        if category == DomainCategory.EXCLUDED:
            excluded += 1
            continue

        score = (1.0 - bonus) * relevance(hit, article_number, product_name)
        if category == DomainCategory.MANUFACTURER:
            score += bonus

        scored.append(
            Source(
                url=url,
                title=hit.title,
                snippet=hit.snippet,
                domain_category=category,
                priority_score=round(min(max(score, 0.0), 1.0), 6),
            )
        )

    scored.sort(key=lambda s: s.priority_score, reverse=True)

    if excluded:
        logger.info(
            "Dropped hits on excluded domains",
            extra={"excluded": excluded, "kept": len(scored)},
        )
    return scored[:limit]
