"""Search-results provider client.

Best-effort: a failed or empty query yields fewer hits, never an exception
for the job. Manufacturer-restricted queries run first so that manufacturer
pages make it into the candidate list even when they rank low globally.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from propex.pipeline.models import SearchHit
from propex.rate_limit import TokenBucket
from propex.sources.scorer import normalize_domain
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

VALUESERP_URL = "https://api.valueserp.com/search"


class SearchProvider(Protocol):
    async def search(self, query: str, num: int = 10) -> list[SearchHit]: ...


def build_queries(
    article_number: str | None,
    product_name: str,
    manufacturer_domains: tuple[str, ...] = (),
) -> list[str]:
    """Site-restricted queries per manufacturer domain, then the general query."""
    terms = " ".join(t for t in (article_number or "", product_name) if t.strip())
    quoted = f'"{product_name}"' if product_name.strip() else terms
    queries = [
        f"site:{domain} {quoted}"
        for domain in (normalize_domain(d) for d in manufacturer_domains)
        if domain
    ]
    queries.append(terms)
    return queries


class ValueSerpSearchProvider:
    """ValueSERP organic-results client."""

    def __init__(
        self,
        api_key: str,
        limiter: TokenBucket,
        client: httpx.AsyncClient | None = None,
        location: str = "Germany",
        language: str = "de",
        timeout_s: float = 20.0,
    ) -> None:
        if not api_key:
            raise ValueError("VALUESERP_API_KEY is not set")
        self._api_key = api_key
        self._limiter = limiter
        self._client = client
        self._location = location
        self._language = language
        self._timeout_s = timeout_s

    async def search(self, query: str, num: int = 10) -> list[SearchHit]:
        await self._limiter.acquire()
        params = {
            "api_key": self._api_key,
            "q": query,
            "num": str(num),
            "location": self._location,
            "hl": self._language,
            "output": "json",
        }
        try:
            if self._client is not None:
                response = await self._client.get(
                    VALUESERP_URL, params=params, timeout=self._timeout_s
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(
                        VALUESERP_URL, params=params, timeout=self._timeout_s
                    )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.SEARCH_FAILED,
                message=str(exc),
                suppressed=True,
                details={"query": query},
            )
            return []

        hits: list[SearchHit] = []
        for item in payload.get("organic_results", []) or []:
            link = item.get("link")
            if not link:
                continue
            hits.append(
                SearchHit(
                    url=link,
                    title=item.get("title", "") or "",
                    snippet=item.get("snippet", "") or "",
                )
            )
        return hits


async def collect_hits(
    provider: SearchProvider,
    article_number: str | None,
    product_name: str,
    manufacturer_domains: tuple[str, ...] = (),
    per_query: int = 10,
) -> list[SearchHit]:
    """Run every query in order and merge the hits, dropping repeated URLs."""
    merged: list[SearchHit] = []
    seen: set[str] = set()
    for query in build_queries(article_number, product_name, manufacturer_domains):
        for hit in await provider.search(query, num=per_query):
            if hit.url in seen:
                continue
            seen.add(hit.url)
            merged.append(hit)
    logger.info("Search collected hits", extra={"hits": len(merged)})
    return merged
