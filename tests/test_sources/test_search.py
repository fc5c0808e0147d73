"""Tests for the search provider client and query construction."""

import httpx
import pytest

from propex.pipeline.models import SearchHit
from propex.rate_limit import TokenBucket
from propex.sources.search import ValueSerpSearchProvider, build_queries, collect_hits


class TestBuildQueries:
    def test_site_queries_come_first(self):
        queries = build_queries("123", "Aduro 9", ("https://www.aduro.de", "aduro.com"))
        assert queries == [
            'site:aduro.de "Aduro 9"',
            'site:aduro.com "Aduro 9"',
            "123 Aduro 9",
        ]

    def test_without_manufacturers_only_general_query(self):
        assert build_queries(None, "Aduro 9") == ["Aduro 9"]


class _ScriptedProvider:
    def __init__(self, results):
        self._results = results
        self.queries = []

    async def search(self, query, num=10):
        self.queries.append(query)
        return self._results.get(query, [])


class TestCollectHits:
    @pytest.mark.asyncio
    async def test_merges_and_deduplicates(self):
        provider = _ScriptedProvider(
            {
                'site:aduro.de "Aduro 9"': [SearchHit(url="https://aduro.de/a9")],
                "Aduro 9": [
                    SearchHit(url="https://aduro.de/a9"),
                    SearchHit(url="https://ofenwelt.de/a9"),
                ],
            }
        )
        hits = await collect_hits(provider, None, "Aduro 9", ("aduro.de",))
        assert [h.url for h in hits] == ["https://aduro.de/a9", "https://ofenwelt.de/a9"]
        assert len(provider.queries) == 2


class TestValueSerpProvider:
    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            ValueSerpSearchProvider("", TokenBucket(10.0, 5))

    @pytest.mark.asyncio
    async def test_parses_organic_results(self):
        def handler(request):
            assert request.url.params["q"] == "Aduro 9"
            return httpx.Response(
                200,
                json={
                    "organic_results": [
                        {"link": "https://aduro.de/a9", "title": "Aduro 9", "snippet": "6 kW"},
                        {"title": "no link"},
                    ]
                },
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = ValueSerpSearchProvider("key", TokenBucket(100.0, 10), client=client)
            hits = await provider.search("Aduro 9")
        assert hits == [SearchHit(url="https://aduro.de/a9", title="Aduro 9", snippet="6 kW")]

    @pytest.mark.asyncio
    async def test_http_failure_yields_no_hits(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = ValueSerpSearchProvider("key", TokenBucket(100.0, 10), client=client)
            assert await provider.search("Aduro 9") == []
