"""Tests for the Tier 1/2 HTTP transport and its error mapping."""

import httpx
import pytest

from fakes import product_page
from propex.config.settings import FetchConfig
from propex.errors import FetchError, FetchErrorKind
from propex.fetch.http import HttpFetcher

URL = "https://ofenwelt.de/aduro-9"


class TestHttpFetcher:
    @pytest.mark.asyncio
    async def test_returns_body_and_content_type(self, make_http):
        http = make_http({URL: product_page("Aduro 9")})
        page = await http.get(URL, timeout_s=5)
        assert page.status_code == 200
        assert "text/html" in page.content_type
        assert "Aduro 9" in page.text
        assert not page.is_pdf

    @pytest.mark.asyncio
    async def test_not_found_is_http_error(self, make_http):
        http = make_http({})
        with pytest.raises(FetchError) as exc_info:
            await http.get(URL, timeout_s=5)
        assert exc_info.value.kind == FetchErrorKind.HTTP_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [403, 429])
    async def test_bot_wall_statuses_are_blocked(self, make_http, status):
        http = make_http({URL: (status, "denied")})
        with pytest.raises(FetchError) as exc_info:
            await http.get(URL, timeout_s=5)
        assert exc_info.value.kind == FetchErrorKind.BLOCKED

    @pytest.mark.asyncio
    async def test_timeout(self, make_http):
        http = make_http({URL: httpx.ReadTimeout("read timed out")})
        with pytest.raises(FetchError) as exc_info:
            await http.get(URL, timeout_s=5)
        assert exc_info.value.kind == FetchErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_unresolvable_host_is_dns_failure(self, make_http):
        http = make_http({URL: httpx.ConnectError("[Errno -2] Name or service not known")})
        with pytest.raises(FetchError) as exc_info:
            await http.get(URL, timeout_s=5)
        assert exc_info.value.kind == FetchErrorKind.DNS_FAILURE

    @pytest.mark.asyncio
    async def test_refused_connection_is_http_error(self, make_http):
        http = make_http({URL: httpx.ConnectError("Connection refused")})
        with pytest.raises(FetchError) as exc_info:
            await http.get(URL, timeout_s=5)
        assert exc_info.value.kind == FetchErrorKind.HTTP_ERROR

    @pytest.mark.asyncio
    async def test_pdf_detected_by_content_type(self, make_http):
        http = make_http({URL: b"%PDF-1.4 fake"})
        page = await http.get(URL, timeout_s=5)
        assert page.is_pdf

    @pytest.mark.asyncio
    async def test_body_capped(self):
        def handler(request):
            return httpx.Response(200, content=b"x" * 5000, headers={"content-type": "text/html"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        http = HttpFetcher(FetchConfig(max_response_bytes=1000), client=client)
        page = await http.get(URL, timeout_s=5)
        assert len(page.body) == 1000
        await client.aclose()

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        http = HttpFetcher(FetchConfig(), client=client)
        await http.aclose()
        assert not client.is_closed
        await client.aclose()
