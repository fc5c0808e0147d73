"""HTTP transport for Tier 1 and Tier 2 fetches.

Maps every transport or status failure onto a ``FetchErrorKind`` so the
fetcher can decide how to escalate.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass

import httpx

from propex.config.settings import FetchConfig
from propex.errors import FetchError, FetchErrorKind

_DNS_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
)

# Status codes bot walls typically answer with
_BLOCK_STATUSES = {401, 403, 429, 451}


@dataclass
class HttpPage:
    """Body and headers of one HTTP response."""

    url: str
    status_code: int
    content_type: str
    body: bytes

    @property
    def is_pdf(self) -> bool:
        return "pdf" in self.content_type or self.body[:5] == b"%PDF-"

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _is_dns_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return True
        if any(hint in str(current).lower() for hint in _DNS_HINTS):
            return True
        current = current.__cause__ or current.__context__
    return False


class HttpFetcher:
    """Thin wrapper over a shared ``httpx.AsyncClient``."""

    def __init__(self, config: FetchConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=config.max_redirects,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def _headers(self, accept: str) -> dict[str, str]:
        return {
            "User-Agent": self._config.user_agent,
            "Accept": accept,
            "Accept-Language": self._config.accept_language,
        }

    async def get(
        self,
        url: str,
        timeout_s: float,
        accept: str = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    ) -> HttpPage:
        """GET ``url`` with a body size cap.

        Raises:
            FetchError: with kind TIMEOUT, DNS_FAILURE, BLOCKED or HTTP_ERROR.
        """
        cap = self._config.max_response_bytes
        try:
            async with self._client.stream(
                "GET", url, headers=self._headers(accept), timeout=timeout_s
            ) as response:
                chunks: list[bytes] = []
                size = 0
                async for chunk in response.aiter_bytes():
                    chunks.append(chunk)
                    size += len(chunk)
                    if size > cap:
                        break
                body = b"".join(chunks)[:cap]
                status = response.status_code
                content_type = response.headers.get("content-type", "").lower()
                final_url = str(response.url)
        except httpx.TimeoutException as exc:
            raise FetchError(FetchErrorKind.TIMEOUT, f"{url}: {exc}") from exc
        except httpx.TooManyRedirects as exc:
            raise FetchError(FetchErrorKind.HTTP_ERROR, f"{url}: {exc}") from exc
        except httpx.TransportError as exc:
            if _is_dns_failure(exc):
                raise FetchError(FetchErrorKind.DNS_FAILURE, f"{url}: {exc}") from exc
            raise FetchError(FetchErrorKind.HTTP_ERROR, f"{url}: {exc}") from exc

        if status in _BLOCK_STATUSES:
            raise FetchError(FetchErrorKind.BLOCKED, f"{url}: HTTP {status}")
        if status >= 400:
            raise FetchError(FetchErrorKind.HTTP_ERROR, f"{url}: HTTP {status}")

        return HttpPage(url=final_url, status_code=status, content_type=content_type, body=body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
