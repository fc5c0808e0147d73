"""PDF content adapter: turns datasheets into the same FetchResult shape as web pages.

Documents come from two places: direct uploads, and search hits whose URL or
filename looks like a PDF about the product. Each document is isolated; a
corrupt or locked file fails on its own and never touches its siblings.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from urllib.parse import urlparse

import pypdf
from pypdf.errors import DependencyError, FileNotDecryptedError, PdfReadError

from propex.errors import FetchError, PdfError, PdfErrorKind
from propex.fetch.http import HttpFetcher
from propex.pipeline.models import (
    PDF_TIER,
    DomainCategory,
    FetchResult,
    PdfDocument,
    Source,
)
from propex.rate_limit import DomainRateLimiter
from propex.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

PDF_URL_HINTS = (".pdf?", "/pdf/", "print_pdf", "pdf_datasheet", "getpdf", "download_pdf")

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_SPACES_RE = re.compile(r"[ \t]+")
_GARBAGE_RUN_RE = re.compile(r"[^\w\s.,;:!?%°/()\-+=×'\"]{4,}")
_SEPARATOR_RE = re.compile(r"[\s\-_./]+")
_READABLE_PUNCT = set(".,;:!?-%/()°+=×'\"")


def looks_like_pdf_url(url: str) -> bool:
    lowered = url.lower()
    path = lowered.split("?", 1)[0].split("#", 1)[0]
    return path.endswith(".pdf") or any(hint in lowered for hint in PDF_URL_HINTS)


def _compact(text: str) -> str:
    return _SEPARATOR_RE.sub("", text.lower())


def mentions_product(text: str, article_number: str | None, product_name: str) -> bool:
    """True if ``text`` names the article number or a distinctive product-name token."""
    compact = _compact(text)
    if article_number and article_number.strip() and _compact(article_number) in compact:
        return True
    tokens = [t for t in re.findall(r"\w+", product_name.lower()) if len(t) >= 3]
    return any(token in compact for token in tokens)


def discover_pdf_sources(
    sources: list[Source], article_number: str | None, product_name: str
) -> list[Source]:
    """Sources whose URL or title marks them as a PDF about this product."""
    return [
        s
        for s in sources
        if (looks_like_pdf_url(s.url) or s.title.lower().endswith(".pdf"))
        and mentions_product(f"{s.url} {s.title}", article_number, product_name)
    ]


def clean_pdf_text(text: str) -> str:
    cleaned = _CONTROL_RE.sub("", text)
    cleaned = _SPACES_RE.sub(" ", cleaned)
    lines = (line.strip() for line in cleaned.split("\n"))
    return "\n".join(line for line in lines if line)


def is_text_garbled(text: str) -> bool:
    """Heuristic for text produced from fonts without a usable encoding map."""
    if not text:
        return False
    readable = sum(1 for ch in text if ch.isalnum() or ch.isspace() or ch in _READABLE_PUNCT)
    ratio = readable / len(text)
    if ratio < 0.5:
        return True
    return ratio < 0.7 and len(_GARBAGE_RUN_RE.findall(text)) > 5


def extract_pdf_text(data: bytes) -> str:
    """Extract cleaned text from a PDF held in memory.

    Raises:
        PdfError: CORRUPT, PASSWORD_PROTECTED or UNSUPPORTED_ENCODING.
    """
    try:
        reader = pypdf.PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            # Owner-password-only PDFs open with an empty user password
            if reader.decrypt("") == pypdf.PasswordType.NOT_DECRYPTED:
                raise PdfError(PdfErrorKind.PASSWORD_PROTECTED, "document requires a password")
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfError:
        raise
    except (FileNotDecryptedError, DependencyError) as exc:
        raise PdfError(PdfErrorKind.PASSWORD_PROTECTED, str(exc)) from exc
    except PdfReadError as exc:
        raise PdfError(PdfErrorKind.CORRUPT, str(exc)) from exc
    except Exception as exc:
        raise PdfError(PdfErrorKind.CORRUPT, f"{type(exc).__name__}: {exc}") from exc

    text = clean_pdf_text("\n\n".join(p for p in pages if p.strip()))
    if not text:
        raise PdfError(PdfErrorKind.UNSUPPORTED_ENCODING, "no extractable text (scanned image?)")
    if is_text_garbled(text):
        raise PdfError(PdfErrorKind.UNSUPPORTED_ENCODING, "extracted text is garbled")
    return text


def upload_source(doc: PdfDocument) -> Source:
    return Source(
        url=doc.url or f"upload://{doc.name}",
        title=doc.name,
        domain_category=DomainCategory.NEUTRAL,
        priority_score=1.0,
    )


class PdfAdapter:
    """Loads PDFs into the content pool as ``tier_used="pdf"`` fetch results."""

    def __init__(
        self,
        http: HttpFetcher | None = None,
        download_timeout_s: float = 30.0,
        domain_limiter: DomainRateLimiter | None = None,
    ) -> None:
        self._http = http
        self._download_timeout_s = download_timeout_s
        self._limiter = domain_limiter

    async def from_bytes(self, source: Source, data: bytes, started: float | None = None) -> FetchResult:
        """Parse ``data`` off the event loop and wrap the outcome."""
        started = time.monotonic() if started is None else started
        try:
            text = await asyncio.to_thread(extract_pdf_text, data)
        except PdfError as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.PDF_EXTRACTION_FAILED,
                message=exc.detail,
                suppressed=True,
                details={"url": source.url, "kind": exc.kind.value},
            )
            return FetchResult(
                source=source,
                tier_used=PDF_TIER,
                success=False,
                error_kind=exc.kind,
                error_detail=exc.detail,
                duration_ms=_elapsed_ms(started),
            )
        return FetchResult(
            source=source,
            tier_used=PDF_TIER,
            raw_content=text,
            success=True,
            duration_ms=_elapsed_ms(started),
        )

    async def load_document(self, doc: PdfDocument) -> FetchResult:
        return await self.from_bytes(upload_source(doc), doc.data)

    async def load_documents(self, docs: list[PdfDocument]) -> list[FetchResult]:
        return list(await asyncio.gather(*(self.load_document(d) for d in docs)))

    async def download(self, source: Source) -> FetchResult:
        """Download a discovered PDF and parse it."""
        if self._http is None:
            raise RuntimeError("PdfAdapter.download needs an HttpFetcher")
        started = time.monotonic()
        if self._limiter is not None:
            await self._limiter.acquire(urlparse(source.url).hostname or source.url)
        try:
            page = await self._http.get(
                source.url,
                timeout_s=self._download_timeout_s,
                accept="application/pdf,application/x-pdf,*/*",
            )
        except FetchError as exc:
            return FetchResult(
                source=source,
                tier_used=PDF_TIER,
                success=False,
                error_kind=exc.kind,
                error_detail=exc.detail,
                duration_ms=_elapsed_ms(started),
            )
        return await self.from_bytes(source, page.body, started)


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)
