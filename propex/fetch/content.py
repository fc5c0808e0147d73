"""HTML-to-text conversion and content-quality heuristics: no network, no AI.

The fetcher evaluates every tier's output with ``assess_content`` to decide
whether to escalate to the next tier.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum

import html2text
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


class ContentVerdict(str, Enum):
    OK = "OK"
    TOO_SHORT = "TOO_SHORT"
    JS_REQUIRED = "JS_REQUIRED"
    BLOCKED = "BLOCKED"


@dataclass
class ContentAssessment:
    """Result of the content-quality check for one tier's output."""

    verdict: ContentVerdict
    text_length: int
    markers: list[str] = field(default_factory=list)

    @property
    def sufficient(self) -> bool:
        return self.verdict == ContentVerdict.OK


# Markers of client-rendered applications whose server HTML is an empty shell
JS_SHELL_MARKERS = [
    "__next_data__",
    "__nuxt__",
    "data-reactroot",
    "data-server-rendered",
    "ng-app",
    "ng-version",
    "v-cloak",
    'id="root"></div>',
    'id="app"></div>',
    "window.__initial_state__",
    "appregistry.registerinitialstate",
    "_buildmanifest.js",
    "please enable javascript",
    "you need to enable javascript",
    "bitte aktivieren sie javascript",
]

# Markers of bot walls and access denials
BLOCK_MARKERS = [
    "g-recaptcha",
    "h-captcha",
    "hcaptcha.com",
    "cf-challenge",
    "challenge-platform",
    "access denied",
    "zugriff verweigert",
    "are you a robot",
    "verify you are human",
    "request unsuccessful. incapsula",
]

# Non-content regions stripped before conversion
NOISE_SELECTORS = [
    "script",
    "style",
    "noscript",
    "iframe",
    "nav",
    "header",
    "footer",
    "svg",
    '[class*="cookie"]',
    '[id*="cookie"]',
    '[class*="popup"]',
    '[class*="modal"]',
    '[class*="advert"]',
]

_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


def find_markers(html: str, markers: list[str]) -> list[str]:
    html_lower = html.lower()
    return [m for m in markers if m in html_lower]


def assess_content(html: str, text: str, min_chars: int) -> ContentAssessment:
    """Classify a tier's output.

    Block markers win over everything else. JS-shell markers only count when
    the visible text is too short, since many server-rendered pages also
    ship a framework bundle.
    """
    length = len(text.strip())

    blocked = find_markers(html, BLOCK_MARKERS)
    if blocked and length < min_chars * 4:
        return ContentAssessment(ContentVerdict.BLOCKED, length, blocked)

    if length >= min_chars:
        return ContentAssessment(ContentVerdict.OK, length)

    shell = find_markers(html, JS_SHELL_MARKERS)
    if shell:
        return ContentAssessment(ContentVerdict.JS_REQUIRED, length, shell)
    return ContentAssessment(ContentVerdict.TOO_SHORT, length)


def page_title(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    h1 = soup.find("h1")
    return h1.get_text(strip=True) if h1 else ""


def _json_ld_blocks(soup: BeautifulSoup) -> list[str]:
    blocks: list[str] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue
        blocks.append(json.dumps(parsed, ensure_ascii=False, indent=1))
    return blocks


def _microdata(soup: BeautifulSoup) -> list[str]:
    lines: list[str] = []
    for scope in soup.find_all(attrs={"itemscope": True}):
        item_type = scope.get("itemtype", "") or ""
        if "Product" not in item_type and "Offer" not in item_type:
            continue
        for prop in scope.find_all(attrs={"itemprop": True}):
            value = prop.get("content") or prop.get_text(" ", strip=True)
            if value:
                lines.append(f"{prop['itemprop']}: {value}")
    return lines


def html_to_text(html: str) -> str:
    """Convert a product page to plain text, structured data first.

    Output layout: ``[STRUCTURED DATA]`` JSON-LD blocks, microdata lines,
    title and meta description, then the visible body text.
    """
    soup = BeautifulSoup(html, "html.parser")
    parts: list[str] = []

    for block in _json_ld_blocks(soup):
        parts.append(f"[STRUCTURED DATA]\n{block}")

    microdata = _microdata(soup)
    if microdata:
        parts.append("[MICRODATA]\n" + "\n".join(microdata))

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    if title:
        parts.append(f"Title: {title}")
    meta = soup.find("meta", attrs={"name": "description"})
    if meta and meta.get("content"):
        parts.append(f"Description: {meta['content'].strip()}")

    for selector in NOISE_SELECTORS:
        for tag in soup.select(selector):
            if tag.name in ("html", "body"):
                continue
            tag.decompose()
    body = soup.body or soup
    text = _h2t.handle(str(body)).strip()
    if text:
        parts.append(text)

    return "\n\n".join(parts)


def harvest_embedded_state(html: str) -> str:
    """Pull data that client-side apps embed as JSON in the initial HTML.

    Covers ``__NEXT_DATA__``, ``__NUXT_DATA__`` and inline
    ``application/json`` script blocks. Returns flattened ``key: value``
    lines, or an empty string when nothing useful is embedded.
    """
    soup = BeautifulSoup(html, "html.parser")
    lines: list[str] = []
    for script in soup.find_all("script"):
        script_id = (script.get("id") or "").lower()
        script_type = (script.get("type") or "").lower()
        if script_id not in {"__next_data__", "__nuxt_data__"} and script_type != "application/json":
            continue
        raw = script.string or script.get_text()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        _flatten(data, "", lines)
    return "\n".join(lines)


def _flatten(value: object, prefix: str, out: list[str], depth: int = 0) -> None:
    if depth > 12 or len(out) > 5000:
        return
    if isinstance(value, dict):
        for key, child in value.items():
            name = f"{prefix}.{key}" if prefix else str(key)
            _flatten(child, name, out, depth + 1)
    elif isinstance(value, list):
        for idx, child in enumerate(value[:200]):
            _flatten(child, f"{prefix}[{idx}]", out, depth + 1)
    elif isinstance(value, str):
        stripped = value.strip()
        if stripped and len(stripped) < 2000 and not stripped.startswith(("http", "/")):
            out.append(f"{prefix}: {stripped}")
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        out.append(f"{prefix}: {value}")
