"""Prompt construction for the batched extraction call.

Every successful source becomes one tagged block with a stable 0-based
index. When the blocks do not fit the context budget, the longest contents
are cut first, down to a common cap, while every header survives.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

from propex.errors import ExtractionError, ExtractionErrorKind
from propex.pipeline.models import FetchResult, PropertyDefinition

TRUNCATION_MARKER = "\n[... CONTENT TRUNCATED ...]"

SYSTEM_INSTRUCTION = (
    "You are a technical product data specialist. You extract product properties "
    "from web pages and PDF datasheets about one specific product.\n"
    "Rules:\n"
    "  1. Only report values that are stated in the sources. Never guess.\n"
    "  2. Every claim cites the 0-based indices of the SOURCE blocks it was read from.\n"
    "  3. If sources disagree, report each distinct value as its own claim.\n"
    "  4. confidence is an integer 0-100 for how certain the value is correct "
    "for this exact product.\n"
    "  5. Keep units as written in the source. Use German for free-text values.\n"
    "  6. A property that no source mentions gets an empty claims list."
)

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "properties": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "claims": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "value": {"type": "string"},
                                "confidence": {"type": "integer"},
                                "sources": {"type": "array", "items": {"type": "integer"}},
                            },
                            "required": ["value", "confidence", "sources"],
                        },
                    },
                },
                "required": ["name", "claims"],
            },
        },
    },
    "required": ["properties"],
}

# Shop call-to-action suffixes appended to product page titles
_SEP = r"(?:\s+[-–—]\s+|\s*\|\s*)"
_AD_SUFFIXES = [
    re.compile(_SEP + pattern + r"\b.*$", re.IGNORECASE)
    for pattern in (
        r"jetzt\s+(kaufen|bestellen|sparen|shoppen|anschauen|sichern|entdecken|informieren)",
        r"bei\s+[^|]+?\s+(kaufen|bestellen|sparen)",
        r"günstig(er|ste)?\s+(kaufen|bestellen)",
        r"bis\s+zu\s+\d+\s*%\s+(sparen|reduziert)",
        r"(versandkostenfrei|kostenlos(er)?\s+versand)",
        r"ab\s+\d+[,.]?\d*\s*(€|eur|euro)",
        r"(preise?\s+vergleichen|im\s+angebot|sale|rabatt)",
        r"(buy|shop)\s+(now|online|today)",
        r"free\s+(shipping|delivery)",
        r"[^|]*?online[- ]?shop",
    )
]
# Whatever follows the last pipe is the shop name
_PIPE_TAIL = re.compile(r"\s*\|\s*[^|]+$")


def clean_page_title(title: str) -> str:
    """Strip shop and advertising suffixes from a page title."""
    cleaned = title.strip()
    for pattern in [*_AD_SUFFIXES, _PIPE_TAIL]:
        candidate = pattern.sub("", cleaned).strip()
        if candidate:
            cleaned = candidate
    return cleaned.rstrip(" -|–—:,").strip()


def source_header(index: int, result: FetchResult) -> str:
    kind = "PDF DOCUMENT" if result.is_pdf else "WEB PAGE"
    title = clean_page_title(result.source.title) or result.source.url
    return (
        f"======= SOURCE {index} - {kind} =======\n"
        f"[URL: {result.source.url}]\n"
        f"[TITLE: {title}]\n"
        "[CONTENT START]\n"
    )


def _source_footer(index: int) -> str:
    return f"\n[CONTENT END]\n======= END SOURCE {index} ======="


def fit_lengths(lengths: list[int], available: int) -> list[int]:
    """Cap lengths so their sum fits ``available``, cutting the longest first.

    Sources shorter than the common cap keep their full length; all longer
    sources are cut to the same cap.
    """
    if sum(lengths) <= available:
        return list(lengths)
    order = sorted(range(len(lengths)), key=lambda i: lengths[i])
    remaining = max(available, 0)
    cap = 0
    for position, idx in enumerate(order):
        share = remaining // (len(order) - position)
        if lengths[idx] <= share:
            remaining -= lengths[idx]
        else:
            cap = share
            break
    return [min(length, cap) for length in lengths]


def _property_lines(properties: list[PropertyDefinition]) -> str:
    lines = []
    for prop in sorted(properties, key=lambda p: p.order_index):
        line = f"- {prop.name}"
        if prop.description:
            line += f": {prop.description}"
        if prop.expected_format:
            line += f" (format: {prop.expected_format})"
        lines.append(line)
    return "\n".join(lines)


@dataclass
class ExtractionPrompt:
    text: str
    source_count: int
    truncated: bool


def build_prompt(
    article_number: str | None,
    product_name: str,
    properties: list[PropertyDefinition],
    sources: list[FetchResult],
    budget_chars: int,
) -> ExtractionPrompt:
    """Build the consolidated prompt for ``sources``, indexed in list order.

    Raises:
        ExtractionError: CONTEXT_OVERFLOW if the headers alone exceed the budget.
    """
    intro = (
        "PRODUCT IDENTIFICATION:\n"
        f"- Article Number: \"{article_number or ''}\"\n"
        f"- Product Name: \"{product_name}\"\n\n"
        f"Extract these {len(properties)} properties:\n"
        f"{_property_lines(properties)}\n\n"
        f"Search all {len(sources)} sources below. Source indices run from 0 to "
        f"{len(sources) - 1}.\n\n"
        "SOURCES:\n"
    )
    outro = (
        "\n\nAnswer with JSON of the form "
        '{"properties": [{"name": "<property>", "claims": '
        '[{"value": "<value>", "confidence": <0-100>, "sources": [<index>, ...]}]}]}, '
        "one entry per requested property, using the exact property names above."
    )
    headers = [source_header(i, r) for i, r in enumerate(sources)]
    footers = [_source_footer(i) for i in range(len(sources))]
    fixed = len(intro) + len(outro) + sum(map(len, headers)) + sum(map(len, footers))
    fixed += len(TRUNCATION_MARKER) * len(sources) + 2 * len(sources)
    if fixed > budget_chars:
        raise ExtractionError(
            ExtractionErrorKind.CONTEXT_OVERFLOW,
            f"{len(sources)} source headers need {fixed} chars, budget is {budget_chars}",
        )

    contents = [r.raw_content for r in sources]
    allowed = fit_lengths([len(c) for c in contents], budget_chars - fixed)
    truncated = False
    blocks = []
    for i, content in enumerate(contents):
        body = content
        if allowed[i] < len(content):
            body = content[: allowed[i]] + TRUNCATION_MARKER
            truncated = True
        blocks.append(headers[i] + body + footers[i])

    return ExtractionPrompt(
        text=intro + "\n\n".join(blocks) + outro,
        source_count=len(sources),
        truncated=truncated,
    )


def build_reprompt(prompt: str, problems: list[str], property_names: list[str]) -> str:
    """Stricter second attempt after a response failed validation."""
    listed = "\n".join(f"  - {p}" for p in problems[:20])
    return (
        "Your previous answer was rejected because it did not match the required format:\n"
        f"{listed}\n\n"
        "Return ONLY a JSON object. No prose, no markdown. Requirements:\n"
        f"  - \"properties\" lists exactly these names: {json.dumps(property_names, ensure_ascii=False)}\n"
        "  - \"confidence\" is an integer between 0 and 100\n"
        "  - \"sources\" only contains indices of SOURCE blocks that exist\n\n"
        + prompt
    )
