"""Consistency reconciler: turns raw per-source claims into one value per property.

Pure functions over immutable inputs; runs after fetch and extraction have
settled.

Ranking of competing values for one property:

    1. highest confidence
    2. backed by a manufacturer-domain source
    3. more supporting sources
    4. first appearance in the model's answer
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from propex.errors import ConsistencyWarning
from propex.pipeline.models import (
    AlternateValue,
    ExtractedPropertyClaim,
    PropertyDefinition,
    PropertyStatus,
    ReconciledProperty,
    Source,
    SourceAttribution,
)

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_DECIMAL_COMMA_RE = re.compile(r"(?<=\d),(?=\d)")
_NUMBER_UNIT_RE = re.compile(r"(?<=\d)\s+(?=[^\W\d_]|[%°²³])")


def normalize_value(value: str) -> str:
    """Comparison key for a value.

    Case-insensitive, trimmed, whitespace collapsed, decimal comma read as a
    decimal point, and no space between a number and its unit, so
    ``"1270 mm"``, ``"1270mm"`` and ``"1270  MM"`` compare equal.
    """
    key = _WHITESPACE_RE.sub(" ", value.strip().casefold())
    key = _DECIMAL_COMMA_RE.sub(".", key)
    return _NUMBER_UNIT_RE.sub("", key)


@dataclass
class _ValueGroup:
    """All claims for one property that normalize to the same key."""

    value: str
    confidence: int
    first_seen: int
    indices: set[int] = field(default_factory=set)

    def add(self, claim: ExtractedPropertyClaim) -> None:
        if claim.confidence_percent > self.confidence:
            self.value = claim.value
            self.confidence = claim.confidence_percent
        self.indices |= claim.source_indices


def _has_manufacturer(group: _ValueGroup, sources: list[Source]) -> bool:
    return any(sources[i].is_manufacturer for i in group.indices if i < len(sources))


def _attribution(indices: set[int], sources: list[Source]) -> list[SourceAttribution]:
    seen: set[str] = set()
    out = []
    for i in sorted(indices):
        if i >= len(sources) or sources[i].url in seen:
            continue
        seen.add(sources[i].url)
        out.append(SourceAttribution(url=sources[i].url, title=sources[i].title))
    return out


def _group_claims(claims: list[ExtractedPropertyClaim]) -> dict[str, dict[str, _ValueGroup]]:
    by_property: dict[str, dict[str, _ValueGroup]] = {}
    for position, claim in enumerate(claims):
        groups = by_property.setdefault(claim.property_name, {})
        key = normalize_value(claim.value)
        group = groups.get(key)
        if group is None:
            groups[key] = group = _ValueGroup(
                value=claim.value, confidence=claim.confidence_percent, first_seen=position
            )
        group.add(claim)
    return by_property


def _reconcile_one(
    name: str, groups: list[_ValueGroup], sources: list[Source], agreement_bonus: int
) -> ReconciledProperty:
    if not groups:
        return ReconciledProperty(property_name=name, status=PropertyStatus.NOT_FOUND)

    ranked = sorted(
        groups,
        key=lambda g: (
            -g.confidence,
            not _has_manufacturer(g, sources),
            -len(g.indices),
            g.first_seen,
        ),
    )
    primary = ranked[0]

    if len(ranked) == 1:
        extra_sources = max(len(primary.indices) - 1, 0)
        return ReconciledProperty(
            property_name=name,
            value=primary.value,
            confidence_percent=min(100, primary.confidence + agreement_bonus * extra_sources),
            is_consistent_across_sources=True,
            status=PropertyStatus.FOUND,
            source_attribution=_attribution(primary.indices, sources),
        )

    warning = ConsistencyWarning(name, [g.value for g in ranked])
    logger.info(
        "Sources disagree on property value: %s",
        warning,
        extra={"property": name, "values": warning.values},
    )
    return ReconciledProperty(
        property_name=name,
        value=primary.value,
        confidence_percent=primary.confidence,
        is_consistent_across_sources=False,
        status=PropertyStatus.INCONSISTENT,
        source_attribution=_attribution(primary.indices, sources),
        alternate_values=[
            AlternateValue(
                value=g.value,
                confidence_percent=g.confidence,
                source_attribution=_attribution(g.indices, sources),
            )
            for g in ranked[1:]
        ],
    )


def _ordered(properties: list[PropertyDefinition]) -> list[PropertyDefinition]:
    return sorted(properties, key=lambda p: p.order_index)


def reconcile(
    claims: list[ExtractedPropertyClaim],
    properties: list[PropertyDefinition],
    sources: list[Source],
    agreement_bonus: int = 5,
) -> list[ReconciledProperty]:
    """One ``ReconciledProperty`` per requested property, in ``order_index`` order.

    ``sources`` is the indexed list the claims' ``source_indices`` refer to.
    Claims for properties that were not requested are ignored.
    """
    grouped = _group_claims(claims)
    return [
        _reconcile_one(
            prop.name, list(grouped.get(prop.name, {}).values()), sources, agreement_bonus
        )
        for prop in _ordered(properties)
    ]


def failed_properties(properties: list[PropertyDefinition]) -> list[ReconciledProperty]:
    """Placeholder entries for a batch whose extraction failed."""
    return [
        ReconciledProperty(property_name=prop.name, status=PropertyStatus.EXTRACTION_FAILED)
        for prop in _ordered(properties)
    ]
