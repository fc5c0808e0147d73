"""Tests for value normalization and cross-source reconciliation."""

import logging

import pytest

from propex.pipeline.models import (
    DomainCategory,
    ExtractedPropertyClaim,
    PropertyDefinition,
    PropertyStatus,
    Source,
)
from propex.reconcile.reconciler import failed_properties, normalize_value, reconcile

SOURCES = [
    Source(url="https://ofenwelt.de/a9", title="Ofenwelt"),
    Source(url="https://aduro.de/a9", title="Aduro", domain_category=DomainCategory.MANUFACTURER),
    Source(url="https://kamdi24.de/a9", title="Kamdi24"),
]


def _claim(name, value, confidence, *indices):
    return ExtractedPropertyClaim(
        property_name=name,
        value=value,
        confidence_percent=confidence,
        source_indices=frozenset(indices),
    )


class TestNormalizeValue:
    @pytest.mark.parametrize(
        "a,b",
        [
            ("Höhe: 1270mm", "Höhe: 1270 mm"),
            ("1270  MM", "1270mm"),
            ("2,5 kg", "2.5 kg"),
            ("  schwarz ", "Schwarz"),
            ("80 %", "80%"),
        ],
    )
    def test_equivalent_spellings(self, a, b):
        assert normalize_value(a) == normalize_value(b)

    def test_different_numbers_differ(self):
        assert normalize_value("25 kW") != normalize_value("30 kW")

    def test_decimal_comma_not_dropped(self):
        assert normalize_value("1,5 kW") != normalize_value("15 kW")


class TestReconcile:
    def test_unit_spacing_counts_as_agreement(self):
        claims = [_claim("Höhe", "Höhe: 1270mm", 80, 0), _claim("Höhe", "Höhe: 1270 mm", 85, 2)]
        [result] = reconcile(claims, [PropertyDefinition(name="Höhe")], SOURCES)
        assert result.status == PropertyStatus.FOUND
        assert result.is_consistent_across_sources
        assert result.value == "Höhe: 1270 mm"
        assert result.alternate_values == []
        assert [a.url for a in result.source_attribution] == [SOURCES[0].url, SOURCES[2].url]

    def test_agreement_bonus_per_extra_source(self):
        claims = [_claim("Gewicht", "100 kg", 80, 0, 1, 2)]
        [result] = reconcile(claims, [PropertyDefinition(name="Gewicht")], SOURCES)
        assert result.confidence_percent == 90

    def test_agreement_bonus_capped(self):
        claims = [_claim("Gewicht", "100 kg", 98, 0, 1, 2)]
        [result] = reconcile(claims, [PropertyDefinition(name="Gewicht")], SOURCES)
        assert result.confidence_percent == 100

    def test_single_source_value_keeps_its_confidence(self):
        [result] = reconcile(
            [_claim("Gewicht", "100 kg", 70, 0)], [PropertyDefinition(name="Gewicht")], SOURCES
        )
        assert result.confidence_percent == 70
        assert result.is_consistent_across_sources

    def test_conflict_picks_higher_confidence(self):
        claims = [_claim("Leistung", "25 kW", 60, 0), _claim("Leistung", "30 kW", 85, 2)]
        [result] = reconcile(claims, [PropertyDefinition(name="Leistung")], SOURCES)
        assert result.status == PropertyStatus.INCONSISTENT
        assert not result.is_consistent_across_sources
        assert result.value == "30 kW"
        assert result.confidence_percent == 85
        assert [(a.value, a.confidence_percent) for a in result.alternate_values] == [("25 kW", 60)]
        assert result.alternate_values[0].source_attribution[0].url == SOURCES[0].url

    def test_conflict_is_logged_not_raised(self, caplog):
        claims = [_claim("Leistung", "25 kW", 60, 0), _claim("Leistung", "30 kW", 85, 2)]
        with caplog.at_level(logging.INFO, logger="propex.reconcile.reconciler"):
            reconcile(claims, [PropertyDefinition(name="Leistung")], SOURCES)
        [record] = [r for r in caplog.records if r.name == "propex.reconcile.reconciler"]
        assert record.values == ["30 kW", "25 kW"]
        assert "Leistung: sources disagree" in record.getMessage()

    def test_equal_confidence_prefers_manufacturer(self):
        claims = [_claim("Leistung", "6 kW", 80, 0), _claim("Leistung", "7 kW", 80, 1)]
        [result] = reconcile(claims, [PropertyDefinition(name="Leistung")], SOURCES)
        assert result.value == "7 kW"

    def test_then_prefers_more_sources(self):
        claims = [_claim("Leistung", "6 kW", 80, 0), _claim("Leistung", "7 kW", 80, 0, 2)]
        sources = [Source(url="https://a.example/"), Source(url="https://b.example/"), SOURCES[2]]
        [result] = reconcile(claims, [PropertyDefinition(name="Leistung")], sources)
        assert result.value == "7 kW"

    def test_then_first_seen(self):
        claims = [_claim("Farbe", "schwarz", 80, 0), _claim("Farbe", "grau", 80, 2)]
        [result] = reconcile(claims, [PropertyDefinition(name="Farbe")], SOURCES)
        assert result.value == "schwarz"

    def test_not_found(self):
        [result] = reconcile([], [PropertyDefinition(name="Farbe")], SOURCES)
        assert result.status == PropertyStatus.NOT_FOUND
        assert result.value is None
        assert result.confidence_percent == 0
        assert result.source_attribution == []

    def test_one_entry_per_property_in_order_index(self):
        properties = [
            PropertyDefinition(name="Höhe", order_index=3),
            PropertyDefinition(name="Gewicht", order_index=1),
            PropertyDefinition(name="Farbe", order_index=2),
        ]
        claims = [_claim("Gewicht", "100 kg", 90, 0), _claim("Rauchrohr", "150 mm", 90, 0)]
        results = reconcile(claims, properties, SOURCES)
        assert [r.property_name for r in results] == ["Gewicht", "Farbe", "Höhe"]

    def test_duplicate_urls_attributed_once(self):
        sources = [SOURCES[0], SOURCES[0]]
        [result] = reconcile(
            [_claim("Gewicht", "100 kg", 80, 0, 1)], [PropertyDefinition(name="Gewicht")], sources
        )
        assert len(result.source_attribution) == 1

    def test_failed_properties(self):
        results = failed_properties(
            [PropertyDefinition(name="B", order_index=2), PropertyDefinition(name="A", order_index=1)]
        )
        assert [r.property_name for r in results] == ["A", "B"]
        assert all(r.status == PropertyStatus.EXTRACTION_FAILED for r in results)
