"""Tests for feature loading, code validation and ordering."""

from __future__ import annotations

import pytest

from helpers import collection, feature, square
from tilebuilder.errors import ValidationError
from tilebuilder.features import (
    COUNTRIES_SCHEMA,
    DEPARTEMENTS_SCHEMA,
    load_feature_collection,
    natural_sort_key,
    normalize_code,
)


def test_normalize_code_is_idempotent() -> None:
    once = normalize_code(" 2a\x00 ")
    assert once == "2A"
    assert normalize_code(once) == once


@pytest.mark.parametrize("code", ["01", "19", "21", "75", "95", "2A", "2B", "971", "976"])
def test_departement_codes_accepted(code: str) -> None:
    assert DEPARTEMENTS_SCHEMA.accepts(code)


@pytest.mark.parametrize("code", ["00", "20", "96", "975", "XX", "7", "2C", ""])
def test_departement_codes_rejected(code: str) -> None:
    assert not DEPARTEMENTS_SCHEMA.accepts(code)


def test_natural_sort_orders_numbers_and_letters() -> None:
    codes = ["10", "2B", "3", "2A", "1", "19"]
    assert sorted(codes, key=natural_sort_key) == ["1", "2A", "2B", "3", "10", "19"]


def test_departements_load_filters_dedupes_and_sorts() -> None:
    data = collection(
        [
            feature({"code": "971", "nom": "Guadeloupe"}, square(-61.8, 15.9, 0.6)),
            feature({"code": "75", "nom": "Paris"}, square(2.2, 48.8, 0.3)),
            feature({"code": "75", "nom": "Paris bis"}, square(2.2, 48.8, 0.3)),
            feature({"code": "2a", "nom": "Corse-du-Sud"}, square(8.5, 41.4, 0.8)),
            feature({"code": "00", "nom": "Nowhere"}, square(0.0, 0.0)),
            feature({"code": "96", "nom": "Nowhere"}, square(0.0, 0.0)),
            feature({"code": "XX", "nom": "Nowhere"}, square(0.0, 0.0)),
            feature({"code": "13", "nom": "Bouches-du-Rhône"}, None),
            feature({"code": "14", "nom": "Calvados"}, {"type": "Point", "coordinates": [0.0, 49.0]}),
            feature({"code": "15", "nom": ""}, square(2.5, 45.0)),
            feature({"nom": "No code"}, square(2.5, 45.0)),
        ]
    )
    result = load_feature_collection(data, DEPARTEMENTS_SCHEMA)
    assert [f.code for f in result.features] == ["2A", "75", "971"]
    assert result.features[1].name == "Paris"
    assert result.skipped["invalid_code"] == 3
    assert result.skipped["duplicate"] == 1
    assert result.skipped["missing_geometry"] == 1
    assert result.skipped["unsupported_geometry"] == 1
    assert result.skipped["missing_name"] == 1
    assert result.skipped["missing_code"] == 1
    assert result.skipped_total == 8


def test_countries_fall_back_across_code_columns_and_names() -> None:
    data = collection(
        [
            feature(
                {"ISO_A2": "-99", "ISO_A2_EH": "FR", "ISO_A3": "FRA", "NAME_EN": "France", "NAME_FR": "France"},
                square(2.0, 46.0, 4.0),
            ),
            feature(
                {"ISO_A2": "NO", "ISO_A2_EH": "NO", "ISO_A3": "-99", "ADM0_A3": "NOR", "NAME_EN": "Norway\x00"},
                square(8.0, 60.0, 4.0),
            ),
            feature({"ISO_A2": "AQ", "ISO_A3": "ATA", "NAME_EN": "Antarctica"}, square(0.0, -80.0, 10.0)),
            feature({"ISO_A2": "-99", "ISO_A3": "-99", "NAME_EN": "Somaliland"}, square(45.0, 9.0, 2.0)),
        ]
    )
    result = load_feature_collection(data, COUNTRIES_SCHEMA, exclude_codes=["aq"])
    by_code = {f.code: f for f in result.features}
    assert list(by_code) == ["FR", "NO"]
    assert by_code["FR"].extra["iso3"] == "FRA"
    assert by_code["NO"].extra["iso3"] == "NOR"
    assert by_code["NO"].name == "Norway"
    assert by_code["NO"].names["fr"] == "Norway"
    assert result.skipped["excluded"] == 1
    assert result.skipped["invalid_code"] == 1


@pytest.mark.parametrize(
    "data",
    [
        None,
        [],
        {"type": "Feature"},
        {"type": "FeatureCollection", "features": "nope"},
    ],
)
def test_malformed_collection_is_fatal(data: object) -> None:
    with pytest.raises(ValidationError):
        load_feature_collection(data, DEPARTEMENTS_SCHEMA)


def test_unknown_property_schema_is_fatal() -> None:
    data = collection([feature({"id": "75", "label": "Paris"}, square(2.2, 48.8))])
    with pytest.raises(ValidationError):
        load_feature_collection(data, DEPARTEMENTS_SCHEMA)


def test_empty_collection_loads_nothing() -> None:
    result = load_feature_collection(collection([]), DEPARTEMENTS_SCHEMA)
    assert result.features == []
    assert result.skipped_total == 0
    result = load_feature_collection({"type": "FeatureCollection"}, DEPARTEMENTS_SCHEMA)
    assert result.features == []


def test_features_without_properties_are_skipped() -> None:
    data = collection([feature({}, square(2.2, 48.8)), {"type": "Feature", "geometry": square(3.0, 45.0)}])
    result = load_feature_collection(data, DEPARTEMENTS_SCHEMA)
    assert result.features == []
    assert result.skipped["missing_code"] == 2
