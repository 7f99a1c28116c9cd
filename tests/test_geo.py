"""Tests for centroid and antimeridian-aware bounding boxes."""

from __future__ import annotations

import pytest

from helpers import square
from tilebuilder.errors import GeometryInvalid
from tilebuilder.geo import bbox_raw, bbox_unwrapped, centroid, normalize_feature, unwrap_lon


def test_unwrap_lon_moves_to_nearest_representative() -> None:
    assert unwrap_lon(10.0, 0.0) == 10.0
    assert unwrap_lon(190.0, 0.0) == pytest.approx(-170.0)
    assert unwrap_lon(-179.5, 179.8) == pytest.approx(180.5)
    assert unwrap_lon(179.5, 179.8) == 179.5


def test_unwrapped_equals_raw_when_nothing_straddles() -> None:
    geometry = square(-61.8, 15.9, 0.6)
    ref = centroid(geometry)[0]
    assert bbox_unwrapped(geometry, ref) == bbox_raw(geometry)


def test_unwrapped_bbox_around_antimeridian() -> None:
    geometry = {
        "type": "Polygon",
        "coordinates": [[[179.5, -17.0], [-179.5, -17.0], [-179.5, -16.0], [179.5, -16.0], [179.5, -17.0]]],
    }
    box = bbox_unwrapped(geometry, 179.8)
    assert box.min_lon == pytest.approx(179.5)
    assert box.max_lon == pytest.approx(180.5)
    assert bbox_raw(geometry).width == pytest.approx(359.0)


def test_split_feature_centroid_and_bbox() -> None:
    geometry = {
        "type": "MultiPolygon",
        "coordinates": [
            square(179.0, 0.0)["coordinates"],
            square(-180.0, 0.0)["coordinates"],
        ],
    }
    lon, lat = centroid(geometry)
    assert lon == pytest.approx(180.0)
    assert lat == pytest.approx(0.5)
    box = bbox_unwrapped(geometry, lon)
    assert box.width == pytest.approx(2.0)
    assert box.min_lon == pytest.approx(179.0)


def test_bbox_width_never_exceeds_full_turn() -> None:
    geometry = {
        "type": "Polygon",
        "coordinates": [[[-170.0, 0.0], [170.0, 0.0], [170.0, 1.0], [-170.0, 1.0], [-170.0, 0.0]]],
    }
    feat = normalize_feature(code="FJ", name="Fiji", geometry=geometry)
    assert feat.bbox_unwrapped.width <= 360.0
    assert feat.bbox_unwrapped.width == pytest.approx(20.0)
    assert -180.0 < feat.centroid[0] <= 180.0


def test_centroid_subtracts_holes() -> None:
    geometry = {
        "type": "Polygon",
        "coordinates": [
            [[0.0, 0.0], [4.0, 0.0], [4.0, 4.0], [0.0, 4.0], [0.0, 0.0]],
            [[0.0, 0.0], [2.0, 0.0], [2.0, 2.0], [0.0, 2.0], [0.0, 0.0]],
        ],
    }
    lon, lat = centroid(geometry)
    # L-shape: 12 units of area, holes pull the centroid up and right.
    assert lon == pytest.approx(14.0 / 6.0)
    assert lat == pytest.approx(14.0 / 6.0)


def test_normalize_feature_is_deterministic() -> None:
    geometry = square(2.2, 48.8, 0.3)
    first = normalize_feature(code="75", name="Paris", geometry=geometry)
    second = normalize_feature(code="75", name="Paris", geometry=geometry)
    assert first == second
    assert first.bbox_unwrapped_ref == first.centroid[0]


@pytest.mark.parametrize(
    "geometry",
    [
        {"type": "Point", "coordinates": [0.0, 0.0]},
        {"type": "Polygon", "coordinates": []},
        {"type": "MultiPolygon", "coordinates": []},
        {"type": "Polygon", "coordinates": [[[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [0.0, 0.0]]]},
        {"type": "Polygon", "coordinates": [[["a", 0.0], [1.0, 1.0], [2.0, 0.0], ["a", 0.0]]]},
    ],
)
def test_invalid_geometry_raises(geometry: dict) -> None:
    with pytest.raises(GeometryInvalid):
        normalize_feature(code="XX", name="Nowhere", geometry=geometry)


@pytest.mark.parametrize(
    ("lon", "ref"),
    [(10.0, 0.0), (190.0, 0.0), (-179.5, 179.8), (179.5, -179.5), (541.25, -10.0), (-200.0, 170.0)],
)
def test_unwrapping_twice_changes_nothing(lon: float, ref: float) -> None:
    once = unwrap_lon(lon, ref)
    assert unwrap_lon(once, ref) == once
    assert -180.0 <= once - ref < 180.0


def test_unwrapped_geometry_keeps_its_bbox() -> None:
    geometry = {
        "type": "MultiPolygon",
        "coordinates": [
            square(179.0, -18.0)["coordinates"],
            square(-180.0, -18.0)["coordinates"],
        ],
    }
    ref = centroid(geometry)[0]
    unwrapped = {
        "type": "MultiPolygon",
        "coordinates": [
            [[[unwrap_lon(lon, ref), lat] for lon, lat in ring] for ring in polygon]
            for polygon in geometry["coordinates"]
        ],
    }
    box = bbox_unwrapped(geometry, ref)
    assert bbox_unwrapped(unwrapped, ref) == box
    assert bbox_raw(unwrapped) == box
