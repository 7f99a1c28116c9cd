"""Tests for padding, minimum extent and pixel fitting."""

from __future__ import annotations

import math

import pytest

from helpers import square
from tilebuilder.errors import GeometryInvalid
from tilebuilder.geo import normalize_feature
from tilebuilder.models import BBox, Feature
from tilebuilder.projection import Projector, enforce_floor, fit_view_box, pad

BOUNDS = ((24.0, 24.0), (976.0, 976.0))


def _contains(outer: BBox, inner: BBox) -> bool:
    return (
        outer.min_lon <= inner.min_lon
        and outer.min_lat <= inner.min_lat
        and outer.max_lon >= inner.max_lon
        and outer.max_lat >= inner.max_lat
    )


def test_zero_padding_is_identity() -> None:
    box = BBox(1.0, 2.0, 3.0, 5.0)
    assert pad(box, 0.0) == box


def test_padding_is_monotonic_and_uniform() -> None:
    box = BBox(0.0, 0.0, 4.0, 2.0)
    small = pad(box, 0.1)
    large = pad(box, 0.2)
    assert _contains(small, box)
    assert _contains(large, small)
    # Margin comes from the longer side on both axes.
    assert small.min_lat == pytest.approx(-0.4)
    assert small.max_lon == pytest.approx(4.4)


def test_negative_padding_rejected() -> None:
    with pytest.raises(ValueError):
        pad(BBox(0.0, 0.0, 1.0, 1.0), -0.1)


def test_floor_grows_narrow_axes_around_center() -> None:
    box = enforce_floor(BBox(0.0, 10.0, 0.1, 10.1), 2.0)
    assert box.width >= 2.0
    assert box.height >= 2.0
    assert box.center[0] == pytest.approx(0.05)
    assert box.center[1] == pytest.approx(10.05)
    wide = BBox(0.0, 0.0, 5.0, 5.0)
    assert enforce_floor(wide, 2.0) == wide


def test_fit_preserves_aspect_and_centers() -> None:
    fitted, scale = fit_view_box(BBox(0.0, 0.0, 10.0, 5.0), ((0.0, 0.0), (100.0, 100.0)))
    assert scale == pytest.approx(10.0)
    (x0, y0), (x1, y1) = fitted
    assert (x0, x1) == (pytest.approx(0.0), pytest.approx(100.0))
    assert (y0, y1) == (pytest.approx(25.0), pytest.approx(75.0))
    assert (x1 - x0) / (y1 - y0) == pytest.approx(2.0)


def test_project_is_deterministic_and_respects_floor() -> None:
    projector = Projector(padding_pct=0.35, min_extent_deg=2.0, target_bounds=BOUNDS)
    feat = normalize_feature(code="MC", name="Monaco", geometry=square(7.4, 43.7, 0.05))
    first = projector.project(feat)
    second = projector.project(feat)
    assert first == second
    assert first.view_box.width >= 2.0
    assert first.view_box.height >= 2.0
    (x0, y0), (x1, y1) = first.fitted_bounds
    assert (x1 - x0) / (y1 - y0) == pytest.approx(first.view_box.width / first.view_box.height)

    payload = first.to_dict()
    assert set(payload) == {"code", "name", "names", "extra", "centroid", "bbox", "projected"}
    assert payload["bbox"]["min_extent_deg"] == 2.0
    assert payload["projected"]["target_bounds"] == [[24.0, 24.0], [976.0, 976.0]]


def _feature_with(bbox: BBox) -> Feature:
    return Feature(
        code="XX",
        name="Broken",
        geometry=square(0.0, 0.0),
        centroid=(0.5, 0.5),
        bbox_raw=BBox(0.0, 0.0, 1.0, 1.0),
        bbox_unwrapped_ref=0.5,
        bbox_unwrapped=bbox,
    )


@pytest.mark.parametrize(
    "bbox",
    [BBox(2.0, 0.0, 1.0, 1.0), BBox(0.0, 0.0, math.inf, 1.0), BBox(0.0, math.nan, 1.0, 1.0)],
)
def test_project_rejects_bad_bbox(bbox: BBox) -> None:
    projector = Projector(padding_pct=0.1, min_extent_deg=1.0, target_bounds=BOUNDS)
    with pytest.raises(GeometryInvalid):
        projector.project(_feature_with(bbox))


def test_projector_validates_policy() -> None:
    with pytest.raises(ValueError):
        Projector(padding_pct=0.1, min_extent_deg=0.0, target_bounds=BOUNDS)
    with pytest.raises(ValueError):
        Projector(padding_pct=0.1, min_extent_deg=1.0, target_bounds=((10.0, 10.0), (5.0, 20.0)))
