"""Framing of one feature: padding, minimum extent and pixel fit.

The projector never draws. It turns a feature's unwrapped bbox into the
view box (degrees, unwrapped space) and the pixel rectangles an external
renderer needs, and it is pure: the same feature always yields the same
``RenderMeta``.

Padding rule: every side of both axes grows by ``pct * max(width, height)``,
so features of any aspect ratio get a uniform border. The minimum extent is
applied after padding.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import GeometryInvalid
from .models import BBox, Feature, PixelRect, RenderMeta


def pad(bbox: BBox, pct: float) -> BBox:
    if not math.isfinite(pct) or pct < 0:
        raise ValueError(f"Padding fraction must be a finite value >= 0, got {pct}")
    if pct == 0:
        return bbox
    margin = pct * max(bbox.width, bbox.height)
    return BBox(
        bbox.min_lon - margin,
        bbox.min_lat - margin,
        bbox.max_lon + margin,
        bbox.max_lat + margin,
    )


def enforce_floor(bbox: BBox, min_extent_deg: float) -> BBox:
    """Grow any axis narrower than ``min_extent_deg`` around its center."""
    if not math.isfinite(min_extent_deg) or min_extent_deg < 0:
        raise ValueError(f"Minimum extent must be a finite value >= 0, got {min_extent_deg}")
    min_lon, max_lon = _ensure_min_span(bbox.min_lon, bbox.max_lon, min_extent_deg)
    min_lat, max_lat = _ensure_min_span(bbox.min_lat, bbox.max_lat, min_extent_deg)
    return BBox(min_lon, min_lat, max_lon, max_lat)


def _ensure_min_span(start: float, end: float, min_span: float) -> tuple[float, float]:
    if end - start >= min_span:
        return start, end
    center = (start + end) / 2.0
    half = min_span / 2.0
    lo, hi = center - half, center + half
    # Rounding can leave the span a hair short of the floor.
    while hi - lo < min_span:
        hi = math.nextafter(hi, math.inf)
    return lo, hi


def fit_view_box(view_box: BBox, target_bounds: PixelRect) -> tuple[PixelRect, float]:
    """Aspect-preserving, centered placement of ``view_box`` in ``target_bounds``.

    Returns the letterboxed pixel rectangle and the scale in px per degree.
    """
    (x0, y0), (x1, y1) = target_bounds
    target_w = x1 - x0
    target_h = y1 - y0
    if target_w <= 0 or target_h <= 0:
        raise ValueError(f"target_bounds must have positive size: {target_bounds}")
    if view_box.width <= 0 or view_box.height <= 0:
        raise GeometryInvalid(f"View box has no area: {view_box.to_list()}")

    scale = min(target_w / view_box.width, target_h / view_box.height)
    fitted_w = view_box.width * scale
    fitted_h = view_box.height * scale
    left = x0 + (target_w - fitted_w) / 2.0
    top = y0 + (target_h - fitted_h) / 2.0
    return ((left, top), (left + fitted_w, top + fitted_h)), scale


def check_bbox(bbox: BBox, *, label: str) -> None:
    if not bbox.is_finite:
        raise GeometryInvalid(f"{label} bbox is not finite: {bbox.to_list()}")
    if bbox.is_inverted:
        raise GeometryInvalid(f"{label} bbox is inverted: {bbox.to_list()}")


@dataclass(frozen=True, slots=True)
class Projector:
    """Per-collection framing policy."""

    padding_pct: float
    min_extent_deg: float
    target_bounds: PixelRect

    def __post_init__(self) -> None:
        if self.min_extent_deg <= 0:
            raise ValueError("min_extent_deg must be > 0")
        if self.padding_pct < 0:
            raise ValueError("padding_pct must be >= 0")
        (x0, y0), (x1, y1) = self.target_bounds
        if x1 <= x0 or y1 <= y0:
            raise ValueError(f"target_bounds must have positive size: {self.target_bounds}")

    def frame(self, bbox: BBox) -> BBox:
        check_bbox(bbox, label="Unwrapped")
        return enforce_floor(pad(bbox, self.padding_pct), self.min_extent_deg)

    def project(self, feature: Feature) -> RenderMeta:
        check_bbox(feature.bbox_raw, label=f"{feature.code} raw")
        padded = self.frame(feature.bbox_unwrapped)
        fitted, scale = fit_view_box(padded, self.target_bounds)
        return RenderMeta(
            code=feature.code,
            name=feature.name,
            names=dict(feature.names),
            extra=dict(feature.extra),
            centroid=feature.centroid,
            bbox_raw=feature.bbox_raw,
            bbox_unwrapped=feature.bbox_unwrapped,
            lon_ref=feature.bbox_unwrapped_ref,
            bbox_padded_unwrapped=padded,
            padding_pct=self.padding_pct,
            min_extent_deg=self.min_extent_deg,
            view_box=padded,
            target_bounds=self.target_bounds,
            fitted_bounds=fitted,
            scale=scale,
        )
