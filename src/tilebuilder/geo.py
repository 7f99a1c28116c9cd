"""Centroid and antimeridian-aware bounding boxes for boundary geometries.

Geometries are GeoJSON-like mappings (``Polygon`` or ``MultiPolygon``) in
longitude/latitude degrees. Bounding boxes come in two flavours:

* ``bbox_raw`` tracks min/max over the coordinates as stored;
* ``bbox_unwrapped`` first moves every longitude to its ``v + 360k``
  representative nearest to a reference longitude (the feature's own
  centroid), so a feature with parts at +179 and -179 gets a ~2 degree box
  instead of a ~358 degree one.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Iterator, Mapping, Sequence

from .errors import GeometryInvalid
from .models import BBox, Feature

_AREA_TYPES = ("Polygon", "MultiPolygon")

Ring = list[tuple[float, float]]


def unwrap_lon(lon: float, ref_lon: float) -> float:
    """Return ``lon + 360k`` closest to ``ref_lon``, offset kept in [-180, 180)."""
    k = math.floor((lon - ref_lon + 180.0) / 360.0)
    if k == 0:
        return lon
    return lon - 360.0 * k


def polygon_rings(geometry: Mapping[str, Any]) -> list[list[Ring]]:
    """Return polygons -> rings -> (lon, lat) points for an areal geometry."""
    geom_type = geometry.get("type") if isinstance(geometry, Mapping) else None
    if geom_type not in _AREA_TYPES:
        raise GeometryInvalid(f"Unsupported geometry type: {geom_type!r}")
    coords = geometry.get("coordinates")
    if not isinstance(coords, Sequence):
        raise GeometryInvalid(f"{geom_type} has no coordinate array")
    raw_polygons = [coords] if geom_type == "Polygon" else list(coords)

    polygons: list[list[Ring]] = []
    for poly_idx, raw_polygon in enumerate(raw_polygons):
        if not isinstance(raw_polygon, Sequence):
            raise GeometryInvalid(f"Polygon #{poly_idx} is not a ring sequence")
        rings: list[Ring] = []
        for ring_idx, raw_ring in enumerate(raw_polygon):
            if not isinstance(raw_ring, Sequence):
                raise GeometryInvalid(f"Ring #{ring_idx} of polygon #{poly_idx} is not a point sequence")
            rings.append([_point(p, poly_idx, ring_idx) for p in raw_ring])
        polygons.append(rings)
    return polygons


def _point(raw: Any, poly_idx: int, ring_idx: int) -> tuple[float, float]:
    if not isinstance(raw, Sequence) or len(raw) < 2:
        raise GeometryInvalid(f"Invalid point in ring #{ring_idx} of polygon #{poly_idx}: {raw!r}")
    try:
        return (float(raw[0]), float(raw[1]))
    except (TypeError, ValueError) as exc:
        raise GeometryInvalid(f"Non-numeric point in polygon #{poly_idx}: {raw!r}") from exc


def _iter_points(geometry: Mapping[str, Any]) -> Iterator[tuple[float, float]]:
    for rings in polygon_rings(geometry):
        for ring in rings:
            yield from ring


def bbox_raw(geometry: Mapping[str, Any]) -> BBox:
    """Min/max over every coordinate without modification."""
    return _accumulate_bbox(_iter_points(geometry))


def bbox_unwrapped(geometry: Mapping[str, Any], ref_lon: float) -> BBox:
    """Min/max after moving each longitude next to ``ref_lon``."""
    return _accumulate_bbox((unwrap_lon(lon, ref_lon), lat) for lon, lat in _iter_points(geometry))


def _accumulate_bbox(points: Iterable[tuple[float, float]]) -> BBox:
    min_lon = min_lat = math.inf
    max_lon = max_lat = -math.inf
    seen = False
    for lon, lat in points:
        seen = True
        if lon < min_lon:
            min_lon = lon
        if lon > max_lon:
            max_lon = lon
        if lat < min_lat:
            min_lat = lat
        if lat > max_lat:
            max_lat = lat
    if not seen:
        raise GeometryInvalid("Geometry has no coordinates")
    return BBox(min_lon, min_lat, max_lon, max_lat)


def centroid(geometry: Mapping[str, Any]) -> tuple[float, float]:
    """Area-weighted centroid over all rings, holes subtracted.

    Rings are unwrapped vertex by vertex around a common anchor first, so a
    feature cut at the antimeridian is averaged as one shape. The returned
    longitude lies in (-180, 180].
    """
    polygons = polygon_rings(geometry)
    anchor = _first_lon(polygons)
    if anchor is None:
        raise GeometryInvalid("Geometry has no coordinates")

    shapely_polygon, shapely_multi, shapely_error = _require_shapely_factories()
    parts = []
    try:
        for rings in polygons:
            if not rings or not rings[0]:
                continue
            shell = _unwrap_ring(rings[0], anchor)
            holes = [_unwrap_ring(ring, shell[0][0]) for ring in rings[1:] if ring]
            parts.append(shapely_polygon(shell, holes))
        shape = shapely_multi(parts)
    except (ValueError, shapely_error) as exc:
        raise GeometryInvalid(f"Cannot build polygon: {exc}") from exc

    if shape.is_empty or not shape.area > 0.0:
        raise GeometryInvalid("Geometry has zero area; centroid undefined")
    point = shape.centroid
    lon, lat = float(point.x), float(point.y)
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise GeometryInvalid("Centroid is not finite")
    return (_normalize_lon(lon), lat)


def _first_lon(polygons: list[list[Ring]]) -> float | None:
    for rings in polygons:
        for ring in rings:
            if ring:
                return ring[0][0]
    return None


def _unwrap_ring(ring: Ring, anchor: float) -> Ring:
    out: Ring = []
    prev = anchor
    for lon, lat in ring:
        x = unwrap_lon(lon, prev)
        out.append((x, lat))
        prev = x
    return out


def _normalize_lon(lon: float) -> float:
    if -180.0 < lon <= 180.0:
        return lon
    return -(((-lon + 180.0) % 360.0) - 180.0)


def normalize_feature(
    *,
    code: str,
    name: str,
    geometry: Mapping[str, Any],
    names: Mapping[str, str] | None = None,
    extra: Mapping[str, str | None] | None = None,
) -> Feature:
    """Compute centroid and both bboxes; the unwrap anchor is the own centroid."""
    center = centroid(geometry)
    ref = center[0]
    return Feature(
        code=code,
        name=name,
        geometry=geometry,
        centroid=center,
        bbox_raw=bbox_raw(geometry),
        bbox_unwrapped_ref=ref,
        bbox_unwrapped=bbox_unwrapped(geometry, ref),
        names=dict(names or {}),
        extra=dict(extra or {}),
    )


def _require_shapely_factories() -> tuple[Any, Any, type[Exception]]:
    try:
        from shapely.errors import ShapelyError
        from shapely.geometry import MultiPolygon, Polygon
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("shapely is required for centroid computation") from exc
    return Polygon, MultiPolygon, ShapelyError
