"""Domain models shared across pipeline modules."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

Pixel = tuple[float, float]
PixelRect = tuple[Pixel, Pixel]


@dataclass(frozen=True, slots=True)
class BBox:
    """Longitude/latitude bounding box in degrees."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @property
    def width(self) -> float:
        return self.max_lon - self.min_lon

    @property
    def height(self) -> float:
        return self.max_lat - self.min_lat

    @property
    def center(self) -> tuple[float, float]:
        return ((self.min_lon + self.max_lon) / 2.0, (self.min_lat + self.max_lat) / 2.0)

    @property
    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self.to_list())

    @property
    def is_inverted(self) -> bool:
        return self.max_lon < self.min_lon or self.max_lat < self.min_lat

    def to_list(self) -> list[float]:
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]


@dataclass(frozen=True, slots=True)
class Feature:
    """Normalized boundary feature with its framing inputs."""

    code: str
    name: str
    geometry: Mapping[str, Any]
    centroid: tuple[float, float]
    bbox_raw: BBox
    bbox_unwrapped_ref: float
    bbox_unwrapped: BBox
    names: Mapping[str, str] = field(default_factory=dict)
    extra: Mapping[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RenderMeta:
    """Framing numbers handed to the external renderer for one feature."""

    code: str
    name: str
    names: Mapping[str, str]
    extra: Mapping[str, str | None]
    centroid: tuple[float, float]
    bbox_raw: BBox
    bbox_unwrapped: BBox
    lon_ref: float
    bbox_padded_unwrapped: BBox
    padding_pct: float
    min_extent_deg: float
    view_box: BBox
    target_bounds: PixelRect
    fitted_bounds: PixelRect
    scale: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "names": dict(self.names),
            "extra": dict(self.extra),
            "centroid": {"lon": self.centroid[0], "lat": self.centroid[1]},
            "bbox": {
                "lonlat_raw": self.bbox_raw.to_list(),
                "lonlat_unwrapped": self.bbox_unwrapped.to_list(),
                "lon_ref": self.lon_ref,
                "lonlat_padded_unwrapped": self.bbox_padded_unwrapped.to_list(),
                "padding_pct": self.padding_pct,
                "min_extent_deg": self.min_extent_deg,
            },
            "projected": {
                "view_box": self.view_box.to_list(),
                "target_bounds": [list(self.target_bounds[0]), list(self.target_bounds[1])],
                "fitted_bounds": [list(self.fitted_bounds[0]), list(self.fitted_bounds[1])],
                "scale": self.scale,
            },
        }


class JobOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True)
class SyncJob:
    """One artifact upload; mutated only by the orchestrator attempt loop."""

    source: Path
    destination: str
    attempts: int = 0
    outcome: JobOutcome = JobOutcome.PENDING
    error: str | None = None

    @property
    def settled(self) -> bool:
        return self.outcome is not JobOutcome.PENDING


@dataclass(frozen=True, slots=True)
class UpsertBatch:
    """Ordered rows upserted by natural key in fixed-size chunks."""

    rows: tuple[Mapping[str, Any], ...]
    natural_key: str
    chunk_size: int

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

    @property
    def chunk_count(self) -> int:
        return -(-len(self.rows) // self.chunk_size)

    def chunks(self) -> list[tuple[Mapping[str, Any], ...]]:
        size = self.chunk_size
        return [self.rows[i : i + size] for i in range(0, len(self.rows), size)]


@dataclass(frozen=True, slots=True)
class MetaFile:
    """Per-collection metadata sidecar written next to the SVGs."""

    generated_at: str
    metas: Mapping[str, Mapping[str, Any]]

    @classmethod
    def create(cls, metas: Mapping[str, Mapping[str, Any]]) -> MetaFile:
        return cls(generated_at=datetime.now(timezone.utc).isoformat(), metas=dict(metas))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MetaFile:
        generated_at = data.get("generated_at")
        metas = data.get("metas")
        if not isinstance(generated_at, str) or not generated_at.strip():
            raise ValueError("Expected non-empty string for 'generated_at'")
        if not isinstance(metas, Mapping):
            raise ValueError("Expected mapping for 'metas'")
        for code, meta in metas.items():
            if not isinstance(meta, Mapping) or meta.get("code") != code:
                raise ValueError(f"Meta entry for '{code}' must be a mapping with a matching code")
        return cls(generated_at=generated_at, metas=dict(metas))

    def to_dict(self) -> dict[str, Any]:
        return {"generated_at": self.generated_at, "metas": {k: dict(v) for k, v in self.metas.items()}}
