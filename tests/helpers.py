"""Shared builders and in-memory fakes for the test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Sequence

from tilebuilder.errors import NetworkError

CONFIG_TEMPLATE = """\
paths:
  data_dir: data
  out_dir: out
  logs_dir: logs
download:
  request_timeout_s: 5
  user_agent: "tilebuilder-tests"
  max_retries: 0
  retry_backoff_s: 0.1
sync:
  concurrency: 2
  max_attempts: 3
  backoff_base_s: 0.0
  attempt_timeout_s: 5
  cache_control: "300"
  progress_every: 0
upsert:
  chunk_size: 2
  schema_wait_attempts: 3
  schema_wait_delay_s: 0.0
preview:
  generate_index: true
  thumbnail_width_px: 120
  max_columns: 4
collections:
  countries:
    padding_pct: 0.35
    min_extent_deg: 2.0
    target_bounds: [[24, 24], [976, 976]]
    bucket: country-maps
    table: countries
    conflict_key: iso2
    exclude_codes: [AQ]
    renderer: null
    source:
      kind: natural_earth_zip
      urls:
        coarse: [https://example.test/ne_110m_admin_0_countries.zip]
        fine: [https://example.test/ne_50m_admin_0_countries.zip]
  departements:
    padding_pct: 0.5
    min_extent_deg: 1.4
    target_bounds: [[24, 24], [976, 775]]
    bucket: france-departements-maps
    table: departements
    conflict_key: numero
    renderer: null
    source:
      kind: geojson
      urls:
        coarse: [https://example.test/departements-1000m.geojson]
        fine: [https://example.test/departements-100m.geojson]
"""


def write_config(tmp_path: Path, text: str = CONFIG_TEMPLATE) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def square(lon: float, lat: float, size: float = 1.0) -> dict[str, Any]:
    return {
        "type": "Polygon",
        "coordinates": [
            [[lon, lat], [lon + size, lat], [lon + size, lat + size], [lon, lat + size], [lon, lat]]
        ],
    }


def feature(properties: Mapping[str, Any], geometry: Mapping[str, Any] | None) -> dict[str, Any]:
    return {"type": "Feature", "properties": dict(properties), "geometry": geometry}


def collection(features: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


def departements_collection() -> dict[str, Any]:
    return collection(
        [
            feature({"code": "75", "nom": "Paris"}, square(2.2, 48.8, 0.3)),
            feature({"code": "2A", "nom": "Corse-du-Sud"}, square(8.5, 41.4, 0.8)),
            feature({"code": "971", "nom": "Guadeloupe"}, square(-61.8, 15.9, 0.6)),
        ]
    )


def render_stub(feature: Any, meta: Any, context: Any, options: Mapping[str, Any] | None = None) -> str:
    theme = (options or {}).get("theme", "default")
    return (
        f"<svg xmlns='http://www.w3.org/2000/svg' viewBox='0 0 1000 1000' data-theme='{theme}'>"
        f"<path class=\"target\" data-code='{feature.code}'/></svg>"
    )


class FakeBlobStore:
    def __init__(self, *, failing_keys: Sequence[str] = ()) -> None:
        self.objects: dict[tuple[str, str], tuple[bytes, str, str]] = {}
        self.events: list[tuple[str, str]] = []
        self.failing_keys = set(failing_keys)

    async def ensure_bucket(self, bucket: str, *, public: bool = True) -> bool:
        self.events.append(("ensure_bucket", bucket))
        return True

    async def upload(
        self,
        bucket: str,
        key: str,
        body: bytes,
        *,
        content_type: str,
        cache_control: str,
    ) -> None:
        self.events.append(("upload", key))
        if key in self.failing_keys:
            raise NetworkError(f"upload {key} failed")
        self.objects[(bucket, key)] = (body, content_type, cache_control)

    async def list_keys(self, bucket: str, prefix: str) -> list[str]:
        self.events.append(("list", bucket))
        return sorted(key for b, key in self.objects if b == bucket and key.startswith(f"{prefix}/"))

    async def remove(self, bucket: str, keys: Sequence[str]) -> int:
        self.events.append(("remove", bucket))
        removed = 0
        for key in keys:
            if self.objects.pop((bucket, key), None) is not None:
                removed += 1
        return removed


class FakeTableStore:
    def __init__(self, *, fail_on_call: int | None = None, not_ready_checks: int = 0) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[int] = []
        self.fail_on_call = fail_on_call
        self.not_ready_checks = not_ready_checks
        self.readiness_checks: list[tuple[str, tuple[str, ...]]] = []

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str) -> None:
        self.calls.append(len(rows))
        if self.fail_on_call is not None and len(self.calls) - 1 == self.fail_on_call:
            raise NetworkError("connection reset")
        target = self.tables.setdefault(table, {})
        for row in rows:
            target[str(row[on_conflict])] = dict(row)

    async def select_keys(self, table: str, key_column: str) -> list[str]:
        return sorted(self.tables.get(table, {}))

    async def delete_keys(self, table: str, key_column: str, keys: Sequence[str]) -> int:
        target = self.tables.get(table, {})
        removed = 0
        for key in keys:
            if target.pop(key, None) is not None:
                removed += 1
        return removed

    async def columns_ready(self, table: str, columns: Sequence[str]) -> bool:
        self.readiness_checks.append((table, tuple(columns)))
        return len(self.readiness_checks) > self.not_ready_checks
