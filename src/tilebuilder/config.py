"""Typed configuration loader for `config.yaml` plus environment settings."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, cast

import yaml

from .guard import DESTRUCTIVE_FLAG, destructive_enabled
from .models import PixelRect
from .storage import public_object_url

SOURCE_SCALES = ("coarse", "fine")
SOURCE_KINDS = ("geojson", "natural_earth_zip")
COLLECTIONS = ("countries", "departements")
BASE_VARIANT = "svg"
_VARIANT_PREFIX_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    return _str(value, field_name)


def _int(value: Any, field_name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _str_list(value: Any, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ValueError(f"Expected list for '{field_name}'")
    out: list[str] = []
    for idx, item in enumerate(value):
        out.append(_str(item, f"{field_name}[{idx}]"))
    return tuple(out)


def _pixel_rect(value: Any, field_name: str) -> PixelRect:
    if not isinstance(value, list) or len(value) != 2:
        raise ValueError(f"Expected [[x0, y0], [x1, y1]] for '{field_name}'")
    corners: list[tuple[float, float]] = []
    for idx, item in enumerate(value):
        if not isinstance(item, list) or len(item) != 2:
            raise ValueError(f"Invalid {field_name}[{idx}]")
        corners.append(
            (_float(item[0], f"{field_name}[{idx}][0]"), _float(item[1], f"{field_name}[{idx}][1]"))
        )
    (x0, y0), (x1, y1) = corners
    if x1 <= x0 or y1 <= y0:
        raise ValueError(f"{field_name} must have positive width and height")
    return (corners[0], corners[1])


def _variants(value: Any, field_name: str) -> dict[str, dict[str, Any]]:
    """Storage prefix -> renderer options; the base ``svg`` variant comes first."""
    if value is None:
        return {BASE_VARIANT: {}}
    raw = _mapping(value, field_name)
    variants: dict[str, dict[str, Any]] = {}
    for prefix, options in raw.items():
        if not isinstance(prefix, str) or not _VARIANT_PREFIX_RE.match(prefix):
            raise ValueError(f"Invalid variant prefix '{prefix}' in '{field_name}'")
        variants[prefix] = {} if options is None else dict(_mapping(options, f"{field_name}.{prefix}"))
    if BASE_VARIANT not in variants:
        raise ValueError(f"{field_name} must include the '{BASE_VARIANT}' variant")
    return {BASE_VARIANT: variants.pop(BASE_VARIANT), **variants}


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


@dataclass(frozen=True, slots=True)
class PathsConfig:
    data_dir: Path
    out_dir: Path
    logs_dir: Path

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (self.data_dir, self.out_dir, self.logs_dir)

    def collection_dir(self, collection: str) -> Path:
        return self.out_dir / collection

    def svg_dir(self, collection: str) -> Path:
        return self.variant_dir(collection, BASE_VARIANT)

    def variant_dir(self, collection: str, prefix: str) -> Path:
        return self.collection_dir(collection) / prefix

    def meta_path(self, collection: str) -> Path:
        return self.collection_dir(collection) / f"{collection}.meta.json"

    def preview_path(self, collection: str) -> Path:
        return self.collection_dir(collection) / "preview.html"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            data_dir=_path_from_cfg(raw.get("data_dir"), "paths.data_dir", root_dir),
            out_dir=_path_from_cfg(raw.get("out_dir"), "paths.out_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir"), "paths.logs_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class DownloadConfig:
    request_timeout_s: int
    user_agent: str
    max_retries: int
    retry_backoff_s: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DownloadConfig:
        max_retries = _int(raw.get("max_retries", 3), "download.max_retries")
        retry_backoff_s = _float(raw.get("retry_backoff_s", 1.0), "download.retry_backoff_s")
        if max_retries < 0:
            raise ValueError("download.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("download.retry_backoff_s must be > 0")
        return cls(
            request_timeout_s=_int(raw.get("request_timeout_s"), "download.request_timeout_s"),
            user_agent=_str(raw.get("user_agent"), "download.user_agent"),
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
        )


@dataclass(frozen=True, slots=True)
class SyncConfig:
    concurrency: int
    max_attempts: int
    backoff_base_s: float
    attempt_timeout_s: float
    cache_control: str
    progress_every: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> SyncConfig:
        concurrency = _int(raw.get("concurrency"), "sync.concurrency")
        max_attempts = _int(raw.get("max_attempts"), "sync.max_attempts")
        backoff_base_s = _float(raw.get("backoff_base_s"), "sync.backoff_base_s")
        attempt_timeout_s = _float(raw.get("attempt_timeout_s"), "sync.attempt_timeout_s")
        progress_every = _int(raw.get("progress_every", 25), "sync.progress_every")
        if concurrency < 1:
            raise ValueError("sync.concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("sync.max_attempts must be >= 1")
        if backoff_base_s < 0:
            raise ValueError("sync.backoff_base_s must be >= 0")
        if attempt_timeout_s <= 0:
            raise ValueError("sync.attempt_timeout_s must be > 0")
        if progress_every < 0:
            raise ValueError("sync.progress_every must be >= 0")
        cache_control = raw.get("cache_control", "300")
        if isinstance(cache_control, int) and not isinstance(cache_control, bool):
            cache_control = str(cache_control)
        return cls(
            concurrency=concurrency,
            max_attempts=max_attempts,
            backoff_base_s=backoff_base_s,
            attempt_timeout_s=attempt_timeout_s,
            cache_control=_str(cache_control, "sync.cache_control"),
            progress_every=progress_every,
        )


@dataclass(frozen=True, slots=True)
class UpsertConfig:
    chunk_size: int
    schema_wait_attempts: int = 12
    schema_wait_delay_s: float = 0.5

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> UpsertConfig:
        chunk_size = _int(raw.get("chunk_size"), "upsert.chunk_size")
        wait_attempts = _int(raw.get("schema_wait_attempts", 12), "upsert.schema_wait_attempts")
        wait_delay_s = _float(raw.get("schema_wait_delay_s", 0.5), "upsert.schema_wait_delay_s")
        if chunk_size < 1:
            raise ValueError("upsert.chunk_size must be >= 1")
        if wait_attempts < 1:
            raise ValueError("upsert.schema_wait_attempts must be >= 1")
        if wait_delay_s < 0:
            raise ValueError("upsert.schema_wait_delay_s must be >= 0")
        return cls(chunk_size=chunk_size, schema_wait_attempts=wait_attempts, schema_wait_delay_s=wait_delay_s)


@dataclass(frozen=True, slots=True)
class PreviewConfig:
    generate_index: bool
    thumbnail_width_px: int
    max_columns: int

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> PreviewConfig:
        return cls(
            generate_index=_bool(raw.get("generate_index"), "preview.generate_index"),
            thumbnail_width_px=_int(raw.get("thumbnail_width_px"), "preview.thumbnail_width_px"),
            max_columns=_int(raw.get("max_columns"), "preview.max_columns"),
        )

    @classmethod
    def default(cls) -> PreviewConfig:
        return cls(generate_index=True, thumbnail_width_px=160, max_columns=6)


@dataclass(frozen=True, slots=True)
class SourceConfig:
    """Download URLs per scale; the first URL is primary, the rest mirrors."""

    kind: str
    urls: Mapping[str, tuple[str, ...]]

    def urls_for(self, scale: str, override: str | None = None) -> tuple[str, ...]:
        if scale not in self.urls:
            raise ValueError(f"Unknown source scale '{scale}'; expected one of: {', '.join(sorted(self.urls))}")
        if override:
            return (override, *(url for url in self.urls[scale] if url != override))
        return self.urls[scale]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], field_name: str) -> SourceConfig:
        kind = _str(raw.get("kind"), f"{field_name}.kind")
        if kind not in SOURCE_KINDS:
            raise ValueError(f"{field_name}.kind must be one of: " + ", ".join(SOURCE_KINDS))
        urls_raw = _mapping(raw.get("urls"), f"{field_name}.urls")
        urls: dict[str, tuple[str, ...]] = {}
        for scale in SOURCE_SCALES:
            scale_urls = _str_list(urls_raw.get(scale), f"{field_name}.urls.{scale}")
            if not scale_urls:
                raise ValueError(f"{field_name}.urls.{scale} must list at least one URL")
            urls[scale] = scale_urls
        return cls(kind=kind, urls=urls)


@dataclass(frozen=True, slots=True)
class CollectionConfig:
    name: str
    padding_pct: float
    min_extent_deg: float
    target_bounds: PixelRect
    bucket: str
    table: str
    conflict_key: str
    exclude_codes: tuple[str, ...]
    source: SourceConfig
    renderer: str | None
    target_marker: str
    concurrency: int | None
    chunk_size: int | None
    variants: Mapping[str, Mapping[str, Any]]

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, Any]) -> CollectionConfig:
        prefix = f"collections.{name}"
        padding_pct = _float(raw.get("padding_pct"), f"{prefix}.padding_pct")
        min_extent_deg = _float(raw.get("min_extent_deg"), f"{prefix}.min_extent_deg")
        if padding_pct < 0:
            raise ValueError(f"{prefix}.padding_pct must be >= 0")
        if min_extent_deg <= 0:
            raise ValueError(f"{prefix}.min_extent_deg must be > 0")
        concurrency_raw = raw.get("concurrency")
        chunk_size_raw = raw.get("chunk_size")
        concurrency = None if concurrency_raw is None else _int(concurrency_raw, f"{prefix}.concurrency")
        chunk_size = None if chunk_size_raw is None else _int(chunk_size_raw, f"{prefix}.chunk_size")
        if concurrency is not None and concurrency < 1:
            raise ValueError(f"{prefix}.concurrency must be >= 1")
        if chunk_size is not None and chunk_size < 1:
            raise ValueError(f"{prefix}.chunk_size must be >= 1")
        exclude_raw = raw.get("exclude_codes")
        return cls(
            name=name,
            padding_pct=padding_pct,
            min_extent_deg=min_extent_deg,
            target_bounds=_pixel_rect(raw.get("target_bounds"), f"{prefix}.target_bounds"),
            bucket=_str(raw.get("bucket"), f"{prefix}.bucket"),
            table=_str(raw.get("table"), f"{prefix}.table"),
            conflict_key=_str(raw.get("conflict_key"), f"{prefix}.conflict_key"),
            exclude_codes=() if exclude_raw is None else _str_list(exclude_raw, f"{prefix}.exclude_codes"),
            source=SourceConfig.from_mapping(_mapping(raw.get("source"), f"{prefix}.source"), f"{prefix}.source"),
            renderer=_optional_str(raw.get("renderer"), f"{prefix}.renderer"),
            target_marker=_str(raw.get("target_marker", 'class="target"'), f"{prefix}.target_marker"),
            concurrency=concurrency,
            chunk_size=chunk_size,
            variants=_variants(raw.get("variants"), f"{prefix}.variants"),
        )


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    paths: PathsConfig
    download: DownloadConfig
    sync: SyncConfig
    upsert: UpsertConfig
    preview: PreviewConfig
    collections: Mapping[str, CollectionConfig]

    def collection(self, name: str) -> CollectionConfig:
        try:
            return self.collections[name]
        except KeyError:
            raise ValueError(
                f"Unknown collection '{name}'; configured: {', '.join(sorted(self.collections))}"
            ) from None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        collections_raw = _mapping(raw.get("collections"), "collections")
        collections: dict[str, CollectionConfig] = {}
        for name, item in collections_raw.items():
            if name not in COLLECTIONS:
                raise ValueError(f"Unknown collection 'collections.{name}'; expected one of: " + ", ".join(COLLECTIONS))
            collections[name] = CollectionConfig.from_mapping(name, _mapping(item, f"collections.{name}"))
        preview_raw = raw.get("preview")
        return cls(
            source_path=source_path.resolve(),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            download=DownloadConfig.from_mapping(_mapping(raw.get("download"), "download")),
            sync=SyncConfig.from_mapping(_mapping(raw.get("sync"), "sync")),
            upsert=UpsertConfig.from_mapping(_mapping(raw.get("upsert"), "upsert")),
            preview=(
                PreviewConfig.default()
                if preview_raw is None
                else PreviewConfig.from_mapping(_mapping(preview_raw, "preview"))
            ),
            collections=collections,
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)


@dataclass(frozen=True, slots=True)
class Settings:
    """Config plus environment, read once and passed down explicitly."""

    config: AppConfig
    source_url: str | None
    source_scale: str
    allow_destructive: bool
    supabase_url: str | None
    service_role_key: str | None
    db_url: str | None

    @classmethod
    def from_env(cls, config: AppConfig, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ

        def _env(name: str) -> str | None:
            value = env.get(name)
            if value is None or not value.strip():
                return None
            return value.strip()

        scale = (_env("SOURCE_SCALE") or "coarse").casefold()
        if scale not in SOURCE_SCALES:
            raise ValueError(f"SOURCE_SCALE must be one of: {', '.join(SOURCE_SCALES)}; got '{scale}'")
        return cls(
            config=config,
            source_url=_env("SOURCE_URL"),
            source_scale=scale,
            allow_destructive=destructive_enabled(env.get(DESTRUCTIVE_FLAG)),
            supabase_url=_env("SUPABASE_URL"),
            service_role_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
            db_url=_env("SUPABASE_DB_URL"),
        )

    def guard_environ(self) -> dict[str, str]:
        return {DESTRUCTIVE_FLAG: "1" if self.allow_destructive else ""}

    def public_url(self, bucket: str, code: str) -> str:
        if not self.supabase_url:
            raise ValueError("SUPABASE_URL is required to compute public object URLs")
        return public_object_url(self.supabase_url, bucket, f"svg/{code}.svg")
