"""SVG generation stage: framing metadata, renderer plug-in, sidecar."""

from __future__ import annotations

import importlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from .config import CollectionConfig, PathsConfig, PreviewConfig
from .errors import GeometryInvalid, NotFoundError, ValidationError
from .features import SCHEMAS, load_feature_collection
from .models import Feature, MetaFile, RenderMeta
from .preview import write_preview_index
from .projection import Projector
from .util import format_code_list, read_json, remove_files, write_json

_LOGGER = logging.getLogger("tilebuilder.generate")


class Renderer(Protocol):
    """Draws one feature for one variant.

    ``context`` holds every feature of the collection; ``options`` are the
    variant's configured renderer options (e.g. ``{"theme": "blue"}``).
    """

    def __call__(
        self,
        feature: Feature,
        meta: RenderMeta,
        context: Sequence[Feature],
        options: Mapping[str, Any],
    ) -> str: ...


@dataclass(slots=True)
class GenerateReport:
    collection: str
    generated: int = 0
    skipped: Counter[str] = field(default_factory=Counter)
    meta_path: Path | None = None
    preview_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


def resolve_renderer(ref: str | None) -> Renderer:
    """Import a renderer given as ``package.module:callable``."""
    if not ref:
        raise ValidationError(
            "No SVG renderer configured; set collections.<name>.renderer to 'module:callable' "
            "or pass --renderer"
        )
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ValidationError(f"Renderer must look like 'module:callable', got '{ref}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ValidationError(f"Cannot import renderer module '{module_name}': {exc}") from exc
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise ValidationError(f"Renderer '{ref}' not found")
    if not callable(target):
        raise ValidationError(f"Renderer '{ref}' is not callable")
    return target


def run_generate(
    collection: CollectionConfig,
    raw_collection: Any,
    *,
    paths: PathsConfig,
    renderer: Renderer,
    preview: PreviewConfig | None = None,
) -> GenerateReport:
    """Load, frame and render every feature, then write the sidecar.

    Per-feature geometry problems are skipped and counted. A malformed
    collection or renderer output without the target marker aborts the stage.
    """
    report = GenerateReport(collection=collection.name)
    schema = SCHEMAS[collection.name]
    loaded = load_feature_collection(raw_collection, schema, exclude_codes=collection.exclude_codes)
    report.skipped.update(loaded.skipped)
    if not loaded.features:
        raise ValidationError(f"No usable {collection.name} features in source collection")

    projector = Projector(
        padding_pct=collection.padding_pct,
        min_extent_deg=collection.min_extent_deg,
        target_bounds=collection.target_bounds,
    )
    variant_dirs = {prefix: paths.variant_dir(collection.name, prefix) for prefix in collection.variants}
    for variant_dir in variant_dirs.values():
        removed = remove_files(variant_dir, "*.svg")
        if removed:
            _LOGGER.info("Removed %d stale SVG file(s) from %s", removed, variant_dir)
        variant_dir.mkdir(parents=True, exist_ok=True)
    svg_dir = paths.svg_dir(collection.name)

    metas: dict[str, dict[str, Any]] = {}
    for feature in loaded.features:
        try:
            meta = projector.project(feature)
        except GeometryInvalid as exc:
            report.skipped["geometry_invalid"] += 1
            report.add_warning(f"{feature.code}: {exc}")
            continue
        for prefix, options in collection.variants.items():
            svg = renderer(feature, meta, loaded.features, options)
            if not isinstance(svg, str) or collection.target_marker not in svg:
                raise ValidationError(
                    f"SVG check failed for {prefix}/{feature.code}: renderer output lacks {collection.target_marker}"
                )
            (variant_dirs[prefix] / f"{feature.code}.svg").write_text(svg, encoding="utf-8")
        metas[feature.code] = meta.to_dict()
        report.generated += 1

    meta_file = MetaFile.create(metas)
    report.meta_path = paths.meta_path(collection.name)
    write_json(report.meta_path, meta_file.to_dict())
    report.add_info(
        f"Generated {report.generated} {collection.name} feature(s) x {len(variant_dirs)} variant(s): "
        + ", ".join(variant_dirs)
    )
    report.add_info(f"Metadata sidecar written to {report.meta_path}")
    if report.skipped:
        report.add_info(
            "Skipped features: " + ", ".join(f"{k}={v}" for k, v in sorted(report.skipped.items()))
        )
    if report.warnings:
        _LOGGER.debug("Geometry skips: %s", format_code_list([w.split(":", 1)[0] for w in report.warnings]))

    preview = preview or PreviewConfig.default()
    if preview.generate_index:
        report.preview_path = write_preview_index(
            meta_file=meta_file,
            svg_dir=svg_dir,
            output_html=paths.preview_path(collection.name),
            title=collection.name,
            thumbnail_width_px=preview.thumbnail_width_px,
            max_columns=preview.max_columns,
        )
        report.add_info(f"Preview index written to {report.preview_path}")
    return report


def load_meta_file(path: Path) -> MetaFile:
    if not path.exists():
        raise NotFoundError(f"Metadata sidecar not found: {path}; run 'generate' first")
    return MetaFile.from_mapping(read_json(path))


def format_generate_lines(report: GenerateReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append(f"[OK] {report.collection} generation completed with no errors.")
    return lines
