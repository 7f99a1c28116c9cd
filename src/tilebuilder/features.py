"""Feature collection loading: identity codes, names, dedupe and ordering."""

from __future__ import annotations

import logging
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .errors import GeometryInvalid, ValidationError
from .geo import normalize_feature
from .models import Feature

_LOGGER = logging.getLogger("tilebuilder.features")

_AREA_TYPES = ("Polygon", "MultiPolygon")
_NUL = "\x00"
_DIGITS_RE = re.compile(r"([0-9]+)")


@dataclass(frozen=True, slots=True)
class FeatureSchema:
    """Candidate property names per field, in priority order.

    ``name_fields`` maps a locale to its candidates; ``primary_name`` is the
    locale every other locale falls back to.
    """

    label: str
    code_fields: tuple[str, ...]
    name_fields: Mapping[str, tuple[str, ...]]
    primary_name: str
    code_pattern: re.Pattern[str]
    extra_fields: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    extra_patterns: Mapping[str, re.Pattern[str]] = field(default_factory=dict)

    def accepts(self, code: str) -> bool:
        return self.code_pattern.fullmatch(code) is not None


@dataclass(frozen=True, slots=True)
class ResolvedSchema:
    """Property keys actually present in one collection."""

    code_keys: tuple[str, ...]
    name_keys: Mapping[str, tuple[str, ...]]
    extra_keys: Mapping[str, tuple[str, ...]]


DEPARTEMENTS_SCHEMA = FeatureSchema(
    label="departements",
    code_fields=("code", "code_dept", "code_dep", "insee_dep", "numero"),
    name_fields={"fr": ("nom", "name", "libelle", "nom_dept")},
    primary_name="fr",
    # Mainland 01-19 and 21-95, Corsica 2A/2B, overseas 971-974 and 976.
    code_pattern=re.compile(r"0[1-9]|1[0-9]|2[1-9]|[3-8][0-9]|9[0-5]|2A|2B|97[12346]"),
)

COUNTRIES_SCHEMA = FeatureSchema(
    label="countries",
    code_fields=("ISO_A2", "ISO_A2_EH"),
    name_fields={
        "en": ("NAME_EN", "NAME", "ADMIN"),
        "fr": ("NAME_FR", "NAME_FRCA"),
    },
    primary_name="en",
    code_pattern=re.compile(r"[A-Z]{2}"),
    extra_fields={"iso3": ("ISO_A3", "ISO_A3_EH", "ADM0_A3", "SOV_A3")},
    extra_patterns={"iso3": re.compile(r"[A-Z]{3}")},
)

SCHEMAS: Mapping[str, FeatureSchema] = {
    DEPARTEMENTS_SCHEMA.label: DEPARTEMENTS_SCHEMA,
    COUNTRIES_SCHEMA.label: COUNTRIES_SCHEMA,
}


@dataclass(slots=True)
class LoadResult:
    features: list[Feature] = field(default_factory=list)
    skipped: Counter[str] = field(default_factory=Counter)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


def normalize_code(value: str) -> str:
    return value.replace(_NUL, "").strip().upper()


def natural_sort_key(code: str) -> tuple[tuple[tuple[int, int, str], ...], str]:
    """Numeric-aware, accent/case-insensitive key; raw code breaks ties.

    "2" sorts before "10" and "2A" sits right next to "2B".
    """
    folded = _fold(code)
    parts: list[tuple[int, int, str]] = []
    for chunk in _DIGITS_RE.split(folded):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            parts.append((1, 0, chunk))
    return (tuple(parts), code)


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def resolve_schema(schema: FeatureSchema, property_keys: Iterable[str]) -> ResolvedSchema:
    """Match candidate names against the keys present in the collection once."""
    present = set(property_keys)

    def _present(candidates: Sequence[str]) -> tuple[str, ...]:
        return tuple(key for key in candidates if key in present)

    code_keys = _present(schema.code_fields)
    if not code_keys:
        raise ValidationError(
            f"No identity code property for {schema.label}; expected one of: "
            + ", ".join(schema.code_fields)
        )
    name_keys = {locale: _present(candidates) for locale, candidates in schema.name_fields.items()}
    if not name_keys.get(schema.primary_name):
        raise ValidationError(
            f"No name property for {schema.label}; expected one of: "
            + ", ".join(schema.name_fields[schema.primary_name])
        )
    extra_keys = {name: _present(candidates) for name, candidates in schema.extra_fields.items()}
    return ResolvedSchema(code_keys=code_keys, name_keys=name_keys, extra_keys=extra_keys)


def load_feature_collection(
    data: Any,
    schema: FeatureSchema,
    *,
    exclude_codes: Iterable[str] = (),
) -> LoadResult:
    """Parse a GeoJSON FeatureCollection into sorted, unique, normalized features.

    Only a malformed top-level collection or an unrecognized property schema
    is fatal; per-feature problems are skipped and counted by reason.
    """
    if not isinstance(data, Mapping) or data.get("type") != "FeatureCollection":
        kind = data.get("type") if isinstance(data, Mapping) else type(data).__name__
        raise ValidationError(f"Expected a FeatureCollection for {schema.label}, got {kind!r}")
    raw_features = data.get("features")
    if raw_features is None:
        raw_features = []
    if not isinstance(raw_features, Sequence) or isinstance(raw_features, (str, bytes)):
        raise ValidationError("'features' must be an array")

    property_keys = _property_keys(raw_features)
    if property_keys:
        resolved = resolve_schema(schema, property_keys)
    else:
        # Nothing to match against; every feature is skipped below.
        resolved = ResolvedSchema(code_keys=(), name_keys={}, extra_keys={})
    excluded = {normalize_code(code) for code in exclude_codes}

    result = LoadResult()
    seen: set[str] = set()
    for raw in raw_features:
        if not isinstance(raw, Mapping):
            result.skipped["not_a_feature"] += 1
            continue
        geometry = raw.get("geometry")
        if not isinstance(geometry, Mapping):
            result.skipped["missing_geometry"] += 1
            continue
        if geometry.get("type") not in _AREA_TYPES:
            result.skipped["unsupported_geometry"] += 1
            continue

        props = raw.get("properties") or {}
        if not isinstance(props, Mapping):
            props = {}
        code, code_seen = _first_valid_code(props, resolved.code_keys, schema)
        names = _resolve_names(props, resolved, schema)
        if code is None:
            result.skipped["invalid_code" if code_seen else "missing_code"] += 1
            continue
        if schema.primary_name not in names:
            result.skipped["missing_name"] += 1
            continue
        if code in seen:
            result.skipped["duplicate"] += 1
            continue
        seen.add(code)
        if code in excluded:
            result.skipped["excluded"] += 1
            continue

        try:
            feature = normalize_feature(
                code=code,
                name=names[schema.primary_name],
                geometry=geometry,
                names=names,
                extra=_resolve_extra(props, resolved, schema),
            )
        except GeometryInvalid as exc:
            _LOGGER.warning("Skipping %s %s: %s", schema.label, code, exc)
            result.skipped["geometry_invalid"] += 1
            continue
        result.features.append(feature)

    result.features.sort(key=lambda f: natural_sort_key(f.code))
    _LOGGER.info(
        "Loaded %d %s features (skipped %d: %s)",
        len(result.features),
        schema.label,
        result.skipped_total,
        ", ".join(f"{k}={v}" for k, v in sorted(result.skipped.items())) or "none",
    )
    return result


def _property_keys(raw_features: Sequence[Any]) -> set[str]:
    keys: set[str] = set()
    for raw in raw_features:
        if not isinstance(raw, Mapping):
            continue
        props = raw.get("properties")
        if isinstance(props, Mapping):
            keys.update(str(k) for k in props.keys())
    return keys


def _clean_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.replace(_NUL, "").strip()
    return cleaned or None


def _first_valid_code(
    props: Mapping[str, Any],
    keys: Sequence[str],
    schema: FeatureSchema,
) -> tuple[str | None, bool]:
    """Return the first accepted code and whether any candidate had a value."""
    seen_value = False
    for key in keys:
        raw = _clean_str(props.get(key))
        if raw is None:
            continue
        seen_value = True
        code = normalize_code(raw)
        if schema.accepts(code):
            return code, True
    return None, seen_value


def _resolve_names(
    props: Mapping[str, Any],
    resolved: ResolvedSchema,
    schema: FeatureSchema,
) -> dict[str, str]:
    names: dict[str, str] = {}
    for locale, keys in resolved.name_keys.items():
        for key in keys:
            value = _clean_str(props.get(key))
            if value is not None:
                names[locale] = value
                break
    primary = names.get(schema.primary_name)
    if primary is not None:
        for locale in schema.name_fields:
            names.setdefault(locale, primary)
    return names


def _resolve_extra(
    props: Mapping[str, Any],
    resolved: ResolvedSchema,
    schema: FeatureSchema,
) -> dict[str, str | None]:
    extra: dict[str, str | None] = {}
    for name, keys in resolved.extra_keys.items():
        pattern = schema.extra_patterns.get(name)
        extra[name] = None
        for key in keys:
            value = _clean_str(props.get(key))
            if value is None:
                continue
            value = value.upper()
            if pattern is None or pattern.fullmatch(value):
                extra[name] = value
                break
    return extra
