"""Chunked, idempotent row upserts keyed by each collection's identity code."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence

from .errors import SchemaNotReadyError, UpsertError
from .models import MetaFile, UpsertBatch
from .storage import TableStore

_LOGGER = logging.getLogger("tilebuilder.upsert")


@dataclass(frozen=True, slots=True)
class UpsertResult:
    table: str
    upserted: int
    chunks: int


async def upsert_rows(
    store: TableStore,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    *,
    on_conflict: str,
    chunk_size: int,
) -> UpsertResult:
    """Upsert ``rows`` in order, ``chunk_size`` at a time.

    Each chunk commits on its own. When chunk ``i`` fails, the rows of chunks
    ``0..i-1`` stay committed and ``UpsertError.committed`` says how many.
    """
    batch = UpsertBatch(rows=tuple(rows), natural_key=on_conflict, chunk_size=chunk_size)
    for row in batch.rows:
        if row.get(on_conflict) in (None, ""):
            raise ValueError(f"Row without '{on_conflict}' value cannot be upserted into {table}")

    committed = 0
    for index, chunk in enumerate(batch.chunks()):
        try:
            await store.upsert(table, chunk, on_conflict=on_conflict)
        except Exception as exc:
            raise UpsertError(
                f"Upsert into {table} failed at chunk {index + 1}/{batch.chunk_count} "
                f"({committed} row(s) already committed): {exc}",
                chunk_index=index,
                committed=committed,
            ) from exc
        committed += len(chunk)
        _LOGGER.debug("Upserted chunk %d/%d into %s", index + 1, batch.chunk_count, table)

    _LOGGER.info("Upserted %d row(s) into %s in %d chunk(s)", committed, table, batch.chunk_count)
    return UpsertResult(table=table, upserted=committed, chunks=batch.chunk_count)


async def wait_for_columns(
    store: TableStore,
    table: str,
    columns: Sequence[str],
    *,
    attempts: int,
    delay_s: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Poll until ``columns`` of ``table`` are visible to the table API.

    Schema changes reach the API only after its cache reloads, which happens
    asynchronously. Returns the number of checks made.
    """
    for attempt in range(1, attempts + 1):
        if await store.columns_ready(table, columns):
            if attempt > 1:
                _LOGGER.info("Columns of %s visible after %d check(s)", table, attempt)
            return attempt
        _LOGGER.info("Waiting for schema cache of %s (%d/%d)", table, attempt, attempts)
        if attempt < attempts:
            await sleep(delay_s)
    raise SchemaNotReadyError(
        f"Schema cache did not expose {table}({', '.join(columns)}) after {attempts} check(s); "
        "try again in a few seconds"
    )


def departement_rows(meta_file: MetaFile) -> list[dict[str, Any]]:
    return [{"numero": code, "nom": meta["name"]} for code, meta in meta_file.metas.items()]


def country_rows(meta_file: MetaFile, public_url: Callable[[str], str]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for code, meta in meta_file.metas.items():
        names = meta.get("names") or {}
        extra = meta.get("extra") or {}
        name_en = names.get("en") or meta["name"]
        projected = meta.get("projected") or {}
        bbox = dict(meta.get("bbox") or {})
        bbox["projected"] = {
            "view_box": projected.get("view_box"),
            "target_bounds": projected.get("target_bounds"),
        }
        rows.append(
            {
                "iso2": code,
                "iso3": extra.get("iso3"),
                "name_en": name_en,
                "name_fr": names.get("fr") or name_en,
                "image_url": public_url(code),
                "bbox": bbox,
                "centroid": meta.get("centroid"),
            }
        )
    return rows


ROW_BUILDERS = {
    "departements": lambda meta_file, public_url: departement_rows(meta_file),
    "countries": country_rows,
}
