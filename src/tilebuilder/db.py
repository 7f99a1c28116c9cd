"""Non-destructive schema ensure for the seeded tables (psycopg, async)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .errors import NetworkError

_LOGGER = logging.getLogger("tilebuilder.db")

_SUPABASE_HOST_SUFFIXES = (".supabase.co", ".supabase.com")


@dataclass(frozen=True, slots=True)
class TableSchema:
    table: str
    key: str
    columns: tuple[tuple[str, str], ...]


TABLE_SCHEMAS: dict[str, TableSchema] = {
    "countries": TableSchema(
        table="countries",
        key="iso2",
        columns=(
            ("iso2", "text"),
            ("iso3", "text"),
            ("name_en", "text"),
            ("name_fr", "text"),
            ("image_url", "text"),
            ("bbox", "jsonb"),
            ("centroid", "jsonb"),
        ),
    ),
    "departements": TableSchema(
        table="departements",
        key="numero",
        columns=(("numero", "text"), ("nom", "text")),
    ),
}


def schema_statements(schema: TableSchema) -> list[Any]:
    """DDL that creates the table if needed and adds what is missing.

    Existing columns and keys are left alone; the unique index is what
    PostgREST needs for ``on_conflict`` upserts.
    """
    sql = _require_psycopg().sql
    table = sql.Identifier("public", schema.table)
    statements: list[Any] = [
        sql.SQL("CREATE TABLE IF NOT EXISTS {} ({} text)").format(table, sql.Identifier(schema.key)),
    ]
    for column, column_type in schema.columns:
        statements.append(
            sql.SQL("ALTER TABLE {} ADD COLUMN IF NOT EXISTS {} {}").format(
                table, sql.Identifier(column), sql.SQL(column_type)
            )
        )
    statements.append(
        sql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} ({})").format(
            sql.Identifier(f"{schema.table}_{schema.key}_key"),
            table,
            sql.Identifier(schema.key),
        )
    )
    # PostgREST caches the schema; new columns are invisible until reload.
    statements.append(sql.SQL("SELECT pg_notify('pgrst', 'reload schema')"))
    return statements


def connect_kwargs(db_url: str) -> dict[str, Any]:
    """Require TLS on Supabase hosts unless the URL already chooses."""
    parts = urlsplit(db_url)
    host = (parts.hostname or "").lower()
    params = parse_qs(parts.query)
    if host.endswith(_SUPABASE_HOST_SUFFIXES) and "sslmode" not in params:
        return {"sslmode": "require"}
    return {}


async def ensure_table(db_url: str, schema: TableSchema) -> None:
    psycopg = _require_psycopg()
    try:
        async with await psycopg.AsyncConnection.connect(
            db_url, autocommit=True, **connect_kwargs(db_url)
        ) as conn:
            async with conn.cursor() as cur:
                for statement in schema_statements(schema):
                    await cur.execute(statement)
    except psycopg.OperationalError as exc:
        host = urlsplit(db_url).hostname or "<unknown-host>"
        raise NetworkError(
            f"Postgres connect failed for host {host}: {exc}. "
            "On IPv4-only networks use the Supabase connection pooler URL for SUPABASE_DB_URL."
        ) from exc
    _LOGGER.info("Ensured table public.%s (key %s, %d columns)", schema.table, schema.key, len(schema.columns))


def _require_psycopg() -> Any:
    try:
        import psycopg
        from psycopg import sql  # noqa: F401
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("psycopg is required for table schema setup") from exc
    return psycopg
