"""Blob storage and table adapters over the Supabase async client.

The pipeline talks to ``BlobStore`` and ``TableStore``; the Supabase classes
are the production implementations and translate transport failures into
``NetworkError`` so the orchestrator can retry them.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence

import httpx
from postgrest.exceptions import APIError
from storage3.utils import StorageException

from .errors import NetworkError

_LOGGER = logging.getLogger("tilebuilder.storage")

SVG_CONTENT_TYPE = "image/svg+xml"
_LIST_PAGE_SIZE = 1000
# PostgREST wording for a table or column missing from its schema cache.
_SCHEMA_CACHE_MARKERS = ("schema cache", "could not find", "does not exist")


class BlobStore(Protocol):
    async def ensure_bucket(self, bucket: str, *, public: bool = True) -> bool: ...

    async def upload(
        self,
        bucket: str,
        key: str,
        body: bytes,
        *,
        content_type: str,
        cache_control: str,
    ) -> None: ...

    async def list_keys(self, bucket: str, prefix: str) -> list[str]: ...

    async def remove(self, bucket: str, keys: Sequence[str]) -> int: ...


class TableStore(Protocol):
    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str) -> None: ...

    async def select_keys(self, table: str, key_column: str) -> list[str]: ...

    async def delete_keys(self, table: str, key_column: str, keys: Sequence[str]) -> int: ...

    async def columns_ready(self, table: str, columns: Sequence[str]) -> bool: ...


def public_object_url(supabase_url: str, bucket: str, key: str) -> str:
    return f"{supabase_url.rstrip('/')}/storage/v1/object/public/{bucket}/{key}"


class SupabaseBlobStore:
    """Supabase Storage; uploads are upserts so re-issuing one is safe."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def ensure_bucket(self, bucket: str, *, public: bool = True) -> bool:
        try:
            buckets = await self._client.storage.list_buckets()
            if any(_bucket_name(item) == bucket for item in buckets):
                return False
            await self._client.storage.create_bucket(bucket, options={"public": public})
        except (httpx.HTTPError, StorageException) as exc:
            raise NetworkError(f"ensure bucket '{bucket}' failed: {exc}") from exc
        _LOGGER.info("Created storage bucket %s (public=%s)", bucket, public)
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
        try:
            await self._client.storage.from_(bucket).upload(
                path=key,
                file=body,
                file_options={
                    "content-type": content_type,
                    "cache-control": cache_control,
                    "upsert": "true",
                },
            )
        except (httpx.HTTPError, StorageException) as exc:
            raise NetworkError(f"upload {bucket}/{key} failed: {exc}") from exc

    async def list_keys(self, bucket: str, prefix: str) -> list[str]:
        keys: list[str] = []
        offset = 0
        try:
            while True:
                page = await self._client.storage.from_(bucket).list(
                    prefix,
                    {"limit": _LIST_PAGE_SIZE, "offset": offset, "sortBy": {"column": "name", "order": "asc"}},
                )
                names = [str(item["name"]) for item in page or [] if item.get("name")]
                keys.extend(f"{prefix}/{name}" if prefix else name for name in names)
                if len(page or []) < _LIST_PAGE_SIZE:
                    break
                offset += _LIST_PAGE_SIZE
        except (httpx.HTTPError, StorageException) as exc:
            raise NetworkError(f"list {bucket}/{prefix} failed: {exc}") from exc
        return keys

    async def remove(self, bucket: str, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        try:
            removed = await self._client.storage.from_(bucket).remove(list(keys))
        except (httpx.HTTPError, StorageException) as exc:
            raise NetworkError(f"remove from {bucket} failed: {exc}") from exc
        return len(removed or [])


class SupabaseTableStore:
    """PostgREST table access through the Supabase client."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def upsert(self, table: str, rows: Sequence[Mapping[str, Any]], *, on_conflict: str) -> None:
        try:
            await self._client.table(table).upsert([dict(row) for row in rows], on_conflict=on_conflict).execute()
        except httpx.HTTPError as exc:
            raise NetworkError(f"upsert into {table} failed: {exc}") from exc

    async def select_keys(self, table: str, key_column: str) -> list[str]:
        try:
            response = await self._client.table(table).select(key_column).execute()
        except (httpx.HTTPError, APIError) as exc:
            raise NetworkError(f"select {table}.{key_column} failed: {exc}") from exc
        return [str(row[key_column]) for row in response.data or [] if row.get(key_column) is not None]

    async def columns_ready(self, table: str, columns: Sequence[str]) -> bool:
        """False while PostgREST's schema cache lacks the table or a column."""
        try:
            await self._client.table(table).select(",".join(columns)).limit(1).execute()
        except APIError as exc:
            message = str(exc.message or exc).lower()
            if any(marker in message for marker in _SCHEMA_CACHE_MARKERS):
                return False
            raise
        except httpx.HTTPError as exc:
            raise NetworkError(f"select from {table} failed: {exc}") from exc
        return True

    async def delete_keys(self, table: str, key_column: str, keys: Sequence[str]) -> int:
        if not keys:
            return 0
        try:
            response = await self._client.table(table).delete().in_(key_column, list(keys)).execute()
        except httpx.HTTPError as exc:
            raise NetworkError(f"delete from {table} failed: {exc}") from exc
        return len(response.data or [])


async def create_supabase_client(url: str, service_role_key: str) -> Any:
    """Async Supabase client without session persistence."""
    try:
        from supabase import AsyncClientOptions, acreate_client
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("supabase is required for storage and table access") from exc
    options = AsyncClientOptions(auto_refresh_token=False, persist_session=False)
    return await acreate_client(url, service_role_key, options=options)


def _bucket_name(item: Any) -> str | None:
    if isinstance(item, Mapping):
        return item.get("name") or item.get("id")
    return getattr(item, "name", None) or getattr(item, "id", None)
