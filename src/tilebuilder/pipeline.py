"""End-to-end stages for one collection: generate, upload, seed, reset."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from .config import CollectionConfig, Settings
from .credentials import check_credentials
from .db import TABLE_SCHEMAS, ensure_table
from .errors import SafeguardError, StageError, UpsertError
from .generate import GenerateReport, Renderer, format_generate_lines, load_meta_file, resolve_renderer, run_generate
from .guard import assert_destructive_allowed
from .sources import HttpDownloader, load_source
from .storage import BlobStore, SupabaseBlobStore, SupabaseTableStore, TableStore, create_supabase_client
from .sync import SyncOrchestrator, SyncReport, format_sync_lines, upload_svg_dirs
from .upsert import ROW_BUILDERS, UpsertResult, upsert_rows, wait_for_columns

_LOGGER = logging.getLogger("tilebuilder.pipeline")

STAGES = ("generate", "upload", "seed")
_LEGACY_KEY_RE = re.compile(r"^[A-Z]{2}\.SVG\.svg$")
_REMOVE_BATCH = 100


@dataclass(slots=True)
class PipelineReport:
    collection: str
    completed: dict[str, int] = field(default_factory=dict)
    failed_stage: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None


class Pipeline:
    """Runs stages in order and stops at the first fatal one.

    Stores, downloader and renderer can be injected; otherwise they are
    built from ``settings`` on first use.
    """

    def __init__(
        self,
        settings: Settings,
        collection: str,
        *,
        blob_store: BlobStore | None = None,
        table_store: TableStore | None = None,
        downloader: HttpDownloader | None = None,
        renderer: Renderer | None = None,
        force_download: bool = False,
    ) -> None:
        self.settings = settings
        self.collection: CollectionConfig = settings.config.collection(collection)
        self._blob_store = blob_store
        self._table_store = table_store
        self._downloader = downloader
        self._renderer = renderer
        self.force_download = force_download
        self.report = PipelineReport(collection=collection)
        self._client: Any = None

    async def run(self, stages: Sequence[str] = STAGES) -> PipelineReport:
        for stage in stages:
            if stage not in STAGES:
                raise ValueError(f"Unknown stage '{stage}'; expected one of: {', '.join(STAGES)}")
        for stage in stages:
            await self._run_stage(stage)
        return self.report

    async def reset(self) -> PipelineReport:
        """Delete every stored object and row of the collection, then reseed.

        Requires the destructive opt-in flag; checked before anything is read
        or deleted remotely.
        """
        bucket = self.collection.bucket
        table = self.collection.table
        assert_destructive_allowed(
            f"reset {self.collection.name}",
            f"bucket {bucket} prefixes {', '.join(self.collection.variants)}, table {table}",
            environ=self.settings.guard_environ(),
        )
        await self._run_stage("reset", self._wipe)
        await self._run_stage("upload")
        await self._run_stage("seed")
        return self.report

    async def _run_stage(self, stage: str, func: Any = None) -> None:
        func = func or getattr(self, f"_stage_{stage}")
        _LOGGER.info("[%s] Stage '%s' started", self.collection.name, stage)
        try:
            completed = await func()
        except StageError:
            self.report.failed_stage = stage
            raise
        except Exception as exc:
            self.report.failed_stage = stage
            raise StageError(stage, exc) from exc
        self.report.completed[stage] = completed
        _LOGGER.info("[%s] Stage '%s' finished (%d unit(s))", self.collection.name, stage, completed)

    async def _stage_generate(self) -> int:
        cfg = self.settings.config
        renderer = self._renderer or resolve_renderer(self.collection.renderer)
        downloader = self._downloader or HttpDownloader(cfg.download)
        raw = await asyncio.to_thread(
            load_source,
            self.collection,
            downloader,
            cfg.paths.data_dir,
            scale=self.settings.source_scale,
            override_url=self.settings.source_url,
            force=self.force_download,
        )
        report: GenerateReport = run_generate(
            self.collection,
            raw,
            paths=cfg.paths,
            renderer=renderer,
            preview=cfg.preview,
        )
        for line in format_generate_lines(report):
            _LOGGER.info(line)
        return report.generated

    async def _stage_upload(self) -> int:
        store = await self._blobs()
        paths = self.settings.config.paths
        sync_cfg = self.settings.config.sync
        orchestrator = SyncOrchestrator(
            concurrency=self.collection.concurrency or sync_cfg.concurrency,
            max_attempts=sync_cfg.max_attempts,
            backoff_base_s=sync_cfg.backoff_base_s,
            attempt_timeout_s=sync_cfg.attempt_timeout_s,
            progress_every=sync_cfg.progress_every,
        )
        report: SyncReport = await upload_svg_dirs(
            store,
            orchestrator,
            svg_dirs={prefix: paths.variant_dir(self.collection.name, prefix) for prefix in self.collection.variants},
            bucket=self.collection.bucket,
            cache_control=sync_cfg.cache_control,
            on_bucket_ready=lambda: self._cleanup_legacy_keys(store),
        )
        for line in format_sync_lines(report, label=self.collection.name):
            _LOGGER.info(line)
        if not report.jobs:
            raise FileNotFoundError(
                f"No SVG files to upload for {self.collection.name}; run 'generate' first"
            )
        if not report.ok:
            failed = ", ".join(job.destination for job in report.failures()[:5])
            raise StageError(
                "upload",
                RuntimeError(f"{report.failed} upload(s) failed ({failed})"),
                completed=report.succeeded,
            )
        return report.succeeded

    async def _stage_seed(self) -> int:
        paths = self.settings.config.paths
        meta_file = load_meta_file(paths.meta_path(self.collection.name))
        store = await self._tables()
        schema = TABLE_SCHEMAS[self.collection.name]
        if self.settings.db_url:
            await ensure_table(self.settings.db_url, schema)
        else:
            _LOGGER.warning("SUPABASE_DB_URL not set; skipping table schema ensure for %s", self.collection.table)
        await wait_for_columns(
            store,
            self.collection.table,
            [column for column, _ in schema.columns],
            attempts=self.settings.config.upsert.schema_wait_attempts,
            delay_s=self.settings.config.upsert.schema_wait_delay_s,
        )
        bucket = self.collection.bucket
        rows = ROW_BUILDERS[self.collection.name](
            meta_file, lambda code: self.settings.public_url(bucket, code)
        )
        try:
            result: UpsertResult = await upsert_rows(
                store,
                self.collection.table,
                rows,
                on_conflict=self.collection.conflict_key,
                chunk_size=self.collection.chunk_size or self.settings.config.upsert.chunk_size,
            )
        except UpsertError as exc:
            raise StageError("seed", exc, completed=exc.committed) from exc
        return result.upserted

    async def _wipe(self) -> int:
        blobs = await self._blobs()
        tables = await self._tables()
        keys = await self._variant_keys(blobs)
        removed_objects = 0
        for start in range(0, len(keys), _REMOVE_BATCH):
            removed_objects += await blobs.remove(self.collection.bucket, keys[start : start + _REMOVE_BATCH])
        codes = await tables.select_keys(self.collection.table, self.collection.conflict_key)
        removed_rows = 0
        for start in range(0, len(codes), _REMOVE_BATCH):
            removed_rows += await tables.delete_keys(
                self.collection.table,
                self.collection.conflict_key,
                codes[start : start + _REMOVE_BATCH],
            )
        _LOGGER.warning(
            "[%s] Reset removed %d object(s) and %d row(s)", self.collection.name, removed_objects, removed_rows
        )
        return removed_objects + removed_rows

    async def _variant_keys(self, store: BlobStore) -> list[str]:
        keys: list[str] = []
        for prefix in self.collection.variants:
            keys.extend(await store.list_keys(self.collection.bucket, prefix))
        return keys

    async def _cleanup_legacy_keys(self, store: BlobStore) -> None:
        """Remove ``XX.SVG.svg`` objects left by an old naming bug."""
        bucket = self.collection.bucket
        keys = await self._variant_keys(store)
        legacy = [key for key in keys if _LEGACY_KEY_RE.match(key.rsplit("/", 1)[-1])]
        if not legacy:
            return
        try:
            assert_destructive_allowed(
                "remove legacy object names",
                f"{len(legacy)} object(s) in {bucket}",
                environ=self.settings.guard_environ(),
            )
        except SafeguardError as exc:
            _LOGGER.warning("%s Leaving them in place.", exc)
            return
        removed = await store.remove(bucket, legacy)
        _LOGGER.info("Removed %d legacy object(s) from %s", removed, bucket)

    async def _ensure_client(self) -> Any:
        if self._client is None:
            check = check_credentials(
                self.settings.supabase_url,
                self.settings.service_role_key,
                self.settings.db_url,
            )
            _LOGGER.info("Credentials target project %s", check.project_ref)
            self._client = await create_supabase_client(
                self.settings.supabase_url or "", self.settings.service_role_key or ""
            )
        return self._client

    async def _blobs(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = SupabaseBlobStore(await self._ensure_client())
        return self._blob_store

    async def _tables(self) -> TableStore:
        if self._table_store is None:
            self._table_store = SupabaseTableStore(await self._ensure_client())
        return self._table_store


def format_pipeline_lines(report: PipelineReport) -> list[str]:
    lines = [f"[INFO] {stage}: {count} unit(s)" for stage, count in report.completed.items()]
    if report.failed_stage:
        lines.append(f"[ERROR] Stopped at stage '{report.failed_stage}'")
    else:
        lines.append(f"[OK] {report.collection} pipeline completed with no errors.")
    return lines
