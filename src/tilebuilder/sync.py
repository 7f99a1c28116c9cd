"""Bounded-concurrency upload orchestration with retry and backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

from .errors import NetworkError
from .models import JobOutcome, SyncJob
from .storage import SVG_CONTENT_TYPE, BlobStore

_LOGGER = logging.getLogger("tilebuilder.sync")

JobAction = Callable[[SyncJob], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

_RETRYABLE = (NetworkError, asyncio.TimeoutError)


@dataclass(slots=True)
class SyncReport:
    jobs: list[SyncJob] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for job in self.jobs if job.outcome is JobOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for job in self.jobs if job.outcome is JobOutcome.FAILED)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def failures(self) -> list[SyncJob]:
        return [job for job in self.jobs if job.outcome is JobOutcome.FAILED]


class SyncOrchestrator:
    """Run one action per job with at most ``concurrency`` in flight.

    Transient failures (``NetworkError`` and attempt timeouts) are retried up
    to ``max_attempts`` total attempts, sleeping ``backoff_base_s * 2**(n-1)``
    after the n-th failed attempt. Any other exception fails its job at once.
    One failing job never cancels its siblings; the report is built only after
    every job has settled.
    """

    def __init__(
        self,
        *,
        concurrency: int,
        max_attempts: int,
        backoff_base_s: float,
        attempt_timeout_s: float | None = None,
        progress_every: int = 0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_base_s < 0:
            raise ValueError("backoff_base_s must be >= 0")
        if attempt_timeout_s is not None and attempt_timeout_s <= 0:
            raise ValueError("attempt_timeout_s must be > 0")
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.attempt_timeout_s = attempt_timeout_s
        self.progress_every = progress_every
        self._sleep = sleep
        self._settled = 0

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_s * (2 ** (attempt - 1))

    async def run(self, jobs: Sequence[SyncJob], action: JobAction) -> SyncReport:
        semaphore = asyncio.Semaphore(self.concurrency)
        self._settled = 0
        total = len(jobs)

        async def _guarded(job: SyncJob) -> None:
            async with semaphore:
                await self._run_job(job, action)
            self._settled += 1
            if self.progress_every > 0 and self._settled % self.progress_every == 0:
                _LOGGER.info("Progress: %d/%d jobs settled", self._settled, total)

        results = await asyncio.gather(*(_guarded(job) for job in jobs), return_exceptions=True)
        for job, result in zip(jobs, results):
            # Cancellation reaches here without passing through the attempt loop.
            if isinstance(result, BaseException) and not job.settled:
                job.outcome = JobOutcome.FAILED
                job.error = f"{type(result).__name__}: {result}"

        report = SyncReport(jobs=list(jobs))
        _LOGGER.info("Sync finished: %d succeeded, %d failed", report.succeeded, report.failed)
        return report

    async def _run_job(self, job: SyncJob, action: JobAction) -> None:
        while True:
            job.attempts += 1
            try:
                if self.attempt_timeout_s is None:
                    await action(job)
                else:
                    await asyncio.wait_for(action(job), timeout=self.attempt_timeout_s)
            except _RETRYABLE as exc:
                job.error = _describe(exc)
                if job.attempts >= self.max_attempts:
                    job.outcome = JobOutcome.FAILED
                    _LOGGER.error(
                        "Giving up on %s after %d attempt(s): %s", job.destination, job.attempts, job.error
                    )
                    return
                delay_s = self.backoff_delay(job.attempts)
                _LOGGER.warning(
                    "Transient failure for %s; retrying in %.2fs (%d/%d): %s",
                    job.destination,
                    delay_s,
                    job.attempts,
                    self.max_attempts,
                    job.error,
                )
                await self._sleep(delay_s)
                continue
            except Exception as exc:
                job.error = _describe(exc)
                job.outcome = JobOutcome.FAILED
                _LOGGER.error("Job %s failed: %s", job.destination, job.error)
                return
            job.outcome = JobOutcome.SUCCESS
            job.error = None
            return


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "attempt timed out"
    return f"{type(exc).__name__}: {exc}"


def svg_jobs(svg_dir: Path, *, prefix: str = "svg") -> list[SyncJob]:
    """One job per ``*.svg`` file, keyed ``{prefix}/{CODE}.svg``."""
    if not svg_dir.is_dir():
        return []
    jobs: list[SyncJob] = []
    for path in sorted(svg_dir.glob("*.svg")):
        code = path.stem.upper()
        jobs.append(SyncJob(source=path, destination=f"{prefix}/{code}.svg"))
    return jobs


async def upload_svg_dirs(
    store: BlobStore,
    orchestrator: SyncOrchestrator,
    *,
    svg_dirs: Mapping[str, Path],
    bucket: str,
    cache_control: str,
    on_bucket_ready: Callable[[], Awaitable[None]] | None = None,
) -> SyncReport:
    """Upload several SVG families, keyed by storage prefix, in one run.

    The bucket is ensured once before anything else touches it; then
    ``on_bucket_ready`` runs, then every upload.
    """
    jobs = [job for prefix, svg_dir in svg_dirs.items() for job in svg_jobs(svg_dir, prefix=prefix)]
    if not jobs:
        _LOGGER.warning("No SVG files found in %s", ", ".join(str(d) for d in svg_dirs.values()))
        return SyncReport()
    await store.ensure_bucket(bucket, public=True)
    if on_bucket_ready is not None:
        await on_bucket_ready()
    _LOGGER.info("Uploading %d SVG files to bucket %s (concurrency=%d)", len(jobs), bucket, orchestrator.concurrency)

    async def _upload(job: SyncJob) -> None:
        body = await asyncio.to_thread(job.source.read_bytes)
        await store.upload(
            bucket,
            job.destination,
            body,
            content_type=SVG_CONTENT_TYPE,
            cache_control=cache_control,
        )

    return await orchestrator.run(jobs, _upload)


def format_sync_lines(report: SyncReport, *, label: str) -> list[str]:
    lines = [f"[INFO] {label}: {report.succeeded} uploaded, {report.failed} failed"]
    for job in report.failures():
        lines.append(f"[ERROR] {job.destination} after {job.attempts} attempt(s): {job.error}")
    if report.ok:
        lines.append(f"[OK] {label} upload completed with no errors.")
    return lines
