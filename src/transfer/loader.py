from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Sequence

from transfer.config import MigrationSpec
from transfer.destinations import Destination
from transfer.domain import Job, LoadSummary, MigrationError, Result, RunContext
from transfer.ledger_store import LoadLedger
from transfer.remote_sync import Downloader
from transfer.staging_layout import StagingLayout
from transfer.utils import Chronometer, sha256_file_hash
from transfer.worker_pool import Channel, WorkerPool

logger = logging.getLogger(__name__)


class BulkLoadError(MigrationError):
    """One or more chunks failed to load. Carries every result collected before the pool stopped."""

    def __init__(self, message: str, *, failures: Sequence[Result], results: Sequence[Result]) -> None:
        super().__init__(message)
        self.failures = tuple(failures)
        self.results = tuple(results)


class BulkLoader:
    """
    Coordinates: bootstrap -> download -> enumerate -> load (worker pool) -> cleanup.

    Each step is fatal on error. The working directory is removed at the end of
    the run, whether it succeeded or not.
    """

    def __init__(
        self,
        *,
        spec: MigrationSpec,
        destination: Destination,
        downloader: Downloader,
        layout: StagingLayout,
        ledger: LoadLedger | None = None,
    ):
        self.spec = spec
        self.destination = destination
        self.downloader = downloader
        self.layout = layout
        self.ledger = ledger

    def run(self, ctx: RunContext) -> LoadSummary:
        chronometer = Chronometer()
        try:
            if self.spec.bootstrap:
                self._bootstrap()

            self.layout.chunk_dir.mkdir(parents=True, exist_ok=True)
            self.downloader.download(self.spec.remote_url, self.layout.chunk_dir)

            jobs = self.discover_jobs()
            logger.info("Discovered %s chunk file(s) to load with %s worker(s).", len(jobs), self.spec.worker_count)

            results = self._load(ctx, jobs)
        finally:
            self.layout.cleanup()

        summary = LoadSummary(
            run_id=ctx.run_id,
            jobs_enqueued=len(jobs),
            results=tuple(results),
            elapsed_seconds=chronometer.elapsed(),
        )
        logger.info(
            "Load run %s complete in %.2fs: %s loaded, %s skipped.",
            ctx.run_id, summary.elapsed_seconds, summary.jobs_loaded, summary.jobs_skipped,
        )
        return summary

    def _bootstrap(self) -> None:
        if not self.spec.bootstrap_script:
            raise MigrationError("bootstrap is enabled but no bootstrap_script is configured")
        self.destination.bootstrap(Path(self.spec.bootstrap_script))

    def discover_jobs(self) -> list[Job]:
        return [
            Job(id=job_id, table_name=chunk.table_name, file_path=chunk.path, row_count=chunk.row_count)
            for job_id, chunk in enumerate(self.layout.discover_chunks(), start=1)
        ]

    @staticmethod
    def allocate(jobs: Sequence[Job], channel: Channel[Job]) -> None:
        """Producer: enqueue every job, then close the channel."""
        try:
            for job in jobs:
                channel.send(job)
        finally:
            channel.close()

    @staticmethod
    def collect(results: Channel[Result]) -> list[Result]:
        """Single consumer: drain results until the pool closes the channel."""
        collected: list[Result] = []
        for result in results:
            job = result.job
            if not result.succeeded:
                logger.error("Job %s %s -> %s failed: %s", job.id, job.file_path.name, job.table_name, result.error)
            elif result.skipped:
                logger.info("Job %s %s -> %s already loaded, skipped", job.id, job.file_path.name, job.table_name)
            else:
                logger.info("Job %s %s -> %s done in %.2fs", job.id, job.file_path.name, job.table_name, job.exec_time)
            collected.append(result)
        return collected

    def _load(self, ctx: RunContext, jobs: list[Job]) -> list[Result]:
        job_channel: Channel[Job] = Channel()
        result_channel: Channel[Result] = Channel()
        pool = WorkerPool(
            partial(self._load_chunk, ctx),
            self.spec.worker_count,
            stop_on_failure=self.spec.failure_policy == "abort",
        )

        if self.ledger:
            self.ledger.start_run(run_id=ctx.run_id, jobs_enqueued=len(jobs))

        try:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="loader") as executor:
                allocation = executor.submit(self.allocate, jobs, job_channel)
                collection = executor.submit(self.collect, result_channel)
                try:
                    pool.run(job_channel, result_channel)
                finally:
                    allocation.result()
                    results = collection.result()
        except Exception as e:
            if self.ledger:
                self.ledger.finalize_run(
                    run_id=ctx.run_id,
                    status="FAILED",
                    jobs_loaded=0,
                    jobs_skipped=0,
                    jobs_failed=0,
                    error_message=str(e),
                )
            raise

        failures = [r for r in results if not r.succeeded]
        if self.ledger:
            self.ledger.finalize_run(
                run_id=ctx.run_id,
                status="FAILED" if failures else "COMPLETED",
                jobs_loaded=sum(1 for r in results if r.succeeded and not r.skipped),
                jobs_skipped=sum(1 for r in results if r.skipped),
                jobs_failed=len(failures),
                error_message=str(failures[0].error) if failures else None,
            )

        if failures:
            first = failures[0]
            raise BulkLoadError(
                f"{len(failures)} of {len(jobs)} chunk load(s) failed "
                f"({len(results)} processed, policy={self.spec.failure_policy}); "
                f"first failure: job {first.job.id} {first.job.file_path.name}: {first.error}",
                failures=failures,
                results=results,
            )

        return results

    def _load_chunk(self, ctx: RunContext, job: Job) -> bool:
        """Unit of work run by a pool worker. Returns False when the chunk was already loaded."""
        chronometer = Chronometer()
        checksum = sha256_file_hash(job.file_path) if self.ledger else None

        if self.ledger and checksum and self.ledger.is_loaded(job.table_name, job.file_path.name, checksum):
            job.file_path.unlink(missing_ok=True)
            return False

        rows_loaded = self.destination.bulk_insert(
            job.table_name, job.file_path, timeout=self.spec.job_timeout_seconds
        )

        if self.ledger and checksum:
            self.ledger.record_chunk(
                run_id=ctx.run_id,
                table_name=job.table_name,
                chunk_name=job.file_path.name,
                checksum=checksum,
                rows_loaded=rows_loaded if rows_loaded is not None else job.row_count,
                exec_seconds=chronometer.elapsed(),
            )

        job.file_path.unlink(missing_ok=True)
        return True
