from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


class MigrationError(Exception):
    """Base class for every failure surfaced to the command line."""


@dataclass(frozen=True)
class RunContext:
    """Per-run context."""
    run_id: str


@dataclass(frozen=True)
class ChunkFile:
    """
    A bounded slice of one exported table, written as an independent CSV file.

    Named <table>_split_<suffix>; the suffix order carries no meaning.
    """
    table_name: str
    path: Path
    row_count: int | None


@dataclass(frozen=True)
class ExportedTable:
    """Outcome of exporting a single source table."""
    table_name: str
    columns: tuple[str, ...]
    row_count: int
    chunks: tuple[ChunkFile, ...]


@dataclass
class Job:
    """
    One chunk file to bulk-load.

    id, table_name and file_path never change after creation. exec_time is
    stamped once, by the worker that processed the job.
    """
    id: int
    table_name: str
    file_path: Path
    row_count: int | None = None
    exec_time: float | None = None


@dataclass(frozen=True)
class Result:
    """Produced exactly once per processed job."""
    job: Job
    error: Exception | None = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ExportSummary:
    run_id: str
    tables: tuple[ExportedTable, ...]
    elapsed_seconds: float

    @property
    def total_rows(self) -> int:
        return sum(t.row_count for t in self.tables)

    @property
    def total_chunks(self) -> int:
        return sum(len(t.chunks) for t in self.tables)


@dataclass(frozen=True)
class LoadSummary:
    run_id: str
    jobs_enqueued: int
    results: tuple[Result, ...] = field(default_factory=tuple)
    elapsed_seconds: float = 0.0

    @property
    def jobs_loaded(self) -> int:
        return sum(1 for r in self.results if r.succeeded and not r.skipped)

    @property
    def jobs_skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failures(self) -> tuple[Result, ...]:
        return tuple(r for r in self.results if not r.succeeded)
