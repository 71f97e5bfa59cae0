from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import duckdb

from transfer.config import MigrationSpec, SourceSpec
from transfer.domain import ExportedTable, ExportSummary, RunContext
from transfer.export import ChunkedExporter, ChunkExportError
from transfer.remote_sync import Uploader
from transfer.staging_layout import StagingLayout
from transfer.utils import Chronometer

logger = logging.getLogger(__name__)


@contextmanager
def open_source_connection(spec: SourceSpec) -> Iterator[duckdb.DuckDBPyConnection]:
    """DuckDB connection with the configured setup statements (INSTALL/LOAD/ATTACH) applied."""
    try:
        conn = duckdb.connect(spec.duckdb_path)
    except duckdb.Error as e:
        raise ChunkExportError(f"Cannot open source connection {spec.duckdb_path}: {e}") from e

    try:
        for statement in spec.setup_sql:
            try:
                conn.execute(statement)
            except duckdb.Error as e:
                raise ChunkExportError(f"Source setup statement failed: {statement!r}: {e}") from e
        yield conn
    finally:
        conn.close()


class Extractor:
    """
    Coordinates: export every table -> write manifest -> upload.

    Tables are exported in configuration order; the first failure aborts the
    run and later tables are not attempted.
    """

    def __init__(self, *, spec: MigrationSpec, uploader: Uploader, layout: StagingLayout):
        self.spec = spec
        self.uploader = uploader
        self.layout = layout
        self.exporter = ChunkedExporter(lines_to_split=spec.lines_to_split, fetch_size=spec.fetch_size)

    def run(self, ctx: RunContext) -> ExportSummary:
        chronometer = Chronometer()
        self.layout.cleanup()
        self.layout.ensure_directories()

        try:
            exported: list[ExportedTable] = []
            with open_source_connection(self.spec.source) as conn:
                for table in self.spec.tables:
                    table_chronometer = Chronometer()
                    cursor = conn.cursor()
                    try:
                        exported.append(
                            self.exporter.export_table(cursor, table, self.layout.raw_dir, self.layout.chunk_dir)
                        )
                    finally:
                        cursor.close()
                    logger.info("Table %s exported in %.2fs", table.name, table_chronometer.elapsed())

            self.layout.write_manifest(ctx.run_id, exported)
            self.uploader.upload(self.layout.chunk_dir, self.spec.remote_url)
        finally:
            if not self.spec.keep_local_files:
                self.layout.cleanup()

        summary = ExportSummary(run_id=ctx.run_id, tables=tuple(exported), elapsed_seconds=chronometer.elapsed())
        logger.info(
            "Export run %s complete in %.2fs: %s rows in %s chunk(s) across %s table(s).",
            ctx.run_id, summary.elapsed_seconds, summary.total_rows, summary.total_chunks, len(summary.tables),
        )
        return summary
