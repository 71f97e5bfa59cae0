import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import duckdb

from transfer.domain import MigrationError
from transfer.utils import utc_now_naive

logger = logging.getLogger(__name__)


class LedgerError(MigrationError):
    pass


class LoadLedger:
    """
    Checkpoint of chunks already applied to the destination, backed by DuckDB.

    A chunk is identified by its target table, its file name and the SHA-256 of its
    content, so a load re-run after a crash skips chunks that made it in the first
    time round. Byte-identical chunks under different names are distinct chunks.

    Tables:
      ops.load_runs
      ops.loaded_chunks

    Workers record chunks concurrently; every statement runs under one lock.
    """

    def __init__(self, *, duckdb_path: str, auto_bootstrap: bool = True):
        self._duckdb_path = duckdb_path
        self._auto_bootstrap = auto_bootstrap
        self._connection: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> "LoadLedger":
        if self._connection is not None:
            raise RuntimeError("Ledger connection already open")

        try:
            self._connection = duckdb.connect(self._duckdb_path)
        except duckdb.Error as e:
            raise LedgerError(f"Cannot open load ledger {self._duckdb_path}: {e}") from e

        if self._auto_bootstrap:
            self._bootstrap()

        logger.debug("Ledger connected. duckdb=%s", self._duckdb_path)
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        finally:
            self._connection = None

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        if self._connection is None:
            raise RuntimeError("Ledger is not connected; use it as a context manager")
        with self._lock:
            try:
                yield self._connection
            except duckdb.Error as e:
                raise LedgerError(f"Load ledger operation failed: {e}") from e

    # ----------------------------
    # Public API
    # ----------------------------
    def start_run(self, *, run_id: str, jobs_enqueued: int) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ops.load_runs (run_id, started_at_utc, status, jobs_enqueued)
                VALUES (?, ?, ?, ?)
                """,
                [run_id, utc_now_naive(), "RUNNING", jobs_enqueued],
            )

    def finalize_run(
        self,
        *,
        run_id: str,
        status: str,
        jobs_loaded: int,
        jobs_skipped: int,
        jobs_failed: int,
        error_message: str | None = None,
    ) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                UPDATE ops.load_runs
                SET finished_at_utc = ?, status = ?, jobs_loaded = ?, jobs_skipped = ?, jobs_failed = ?,
                    error_message = ?
                WHERE run_id = ?
                """,
                [utc_now_naive(), status, jobs_loaded, jobs_skipped, jobs_failed, error_message, run_id],
            )

    def is_loaded(self, table_name: str, chunk_name: str, checksum: str) -> bool:
        with self._cursor() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM ops.loaded_chunks
                WHERE table_name = ? AND chunk_name = ? AND checksum = ?
                LIMIT 1
                """,
                [table_name, chunk_name, checksum],
            ).fetchone()
        return row is not None

    def record_chunk(
        self,
        *,
        run_id: str,
        table_name: str,
        chunk_name: str,
        checksum: str,
        rows_loaded: int | None,
        exec_seconds: float | None,
    ) -> None:
        with self._cursor() as conn:
            conn.execute(
                """
                INSERT INTO ops.loaded_chunks
                (table_name, chunk_name, checksum, rows_loaded, exec_seconds, run_id, loaded_at_utc)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [table_name, chunk_name, checksum, rows_loaded, exec_seconds, run_id, utc_now_naive()],
            )

    def loaded_chunk_names(self, table_name: str) -> set[str]:
        with self._cursor() as conn:
            rows = conn.execute(
                "SELECT chunk_name FROM ops.loaded_chunks WHERE table_name = ?", [table_name]
            ).fetchall()
        return {r[0] for r in rows}

    def run_status(self, run_id: str) -> str | None:
        with self._cursor() as conn:
            row = conn.execute("SELECT status FROM ops.load_runs WHERE run_id = ?", [run_id]).fetchone()
        return row[0] if row else None

    # ----------------------------
    # Bootstrap
    # ----------------------------
    def _bootstrap(self) -> None:
        with self._cursor() as conn:
            conn.execute("CREATE SCHEMA IF NOT EXISTS ops")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ops.load_runs (
                  run_id           VARCHAR PRIMARY KEY,
                  started_at_utc   TIMESTAMP NOT NULL,
                  finished_at_utc  TIMESTAMP,
                  status           VARCHAR NOT NULL,
                  jobs_enqueued    INT NOT NULL DEFAULT 0,
                  jobs_loaded      INT NOT NULL DEFAULT 0,
                  jobs_skipped     INT NOT NULL DEFAULT 0,
                  jobs_failed      INT NOT NULL DEFAULT 0,
                  error_message    VARCHAR
                );
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ops.loaded_chunks (
                  table_name     VARCHAR NOT NULL,
                  chunk_name     VARCHAR NOT NULL,
                  checksum       VARCHAR NOT NULL,
                  rows_loaded    BIGINT,
                  exec_seconds   DOUBLE,
                  run_id         VARCHAR NOT NULL,
                  loaded_at_utc  TIMESTAMP NOT NULL
                );
                """
            )
