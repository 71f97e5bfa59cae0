from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path
from typing import Protocol, Sequence

import duckdb
import pyarrow as pa
import pyarrow.csv as pv

from core import settings
from transfer.config import CommandDestinationSpec, DuckDBDestinationSpec
from transfer.domain import MigrationError
from transfer.utils import Chronometer

logger = logging.getLogger(__name__)


class DestinationError(MigrationError):
    pass


class Destination(Protocol):
    def bootstrap(self, script_path: Path) -> None:
        ...

    def bulk_insert(self, table_name: str, file_path: Path, *, timeout: float | None = None) -> int | None:
        """Load one chunk file into table_name. Returns the number of rows loaded when known."""
        ...


def _redact(args: Sequence[str], password: str) -> str:
    if not password:
        return " ".join(args)
    return " ".join(a.replace(password, "***") for a in args)


class CommandDestination:
    """
    Bulk-loads each chunk with one invocation of a database client.

    The default template runs the mysql client with LOAD DATA LOCAL INFILE,
    preceded by statements that suspend foreign key and uniqueness checks for
    the duration of the call. Re-enabling constraints belongs to schema
    finalisation, outside this tool.
    """

    def __init__(self, spec: CommandDestinationSpec) -> None:
        self.spec = spec

    def __enter__(self) -> "CommandDestination":
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        return None

    def _values(self) -> dict[str, str]:
        return {
            "host": self.spec.host,
            "port": str(self.spec.port),
            "user": self.spec.user,
            "password": self.spec.password,
            "database": self.spec.database,
        }

    def build_statement(self, table_name: str, file_path: Path) -> str:
        load = self.spec.load_statement.format(table=table_name, file=file_path.as_posix())
        return "; ".join([*self.spec.pre_statements, load]) + ";"

    def build_load_command(self, table_name: str, file_path: Path) -> list[str]:
        values = self._values()
        values.update(table=table_name, file=str(file_path), statement=self.build_statement(table_name, file_path))
        return [token.format(**values) for token in self.spec.load_command]

    def bootstrap(self, script_path: Path) -> None:
        args = [token.format(**self._values()) for token in self.spec.bootstrap_command]
        logger.info("Bootstrapping destination with %s", script_path)
        with open(script_path, "rb") as script:
            self._run(args, stdin=script, timeout=None, what=f"bootstrap script {script_path.name}")

    def bulk_insert(self, table_name: str, file_path: Path, *, timeout: float | None = None) -> int | None:
        args = self.build_load_command(table_name, file_path)
        self._run(args, stdin=None, timeout=timeout, what=f"bulk insert of {file_path.name} into {table_name}")
        return None

    def _run(self, args: list[str], *, stdin, timeout: float | None, what: str) -> None:
        logger.debug("Running %s", _redact(args, self.spec.password))
        try:
            completed = subprocess.run(
                args,
                stdin=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise DestinationError(f"{what} failed: executable not found: {args[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise DestinationError(f"{what} timed out after {timeout}s") from e

        if completed.returncode != 0:
            stderr = completed.stderr.decode(errors="replace").strip()
            raise DestinationError(f"{what} failed with exit status {completed.returncode}: {stderr}")


class DuckDBDestination:
    """
    Native destination: reads chunks with pyarrow and inserts them through DuckDB.

    Only the unquoted NULL literal becomes SQL NULL; a quoted "NULL" stays a
    string. Chunk columns are matched to the target table by position and cast
    to its column types. One cursor per call, so workers may load concurrently.
    """

    def __init__(self, spec: DuckDBDestinationSpec) -> None:
        self.spec = spec
        self._connection: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    def __enter__(self) -> "DuckDBDestination":
        self._require_connection()
        return self

    def __exit__(self, exc_type, exc_value, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.close()
            finally:
                self._connection = None

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.spec.database_path)
                except duckdb.Error as e:
                    raise DestinationError(f"Cannot open destination {self.spec.database_path}: {e}") from e
            return self._connection

    def bootstrap(self, script_path: Path) -> None:
        script = script_path.read_text(encoding="utf-8")
        logger.info("Bootstrapping destination with %s", script_path)
        cursor = self._require_connection().cursor()
        try:
            cursor.execute(script)
        except duckdb.Error as e:
            raise DestinationError(f"bootstrap script {script_path.name} failed: {e}") from e
        finally:
            cursor.close()

    @staticmethod
    def read_chunk(file_path: Path, column_count: int) -> pa.Table:
        """Read a chunk as column_count text columns named f0, f1, ..."""
        return pv.read_csv(
            file_path,
            read_options=pv.ReadOptions(autogenerate_column_names=True, encoding=settings.CHUNK_ENCODING),
            parse_options=pv.ParseOptions(
                delimiter=settings.FIELD_DELIMITER,
                quote_char=settings.QUOTE_CHAR,
                double_quote=True,
                escape_char=False,
                newlines_in_values=True,
            ),
            convert_options=pv.ConvertOptions(
                column_types={f"f{i}": pa.string() for i in range(column_count)},
                null_values=[settings.NULL_LITERAL],
                strings_can_be_null=True,
                quoted_strings_can_be_null=False,
            ),
        )

    def bulk_insert(self, table_name: str, file_path: Path, *, timeout: float | None = None) -> int | None:
        cursor = self._require_connection().cursor()
        chronometer = Chronometer()
        timer = threading.Timer(timeout, cursor.interrupt) if timeout else None
        if timer:
            timer.start()
        view_name = f"chunk_{file_path.name}".replace(".", "_")
        try:
            target_columns = cursor.execute(f"DESCRIBE {table_name}").fetchall()
            chunk = self.read_chunk(file_path, len(target_columns))
            # The interrupt only reaches queries; a slow read is caught here.
            if timeout and chronometer.elapsed() >= timeout:
                raise DestinationError(
                    f"bulk insert of {file_path.name} into {table_name} timed out after {timeout}s"
                )
            if chunk.num_columns != len(target_columns):
                raise DestinationError(
                    f"{file_path.name} has {chunk.num_columns} columns but {table_name} has {len(target_columns)}"
                )

            projections = ", ".join(
                f'CAST("{source}" AS {column[1]}) AS "{column[0]}"'
                for source, column in zip(chunk.column_names, target_columns)
            )
            cursor.register(view_name, chunk)
            cursor.execute(f'INSERT INTO {table_name} SELECT {projections} FROM "{view_name}"')
        except (pa.ArrowException, OSError) as e:
            raise DestinationError(f"Cannot read chunk {file_path.name}: {e}") from e
        except duckdb.Error as e:
            if timeout and chronometer.elapsed() >= timeout:
                raise DestinationError(
                    f"bulk insert of {file_path.name} into {table_name} timed out after {timeout}s: {e}"
                ) from e
            raise DestinationError(f"bulk insert of {file_path.name} into {table_name} failed: {e}") from e
        finally:
            if timer:
                timer.cancel()
            cursor.close()

        logger.debug("Inserted %s rows from %s into %s", chunk.num_rows, file_path.name, table_name)
        return chunk.num_rows


def build_destination(spec: CommandDestinationSpec | DuckDBDestinationSpec) -> CommandDestination | DuckDBDestination:
    if isinstance(spec, CommandDestinationSpec):
        return CommandDestination(spec)
    return DuckDBDestination(spec)
