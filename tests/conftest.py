from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import duckdb
import pytest

from transfer.config import MigrationSpec
from transfer.destinations import DestinationError


class FakeCursor:
    """DB-API style cursor over an in-memory list of rows."""

    def __init__(self, rows: list[tuple[Any, ...]], columns: tuple[str, ...] = ("id", "label"), fail_after: int | None = None):
        self._rows = list(rows)
        self._columns = columns
        self._fail_after = fail_after
        self._position = 0
        self.description = None
        self.executed: list[str] = []

    def execute(self, query: str, *args: Any) -> "FakeCursor":
        self.executed.append(query)
        self.description = [(c, None, None, None, None, None, None) for c in self._columns]
        self._position = 0
        return self

    def fetchmany(self, size: int) -> list[tuple[Any, ...]]:
        if self._fail_after is not None and self._position >= self._fail_after:
            raise RuntimeError("connection reset by peer")
        batch = self._rows[self._position:self._position + size]
        self._position += len(batch)
        return batch


class RecordingDestination:
    """Destination double: records calls, optionally failing for some chunk names."""

    def __init__(self, fail_on: set[str] | None = None):
        self.fail_on = fail_on or set()
        self.bootstrapped: list[Path] = []
        self.loaded: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def bootstrap(self, script_path: Path) -> None:
        self.bootstrapped.append(script_path)

    def bulk_insert(self, table_name: str, file_path: Path, *, timeout: float | None = None) -> int | None:
        if file_path.name in self.fail_on:
            raise DestinationError(f"bulk insert of {file_path.name} into {table_name} failed with exit status 1")
        with self._lock:
            self.loaded.append((table_name, file_path.name))
        return None


@pytest.fixture
def source_db(tmp_path: Path) -> Path:
    path = tmp_path / "source.duckdb"
    conn = duckdb.connect(str(path))
    try:
        conn.execute("CREATE TABLE items (id INTEGER, label VARCHAR)")
        conn.execute("INSERT INTO items VALUES (1, 'a'), (2, NULL), (3, 'NULL'), (4, ''), (5, 'say \"hi\"')")
        conn.execute("CREATE TABLE tags (id INTEGER, name VARCHAR)")
        conn.execute("INSERT INTO tags SELECT range, 'tag' || range FROM range(7)")
    finally:
        conn.close()
    return path


@pytest.fixture
def make_spec(tmp_path: Path):
    def factory(**overrides: Any) -> MigrationSpec:
        data: dict[str, Any] = {
            "name": "test_migration",
            "transfer": {"kind": "local", "remote_url": str(tmp_path / "remote")},
            "destination": {"kind": "duckdb", "database_path": str(tmp_path / "destination.duckdb")},
            "working_directory": str(tmp_path / "work"),
            "worker_count": 2,
        }
        data.update(overrides)
        return MigrationSpec.model_validate(data)

    return factory


def write_chunks(directory: Path, names: list[str], content: str = '"1","a"\n') -> list[Path]:
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for i, name in enumerate(names):
        path = directory / name
        # Distinct content per chunk so checksums differ.
        path.write_text(content.replace("1", str(i + 1)), encoding="utf-8")
        paths.append(path)
    return paths
