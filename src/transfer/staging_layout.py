from __future__ import annotations

from dataclasses import dataclass
import json
import os
import re
import shutil
import logging
from pathlib import Path
from typing import Any, Iterable

from core import settings
from transfer.domain import ChunkFile, ExportedTable, MigrationError
from transfer.utils import utc_now

logger = logging.getLogger(__name__)

CHUNK_NAME_PATTERN = re.compile(
    rf"^(?P<table>.+){re.escape(settings.CHUNK_NAME_SEPARATOR)}(?P<suffix>[a-z]+)$"
)


class StagingLayoutError(MigrationError):
    pass


def table_name_from_chunk(file_name: str) -> str:
    """Strip the _split_<suffix> token: 'orders_split_ab' -> 'orders'."""
    match = CHUNK_NAME_PATTERN.match(file_name)
    if not match:
        raise StagingLayoutError(f"Not a chunk file name: {file_name}")
    return match.group("table")


@dataclass(frozen=True)
class StagingLayout:
    """Filesystem layout of the local working directory.

    Layout:
      working_root/
        raw/     -> Unsplit exports, one <table>.csv per table (export only)
        chunks/  -> <table>_split_<suffix> files + manifest.json
                    (uploaded by export, downloaded into by load)
    """

    working_root: Path
    raw_dirname: str = settings.RAW_DIRNAME
    chunk_dirname: str = settings.CHUNK_DIRNAME

    # ----------------------------
    # Paths
    # ----------------------------
    @property
    def raw_dir(self) -> Path:
        return self.working_root / self.raw_dirname

    @property
    def chunk_dir(self) -> Path:
        return self.working_root / self.chunk_dirname

    @property
    def manifest_path(self) -> Path:
        return self.chunk_dir / settings.MANIFEST_FILENAME

    # ----------------------------
    # IO helpers
    # ----------------------------
    def ensure_directories(self) -> None:
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        self.chunk_dir.mkdir(parents=True, exist_ok=True)

    def write_manifest(self, run_id: str, tables: Iterable[ExportedTable]) -> Path:
        """Writes manifest.json atomically: tmp -> rename."""
        tables = list(tables)
        payload: dict[str, Any] = {
            "run_id": run_id,
            "created_at_utc": utc_now().isoformat(),
            "tables": {
                t.table_name: {"row_count": t.row_count, "columns": list(t.columns)}
                for t in tables
            },
            "chunks": [
                {"file": c.path.name, "table": c.table_name, "row_count": c.row_count}
                for t in tables
                for c in t.chunks
            ],
        }
        self.chunk_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.manifest_path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.manifest_path)
        return self.manifest_path

    def has_manifest(self) -> bool:
        return self.manifest_path.exists()

    def read_manifest_chunks(self) -> list[ChunkFile]:
        """Chunks listed in manifest.json. Every listed file must be present on disk."""
        with open(self.manifest_path, "r", encoding="utf-8") as f:
            manifest = json.load(f)

        chunks: list[ChunkFile] = []
        missing: list[str] = []
        for entry in manifest.get("chunks", []):
            path = self.chunk_dir / entry["file"]
            if not path.exists():
                missing.append(entry["file"])
                continue
            chunks.append(ChunkFile(table_name=entry["table"], path=path, row_count=int(entry["row_count"])))

        if missing:
            raise StagingLayoutError(
                f"Manifest {self.manifest_path} lists {len(missing)} chunk(s) missing from "
                f"{self.chunk_dir}: {sorted(missing)[:10]}"
            )

        listed = {c.path.name for c in chunks}
        unlisted = [p.name for p in self.iter_chunk_paths() if p.name not in listed]
        if unlisted:
            logger.warning("Ignoring %s chunk file(s) not listed in the manifest: %s", len(unlisted), unlisted[:10])

        return sorted(chunks, key=lambda c: c.path.name)

    def iter_chunk_paths(self) -> Iterable[Path]:
        if not self.chunk_dir.exists():
            return []
        return sorted(
            p for p in self.chunk_dir.iterdir()
            if p.is_file() and CHUNK_NAME_PATTERN.match(p.name)
        )

    def discover_chunks(self) -> list[ChunkFile]:
        """Chunks of the working directory, from the manifest when there is one."""
        if self.has_manifest():
            return self.read_manifest_chunks()

        logger.info("No manifest in %s; deriving table names from chunk file names.", self.chunk_dir)
        return [
            ChunkFile(table_name=table_name_from_chunk(p.name), path=p, row_count=None)
            for p in self.iter_chunk_paths()
        ]

    # ----------------------------
    # Cleanup
    # ----------------------------
    def _is_protected_dir(self, p: Path) -> bool:
        # Never wipe a filesystem root, the home directory or the current directory.
        resolved = p.resolve()
        return resolved == Path(resolved.anchor) or resolved in (Path.home().resolve(), Path.cwd().resolve())

    def cleanup(self) -> None:
        """Recursively remove the working directory."""
        if not self.working_root.exists():
            return
        if self._is_protected_dir(self.working_root):
            raise StagingLayoutError(f"Refusing to remove protected directory: {self.working_root}")
        shutil.rmtree(self.working_root)
        logger.debug("Removed working directory %s", self.working_root)
