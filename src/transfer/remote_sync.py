from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Protocol, Sequence
from urllib.parse import urlparse

from transfer.config import CommandTransferSpec, LocalTransferSpec
from transfer.domain import MigrationError
from transfer.utils import Chronometer

logger = logging.getLogger(__name__)

FILES_PLACEHOLDER = "{files}"


class TransferError(MigrationError):
    pass


class Uploader(Protocol):
    def upload(self, local_dir: Path, remote_url: str) -> None:
        ...


class Downloader(Protocol):
    def download(self, remote_url: str, local_dir: Path) -> None:
        ...


def _list_files(local_dir: Path) -> list[str]:
    return sorted(str(p) for p in local_dir.iterdir() if p.is_file())


def _redact(args: Sequence[str]) -> str:
    return " ".join("--password=***" if a.startswith("--password=") else a for a in args)


class CommandSync:
    """
    Moves files with an external transfer tool (gsutil, aws s3, rclone, ...).

    Each operation is one synchronous subprocess. There is no retry, checksum or
    resume: a non-zero exit aborts the batch and the run is expected to start over.
    """

    def __init__(
        self,
        *,
        upload_command: Sequence[str],
        download_command: Sequence[str],
        timeout_seconds: float | None = None,
    ) -> None:
        self.upload_command = list(upload_command)
        self.download_command = list(download_command)
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_spec(cls, spec: CommandTransferSpec) -> "CommandSync":
        return cls(
            upload_command=spec.upload_command,
            download_command=spec.download_command,
            timeout_seconds=spec.timeout_seconds,
        )

    def upload(self, local_dir: Path, remote_url: str) -> None:
        files = _list_files(local_dir)
        if not files:
            logger.warning("Nothing to upload from %s", local_dir)
            return
        args = self._render(self.upload_command, files=files, remote_url=remote_url, local_dir=local_dir)
        self._run("upload", args)
        logger.info("Uploaded %s file(s) from %s to %s", len(files), local_dir, remote_url)

    def download(self, remote_url: str, local_dir: Path) -> None:
        local_dir.mkdir(parents=True, exist_ok=True)
        args = self._render(self.download_command, files=[], remote_url=remote_url, local_dir=local_dir)
        self._run("download", args)
        logger.info("Downloaded %s into %s", remote_url, local_dir)

    @staticmethod
    def _render(template: Sequence[str], *, files: list[str], remote_url: str, local_dir: Path) -> list[str]:
        values = {"remote_url": remote_url.rstrip("/"), "local_dir": str(local_dir)}
        args: list[str] = []
        for token in template:
            if token == FILES_PLACEHOLDER:
                args.extend(files)
            else:
                args.append(token.format(**values))
        return args

    def _run(self, operation: str, args: list[str]) -> None:
        chronometer = Chronometer()
        logger.debug("Running %s: %s", operation, _redact(args))
        try:
            completed = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as e:
            raise TransferError(f"{operation} failed: executable not found: {args[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise TransferError(f"{operation} timed out after {self.timeout_seconds}s") from e

        if completed.returncode != 0:
            raise TransferError(
                f"{operation} failed with exit status {completed.returncode}: {completed.stderr.strip()}"
            )
        logger.debug("%s finished in %.2fs", operation, chronometer.elapsed())


class LocalDirectorySync:
    """Same capability as CommandSync, backed by a directory (mounted bucket, NFS share, tests)."""

    @staticmethod
    def _remote_path(remote_url: str) -> Path:
        parsed = urlparse(remote_url)
        if parsed.scheme in ("", "file"):
            return Path(parsed.path if parsed.scheme else remote_url)
        raise TransferError(f"Unsupported remote URL for a local transfer: {remote_url}")

    def upload(self, local_dir: Path, remote_url: str) -> None:
        remote_dir = self._remote_path(remote_url)
        try:
            remote_dir.mkdir(parents=True, exist_ok=True)
            files = _list_files(local_dir)
            for f in files:
                shutil.copy2(f, remote_dir)
        except OSError as e:
            raise TransferError(f"upload to {remote_dir} failed: {e}") from e
        logger.info("Copied %s file(s) from %s to %s", len(files), local_dir, remote_dir)

    def download(self, remote_url: str, local_dir: Path) -> None:
        remote_dir = self._remote_path(remote_url)
        if not remote_dir.is_dir():
            raise TransferError(f"download failed: {remote_dir} is not a directory")
        try:
            local_dir.mkdir(parents=True, exist_ok=True)
            files = _list_files(remote_dir)
            for f in files:
                shutil.copy2(f, local_dir)
        except OSError as e:
            raise TransferError(f"download from {remote_dir} failed: {e}") from e
        logger.info("Copied %s file(s) from %s to %s", len(files), remote_dir, local_dir)


def build_remote_sync(spec: CommandTransferSpec | LocalTransferSpec) -> CommandSync | LocalDirectorySync:
    if isinstance(spec, CommandTransferSpec):
        return CommandSync.from_spec(spec)
    return LocalDirectorySync()
