import subprocess

import pytest

from transfer.config import CommandTransferSpec, LocalTransferSpec
from transfer.remote_sync import CommandSync, LocalDirectorySync, TransferError, build_remote_sync
from tests.conftest import write_chunks


class FakeRun:
    def __init__(self, returncode: int = 0, stderr: str = "", raises: Exception | None = None):
        self.returncode = returncode
        self.stderr = stderr
        self.raises = raises
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, args, **kwargs):
        self.calls.append((args, kwargs))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(args, self.returncode, stdout="", stderr=self.stderr)


@pytest.fixture
def fake_run(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr("transfer.remote_sync.subprocess.run", fake)
    return fake


def test_upload_expands_every_file(tmp_path, fake_run):
    files = write_chunks(tmp_path / "chunks", ["t_split_ab", "t_split_aa"])
    sync = CommandSync.from_spec(CommandTransferSpec(kind="command", remote_url="gs://bucket/run/"))

    sync.upload(tmp_path / "chunks", "gs://bucket/run/")

    args, kwargs = fake_run.calls[0]
    assert args == ["gsutil", "-m", "cp", str(files[1]), str(files[0]), "gs://bucket/run"]
    assert kwargs["timeout"] is None


def test_upload_of_empty_directory_is_a_noop(tmp_path, fake_run):
    (tmp_path / "chunks").mkdir()

    CommandSync(upload_command=["cp", "{files}", "{remote_url}"], download_command=[]).upload(
        tmp_path / "chunks", "gs://bucket"
    )

    assert fake_run.calls == []


def test_download_creates_local_directory(tmp_path, fake_run):
    sync = CommandSync(
        upload_command=[],
        download_command=["aws", "s3", "cp", "--recursive", "{remote_url}", "{local_dir}"],
        timeout_seconds=60,
    )

    sync.download("s3://bucket/run", tmp_path / "incoming")

    assert (tmp_path / "incoming").is_dir()
    args, kwargs = fake_run.calls[0]
    assert args == ["aws", "s3", "cp", "--recursive", "s3://bucket/run", str(tmp_path / "incoming")]
    assert kwargs["timeout"] == 60


def test_non_zero_exit_is_a_transfer_error(tmp_path, fake_run):
    fake_run.returncode = 1
    fake_run.stderr = "AccessDeniedException: 403\n"
    sync = CommandSync(upload_command=[], download_command=["gsutil", "cp", "{remote_url}/*", "{local_dir}"])

    with pytest.raises(TransferError, match="exit status 1: AccessDeniedException: 403"):
        sync.download("gs://bucket", tmp_path)


@pytest.mark.parametrize(
    "raises, message",
    [
        (FileNotFoundError("gsutil"), "executable not found"),
        (subprocess.TimeoutExpired(["gsutil"], 5), "timed out"),
    ],
)
def test_process_errors_are_transfer_errors(tmp_path, fake_run, raises, message):
    fake_run.raises = raises
    sync = CommandSync(upload_command=[], download_command=["gsutil", "cp", "{remote_url}", "{local_dir}"])

    with pytest.raises(TransferError, match=message):
        sync.download("gs://bucket", tmp_path)


def test_local_sync_round_trip(tmp_path):
    write_chunks(tmp_path / "out", ["t_split_aa", "t_split_ab"])
    sync = LocalDirectorySync()

    sync.upload(tmp_path / "out", f"file://{tmp_path / 'remote'}")
    sync.download(str(tmp_path / "remote"), tmp_path / "in")

    assert sorted(p.name for p in (tmp_path / "in").iterdir()) == ["t_split_aa", "t_split_ab"]
    assert (tmp_path / "in" / "t_split_ab").read_text() == (tmp_path / "out" / "t_split_ab").read_text()


def test_local_sync_download_from_missing_directory(tmp_path):
    with pytest.raises(TransferError, match="not a directory"):
        LocalDirectorySync().download(str(tmp_path / "nowhere"), tmp_path / "in")


def test_local_sync_rejects_remote_schemes(tmp_path):
    with pytest.raises(TransferError, match="Unsupported remote URL"):
        LocalDirectorySync().upload(tmp_path, "gs://bucket")


def test_build_remote_sync():
    assert isinstance(build_remote_sync(CommandTransferSpec(kind="command", remote_url="gs://b")), CommandSync)
    assert isinstance(build_remote_sync(LocalTransferSpec(kind="local", remote_url="/tmp/x")), LocalDirectorySync)
