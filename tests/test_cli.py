import textwrap

import duckdb
import pytest

import main


@pytest.fixture
def config_file(tmp_path, source_db):
    schema = tmp_path / "schema.sql"
    schema.write_text(
        "CREATE TABLE items (id INTEGER, label VARCHAR);\n"
        "CREATE TABLE tags (id INTEGER, name VARCHAR);\n"
    )
    path = tmp_path / "migration.yaml"
    path.write_text(
        textwrap.dedent(
            f"""
            name: cli_test
            source:
              duckdb_path: {source_db}
            tables:
              - name: items
              - name: tags
            transfer:
              kind: local
              remote_url: {tmp_path / "remote"}
            destination:
              kind: duckdb
              database_path: {tmp_path / "destination.duckdb"}
            lines_to_split: 2
            worker_count: 3
            bootstrap: true
            bootstrap_script: {schema}
            working_directory: {tmp_path / "work"}
            ledger_path: {tmp_path / "ledger.duckdb"}
            """
        )
    )
    return path


def test_migrate_moves_every_row(tmp_path, config_file):
    exit_code = main.main(["migrate", "--config", str(config_file), "--env-file", str(tmp_path / ".env")])

    assert exit_code == 0
    conn = duckdb.connect(str(tmp_path / "destination.duckdb"))
    try:
        items = conn.execute("SELECT id, label FROM items ORDER BY id").fetchall()
        tag_count = conn.execute("SELECT count(*) FROM tags").fetchone()[0]
    finally:
        conn.close()
    assert items == [(1, "a"), (2, None), (3, "NULL"), (4, ""), (5, 'say "hi"')]
    assert tag_count == 7
    assert not (tmp_path / "work").exists() or not any((tmp_path / "work").iterdir())


def test_export_then_load_as_separate_stages(tmp_path, config_file):
    assert main.main(["export", "--config", str(config_file), "--run-id", "e1"]) == 0
    assert (tmp_path / "remote" / "manifest.json").exists()

    assert main.main(["load", "--config", str(config_file), "--run-id", "l1"]) == 0

    conn = duckdb.connect(str(tmp_path / "ledger.duckdb"))
    try:
        status = conn.execute("SELECT status FROM ops.load_runs WHERE run_id = 'l1'").fetchone()[0]
        loaded = conn.execute("SELECT count(*) FROM ops.loaded_chunks").fetchone()[0]
    finally:
        conn.close()
    assert status == "COMPLETED"
    assert loaded == 7


def test_missing_config_returns_error_code(tmp_path):
    assert main.main(["load", "--config", str(tmp_path / "absent.yaml")]) == 1


def test_unknown_command_is_rejected():
    with pytest.raises(SystemExit):
        main.parse_args(["upload"])
