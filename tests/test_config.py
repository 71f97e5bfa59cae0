"""Tests for migration config loading and validation."""

import textwrap

import pytest

from transfer.config import (
    CommandDestinationSpec,
    CommandTransferSpec,
    ConfigurationError,
    DuckDBDestinationSpec,
    LocalTransferSpec,
    MigrationSpec,
    TableSpec,
    expand_env_vars,
    load_migration_spec,
)

MINIMAL = {
    "name": "m",
    "transfer": {"kind": "local", "remote_url": "/tmp/remote"},
    "destination": {"kind": "duckdb", "database_path": "/tmp/d.duckdb"},
}


def write_config(tmp_path, text: str):
    path = tmp_path / "migration.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_load_full_config_with_env_file(tmp_path, monkeypatch):
    monkeypatch.delenv("CHUNKSHIFT_TEST_HOST", raising=False)
    monkeypatch.delenv("CHUNKSHIFT_TEST_PASSWORD", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("CHUNKSHIFT_TEST_HOST=db.internal\nCHUNKSHIFT_TEST_PASSWORD=s3cret\n")
    path = write_config(
        tmp_path,
        """
        name: shop
        tables:
          - name: orders
          - name: src.customers
            query: SELECT id, name FROM src.customers
        transfer:
          kind: command
          remote_url: gs://bucket/shop
          timeout_seconds: 600
        destination:
          kind: command
          host: ${CHUNKSHIFT_TEST_HOST}
          port: "3307"
          user: loader
          password: ${CHUNKSHIFT_TEST_PASSWORD}
          database: shop
        lines_to_split: 500
        worker_count: 3
        failure_policy: continue
        """,
    )

    try:
        spec = load_migration_spec(path, env_file=env_file)
    finally:
        monkeypatch.delenv("CHUNKSHIFT_TEST_HOST", raising=False)
        monkeypatch.delenv("CHUNKSHIFT_TEST_PASSWORD", raising=False)

    assert isinstance(spec.transfer, CommandTransferSpec)
    assert spec.remote_url == "gs://bucket/shop"
    assert spec.transfer.upload_command[0] == "gsutil"
    assert isinstance(spec.destination, CommandDestinationSpec)
    assert spec.destination.host == "db.internal"
    assert spec.destination.password == "s3cret"
    assert spec.destination.port == 3307
    assert [t.select_query for t in spec.tables] == ["SELECT * FROM orders", "SELECT id, name FROM src.customers"]
    assert spec.lines_to_split == 500
    assert spec.worker_count == 3
    assert spec.failure_policy == "continue"


def test_defaults(tmp_path):
    spec = MigrationSpec.model_validate(MINIMAL)

    assert isinstance(spec.transfer, LocalTransferSpec)
    assert isinstance(spec.destination, DuckDBDestinationSpec)
    assert spec.lines_to_split == 1_000_000
    assert spec.failure_policy == "abort"
    assert spec.bootstrap is False
    assert spec.ledger_path is None
    assert spec.tables == []


def test_expand_env_vars_leaves_unknown_references(monkeypatch):
    monkeypatch.setenv("CHUNKSHIFT_KNOWN", "yes")
    monkeypatch.delenv("CHUNKSHIFT_UNKNOWN", raising=False)

    assert expand_env_vars("${CHUNKSHIFT_KNOWN}/$CHUNKSHIFT_KNOWN") == "yes/yes"
    assert expand_env_vars("${CHUNKSHIFT_UNKNOWN}") == "${CHUNKSHIFT_UNKNOWN}"


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"bootstrap": True}, "bootstrap_script must be specified"),
        ({"tables": [{"name": "a"}, {"name": "a"}]}, "Duplicate table names"),
        ({"tables": [{"name": "orders_split_x"}]}, "must not contain"),
        ({"tables": [{"name": "drop table; --"}]}, "Invalid table name"),
        ({"worker_count": 0}, "greater than 0"),
        ({"failure_policy": "retry"}, "failure_policy"),
        ({"unexpected": 1}, "Extra inputs are not permitted"),
        ({"transfer": {"kind": "ftp", "remote_url": "x"}}, "transfer"),
    ],
)
def test_invalid_specs(overrides, message):
    with pytest.raises(ValueError, match=message):
        MigrationSpec.model_validate({**MINIMAL, **overrides})


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_migration_spec(tmp_path / "nope.yaml")


def test_config_must_be_a_mapping(tmp_path):
    path = write_config(tmp_path, "- just\n- a list\n")

    with pytest.raises(ConfigurationError, match="must be a mapping"):
        load_migration_spec(path)


def test_invalid_yaml(tmp_path):
    path = write_config(tmp_path, "name: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Error parsing"):
        load_migration_spec(path)


def test_validation_errors_are_configuration_errors(tmp_path):
    path = write_config(
        tmp_path,
        """
        name: m
        transfer: {kind: local, remote_url: /tmp/r}
        destination: {kind: duckdb, database_path: /tmp/d.duckdb}
        lines_to_split: many
        """,
    )

    with pytest.raises(ConfigurationError, match="lines_to_split"):
        load_migration_spec(path)


def test_table_spec_is_frozen():
    table = TableSpec(name="orders")

    with pytest.raises(ValueError):
        table.name = "other"
