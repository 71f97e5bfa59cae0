# transfer/config.py
import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Literal, Self, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core import settings
from transfer.domain import MigrationError

logger = logging.getLogger(__name__)

# ${VAR_NAME} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

# Optionally schema-qualified: table, schema.table, catalog.schema.table
TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*){0,2}$")

DEFAULT_UPLOAD_COMMAND = ["gsutil", "-m", "cp", "{files}", "{remote_url}"]
DEFAULT_DOWNLOAD_COMMAND = ["gsutil", "-m", "cp", "{remote_url}/*", "{local_dir}"]

DEFAULT_PRE_STATEMENTS = ["SET FOREIGN_KEY_CHECKS=0", "SET UNIQUE_CHECKS=0"]
DEFAULT_LOAD_STATEMENT = (
    "LOAD DATA LOCAL INFILE '{file}' INTO TABLE {table} "
    "FIELDS TERMINATED BY ',' ENCLOSED BY '\"' ESCAPED BY '' LINES TERMINATED BY '\\n'"
)
DEFAULT_LOAD_COMMAND = [
    "mysql", "--local-infile=1",
    "--host={host}", "--port={port}", "--user={user}", "--password={password}",
    "{database}", "--execute={statement}",
]
DEFAULT_BOOTSTRAP_COMMAND = [
    "mysql",
    "--host={host}", "--port={port}", "--user={user}", "--password={password}",
    "{database}",
]


class ConfigurationError(MigrationError):
    pass


class StrictBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)


class SourceSpec(StrictBaseModel):
    """
    Source connection. Rows are read through DuckDB; setup_sql can INSTALL/LOAD
    an extension and ATTACH a MySQL or Postgres database, e.g.

        ATTACH 'host=db user=app database=shop' AS src (TYPE MYSQL, READ_ONLY)
    """
    duckdb_path: str = ":memory:"
    setup_sql: list[str] = Field(default_factory=lambda: list())


class TableSpec(StrictBaseModel):
    name: str
    query: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not TABLE_NAME_PATTERN.match(value):
            raise ValueError(f"Invalid table name '{value}'. Must be an identifier, optionally schema-qualified.")
        if settings.CHUNK_NAME_SEPARATOR in value:
            raise ValueError(f"Table name '{value}' must not contain '{settings.CHUNK_NAME_SEPARATOR}'")
        return value

    @property
    def select_query(self) -> str:
        return self.query or f"SELECT * FROM {self.name}"


class CommandTransferSpec(StrictBaseModel):
    kind: Literal["command"]
    remote_url: str
    upload_command: list[str] = Field(default_factory=lambda: list(DEFAULT_UPLOAD_COMMAND))
    download_command: list[str] = Field(default_factory=lambda: list(DEFAULT_DOWNLOAD_COMMAND))
    timeout_seconds: float | None = Field(default=None, gt=0)


class LocalTransferSpec(StrictBaseModel):
    kind: Literal["local"]
    remote_url: str


TransferSpec = Annotated[
    Union[CommandTransferSpec, LocalTransferSpec],
    Field(discriminator="kind"),
]


class CommandDestinationSpec(StrictBaseModel):
    kind: Literal["command"]
    host: str = "127.0.0.1"
    port: int = Field(default=3306, strict=False)
    user: str
    password: str = ""
    database: str
    pre_statements: list[str] = Field(default_factory=lambda: list(DEFAULT_PRE_STATEMENTS))
    load_statement: str = DEFAULT_LOAD_STATEMENT
    load_command: list[str] = Field(default_factory=lambda: list(DEFAULT_LOAD_COMMAND))
    bootstrap_command: list[str] = Field(default_factory=lambda: list(DEFAULT_BOOTSTRAP_COMMAND))


class DuckDBDestinationSpec(StrictBaseModel):
    kind: Literal["duckdb"]
    database_path: str


DestinationSpec = Annotated[
    Union[CommandDestinationSpec, DuckDBDestinationSpec],
    Field(discriminator="kind"),
]


class MigrationSpec(StrictBaseModel):
    name: str

    source: SourceSpec = Field(default_factory=SourceSpec)
    tables: list[TableSpec] = Field(default_factory=lambda: list())

    transfer: TransferSpec
    destination: DestinationSpec

    lines_to_split: int = Field(default=settings.DEFAULT_LINES_TO_SPLIT, gt=0)
    fetch_size: int = Field(default=settings.DEFAULT_FETCH_SIZE, gt=0)
    worker_count: int = Field(default=settings.DEFAULT_WORKER_COUNT, gt=0)
    job_timeout_seconds: float | None = Field(default=None, gt=0)
    failure_policy: Literal["abort", "continue"] = "abort"

    bootstrap: bool = False
    bootstrap_script: str | None = None

    working_directory: str = str(settings.WORKING_DIR)
    keep_local_files: bool = False
    ledger_path: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> Self:
        table_names = [t.name for t in self.tables]
        if duplicates := {name for name in table_names if table_names.count(name) > 1}:
            raise ValueError(f"Duplicate table names found in tables: {duplicates}")

        if self.bootstrap and not self.bootstrap_script:
            raise ValueError("bootstrap_script must be specified when bootstrap is enabled")

        return self

    @property
    def remote_url(self) -> str:
        return self.transfer.remote_url

    @property
    def working_path(self) -> Path:
        return Path(self.working_directory)


def expand_env_vars(value: str) -> str:
    """Expand ${VAR} / $VAR references; unknown variables are left untouched."""

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def expand_env_vars_in(value: Any) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value)
    if isinstance(value, dict):
        return {k: expand_env_vars_in(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars_in(item) for item in value]
    return value


def load_migration_spec(file_path: str | Path, *, env_file: str | Path | None = None) -> MigrationSpec:
    """Read a YAML migration config, expand environment references and validate it."""
    if env_file is not None:
        load_dotenv(dotenv_path=env_file, override=False)

    path = Path(file_path)
    if not path.exists():
        raise ConfigurationError(f"Migration config not found: {path}")

    with open(path, "r") as file:
        try:
            raw = yaml.safe_load(file)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing migration config {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Migration config {path} must be a mapping, got {type(raw).__name__}")

    try:
        spec = MigrationSpec.model_validate(expand_env_vars_in(raw))
    except ValidationError as e:
        raise ConfigurationError(f"Error loading migration config from {path}: {e}") from e

    if not spec.tables:
        logger.warning("No tables configured in %s; export will produce no chunks.", path)

    return spec
