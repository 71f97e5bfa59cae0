import argparse
import logging
import sys
from contextlib import ExitStack
from logging.config import dictConfig

from core.settings import CONFIG_FILE_PATH, ENV_FILE_PATH, LOGGING_CONFIG
from transfer.config import MigrationSpec, load_migration_spec
from transfer.destinations import build_destination
from transfer.domain import MigrationError, RunContext
from transfer.extractor import Extractor
from transfer.ledger_store import LoadLedger
from transfer.loader import BulkLoader
from transfer.remote_sync import build_remote_sync
from transfer.staging_layout import StagingLayout
from transfer.utils import new_run_id

logger = logging.getLogger(__name__)


def run_export(spec: MigrationSpec, run_id: str) -> None:
    extractor = Extractor(
        spec=spec,
        uploader=build_remote_sync(spec.transfer),
        layout=StagingLayout(working_root=spec.working_path / "export"),
    )
    extractor.run(RunContext(run_id=run_id))


def run_load(spec: MigrationSpec, run_id: str) -> None:
    with ExitStack() as stack:
        destination = stack.enter_context(build_destination(spec.destination))
        ledger = stack.enter_context(LoadLedger(duckdb_path=spec.ledger_path)) if spec.ledger_path else None
        loader = BulkLoader(
            spec=spec,
            destination=destination,
            downloader=build_remote_sync(spec.transfer),
            layout=StagingLayout(working_root=spec.working_path / "load"),
            ledger=ledger,
        )
        loader.run(RunContext(run_id=run_id))


STAGES = {
    "export": [("export", run_export)],
    "load": [("load", run_load)],
    "migrate": [("export", run_export), ("load", run_load)],
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bulk-transfer tables between databases through chunked CSV files and a remote staging area.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("command", choices=sorted(STAGES), help="Stage(s) to run.")
    parser.add_argument("--config", default=str(CONFIG_FILE_PATH), help="Migration YAML config.")
    parser.add_argument("--env-file", default=str(ENV_FILE_PATH), help="Optional .env file with credentials.")
    parser.add_argument("--run-id", default=None, help="Run identifier (generated when omitted).")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    dictConfig(LOGGING_CONFIG)
    args = parse_args(argv)

    stage = "config"
    try:
        spec = load_migration_spec(args.config, env_file=args.env_file)
        for stage, run_stage in STAGES[args.command]:
            run_id = args.run_id or new_run_id(stage)
            logger.info("Starting %s run %s for %s", stage, run_id, spec.name)
            run_stage(spec, run_id)
    except MigrationError as e:
        logger.error("%s failed: %s", stage, e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
