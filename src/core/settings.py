import os
from typing import Any
from pathlib import Path

# Paths
PROJECT_ROOT_DIR = Path(__file__).parent.parent.parent.resolve()

DATA_DIR = PROJECT_ROOT_DIR / "data"
WORKING_DIR = DATA_DIR / "work"

CONFIG_FILE_PATH = PROJECT_ROOT_DIR / "migration.yaml"
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"
LOG_FOLDER = PROJECT_ROOT_DIR / "logs"

os.makedirs(LOG_FOLDER, exist_ok=True)

# Staging layout
RAW_DIRNAME = "raw"
CHUNK_DIRNAME = "chunks"
MANIFEST_FILENAME = "manifest.json"
CHUNK_NAME_SEPARATOR = "_split_"

# Defaults
DEFAULT_LINES_TO_SPLIT = 1_000_000
DEFAULT_FETCH_SIZE = 10_000
DEFAULT_WORKER_COUNT = 4

# Chunk file format
NULL_LITERAL = "NULL"
FIELD_DELIMITER = ","
QUOTE_CHAR = '"'
LINE_TERMINATOR = "\n"
CHUNK_ENCODING = "utf-8"


# Logging Configuration

LOGGING_CONFIG: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s [%(levelname)s] [%(threadName)s] %(name)s: %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": "INFO",
        },
        "rotating_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": "DEBUG",
            "filename": str(LOG_FOLDER / "transfer.log"),
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console", "rotating_file"],
            "level": "DEBUG",
            "propagate": True
        },
    }

}
