import logging
import logging.handlers
import os
from pathlib import Path

NOISY_LOGGERS = ["sqlalchemy.engine",
                 "sqlalchemy.dialects",
                 "sqlalchemy.pool",
                 "sqlalchemy.orm",
                 "aiosqlite",
                 "asyncpg",
                 "alembic",
                 "asyncio",
                 "requests",
                 "urllib3.connectionpool"]

class InfoAndAboveNoisyFilter(logging.Filter):
    def filter(self, record):
        if not any(logger in record.name for logger in NOISY_LOGGERS): return True
        return record.levelno >= logging.INFO

class WarningAndAboveNoisyFilter(logging.Filter):
    def filter(self, record):
        if not any(logger in record.name for logger in NOISY_LOGGERS): return True
        return record.levelno >= logging.WARNING

LEVEL_TO_STR = {logging.DEBUG: "debug",
                logging.INFO: "info",
                logging.WARNING: "warning",
                logging.ERROR: "error"}

def parse_log_level(value: str) -> int:
    match value:
        case "debug" | "d": return logging.DEBUG
        case "info" | "i": return logging.INFO
        case "warning" | "w": return logging.WARNING
        case "error" | "e": return logging.ERROR
        case _: raise ValueError(f"Expected one of ([d]ebug, [i]nfo, [w]arning, [e]rror) for log level, not {value}")

def setup_logging(log_path: str = None, console_level=logging.INFO):
    """
    Configure the root logger for the import service.
    Call this ONCE from the entry point.
    """
    if log_path is None:
        log_folder = "test_logs" if os.getenv("TEST_MODE") else "logs"
        log_path = f"{log_folder}/log.log"

    Path(log_path).parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=10*1024*1024, backupCount=5
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s [%(name)s-%(funcName)s:%(lineno)d] %(message)s",
        datefmt='%H:%M:%S'
    )

    file_handler.setFormatter(formatter)
    file_handler.addFilter(InfoAndAboveNoisyFilter())

    console_handler.setFormatter(formatter)
    console_handler.addFilter(WarningAndAboveNoisyFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.info(f"Logging initialized (PID: {os.getpid()}) " \
                 f"(console level: {LEVEL_TO_STR[console_level]})")
