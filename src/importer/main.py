import sys
import os

if "-t" in sys.argv or "--test" in sys.argv:
    os.environ["TEST_MODE"] = "true"

USAGE = """Usage:
  python -m importer.main --user ID --spotify FILE [FILE ...]
  python -m importer.main --user ID --lastfm USERNAME API_KEY
  python -m importer.main --setup

Options: -ll {debug,info,warning,error}   -t/--test (use the test database)"""

import logging
from logger import setup_logging, parse_log_level

log_level = logging.INFO
if "-ll" in sys.argv:
    idx = sys.argv.index("-ll") + 1
    if idx >= len(sys.argv): raise ValueError("Expected log level value after -ll, one of ([d]ebug, [i]nfo, [w]arning, [e]rror).")
    log_level = parse_log_level(sys.argv[idx])
setup_logging(console_level=log_level)

LOGGER = logging.getLogger(__name__)

if os.getenv("TEST_MODE"):
    LOGGER.info("Test mode initiated, using test DB.")

import asyncio
import traceback
from pathlib import Path

from db import setup, get_db_manager
from importer.errors import ListenImportError
from importer.jobs import JobManager


def _arg_values(flag: str) -> list[str]:
    """Values following `flag` up to the next option."""
    if flag not in sys.argv:
        return []

    values = []
    for arg in sys.argv[sys.argv.index(flag) + 1:]:
        if arg.startswith("-"):
            break
        values.append(arg)
    return values


def _read_files(paths: list[str]) -> dict[str, bytes]:
    files = {}
    for path in map(Path, paths):
        if path.is_dir():
            for child in sorted(path.glob("*.json")):
                files[child.name] = child.read_bytes()
        else:
            files[path.name] = path.read_bytes()
    return files


async def main() -> int:
    LOGGER.info("=== Listen Import Starting ===")
    LOGGER.info(f"Python PID: {os.getpid()}")

    try:
        if "--setup" in sys.argv:
            await setup()
            return 0

        user = _arg_values("--user")
        if len(user) != 1 or not user[0].isdigit():
            print(USAGE)
            return 2
        user_id = int(user[0])

        manager = JobManager()
        if spotify_paths := _arg_values("--spotify"):
            started = manager.start_spotify_import(user_id, _read_files(spotify_paths))
        elif len(lastfm := _arg_values("--lastfm")) == 2:
            started = manager.start_lastfm_import(user_id, *lastfm)
        else:
            print(USAGE)
            return 2

        final = None
        async for update in manager.stream(started["job_id"]):
            final = update
            LOGGER.info(f"Progress: {update.completed_units}/{update.total_units} units, " \
                        f"{update.tracks_imported} tracks imported ({update.status}).")

        if final.status == "error":
            LOGGER.error(f"Import failed: {final.error}")
            return 1
        return 0
    except (ListenImportError, ValueError, OSError) as e:
        LOGGER.error(f"Import not started: {e}")
        return 1
    except Exception:
        LOGGER.error(f"Main loop error: {traceback.format_exc()}")
        return 1
    finally:
        await get_db_manager().cleanup()

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
