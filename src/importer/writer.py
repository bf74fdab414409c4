from itertools import islice
from typing import Iterable

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from db import get_session, pass_session_capable
from models import History
from importer.dedup import find_duplicates, iter_new_listens
from importer.objects import ListenEvent

# Rows per INSERT statement, keeps bind parameters far below driver limits.
INSERT_CHUNK = 500

UNIQUE_COLUMNS = ["user_id", "song_name", "artist", "timestamp"]


def _insert_for(session):
    dialect = session.get_bind().dialect.name
    match dialect:
        case "postgresql": return pg_insert
        case "sqlite": return sqlite_insert
        case _: raise ValueError(f"Unsupported dialect for listen inserts: {dialect}")


def _chunks(rows: Iterable[dict], size: int):
    rows = iter(rows)
    while chunk := list(islice(rows, size)):
        yield chunk


@pass_session_capable
async def insert_listens(user_id: int, events: Iterable[ListenEvent], session=None) -> int:
    """
    Append listens to `history`, returning how many rows were actually written.

    Rows hitting the (user_id, song_name, artist, timestamp) constraint are skipped
    by the database and simply don't count.
    """
    insert = _insert_for(session)

    inserted = 0
    for chunk in _chunks(({**e.as_row(), "user_id": user_id} for e in events), INSERT_CHUNK):
        stmt = insert(History).values(chunk)
        stmt = stmt.on_conflict_do_nothing(index_elements=UNIQUE_COLUMNS)
        result = await session.execute(stmt)

        if result.rowcount and result.rowcount > 0:
            inserted += result.rowcount
        LOGGER.debug(f"Inserted {result.rowcount}/{len(chunk)} rows for user {user_id}.")

    return inserted


async def import_batch(user_id: int, events: list[ListenEvent]) -> int:
    """Resolve duplicates and write one validated batch in its own transaction.

    Store errors only cost this batch: they're logged and the batch counts as 0.
    """
    if not events:
        return 0

    try:
        async with get_session() as s:
            duplicates = await find_duplicates(user_id, events, session=s)
            inserted = await insert_listens(user_id, iter_new_listens(events, duplicates), session=s)
    except SQLAlchemyError:
        LOGGER.error(f"Writing batch of {len(events)} listens for user {user_id} failed: " \
                     f"{traceback.format_exc()}")
        return 0

    LOGGER.info(f"Imported {inserted} of {len(events)} listens for user {user_id} " \
                f"({len(duplicates)} duplicates skipped).")
    return inserted
