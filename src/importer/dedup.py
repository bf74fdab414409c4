"""
Validity filtering and duplicate resolution for one batch of listens.

The persisted history is checked with a single range query per batch. Two plays of
the same (artist, song) less than DUPLICATE_WINDOW apart count as one listen, which
reconciles the clock skew between Spotify exports and Last.fm scrobbles. The unique
constraint on `history` stays the real guarantee, this only saves the writer work.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Iterator

import logging
LOGGER = logging.getLogger(__name__)

from sqlalchemy import select

from db import pass_session_capable
from models import History
from importer.objects import ListenEvent, ListenKey, TrackKey, DUPLICATE_WINDOW

MIN_PLAYED_MS = 20_000


def filter_valid(events: Iterable[ListenEvent], min_played_ms: int = MIN_PLAYED_MS) -> list[ListenEvent]:
    """Drop short plays and plays without a title or artist, keeping order.

    Pass min_played_ms=0 for sources that don't report play duration.
    """
    return [e for e in events
            if e.played_ms >= min_played_ms and e.song_name and e.artist]


def time_range(events: Iterable[ListenEvent]) -> tuple[datetime, datetime] | None:
    stamps = [e.timestamp for e in events if e.key() is not None]
    if not stamps:
        return None
    return min(stamps), max(stamps)


def within_window(ts: datetime, others: Iterable[datetime], window: timedelta = DUPLICATE_WINDOW) -> bool:
    return any(abs(ts - other) < window for other in others)


@pass_session_capable
async def fetch_history_window(user_id: int, start: datetime, end: datetime,
                               session=None) -> list[tuple[str, str, datetime]]:
    result = await session.execute(
        select(History.artist, History.song_name, History.timestamp)
        .where(History.user_id == user_id)
        .where(History.timestamp.between(start, end))
    )
    rows = [tuple(row) for row in result.all()]
    LOGGER.debug(f"Found {len(rows)} stored listens for user {user_id} between {start} and {end}.")
    return rows


def index_history(rows: Iterable[tuple[str, str, datetime]]) -> dict[TrackKey, list[datetime]]:
    index = defaultdict(list)
    for artist, song_name, ts in rows:
        index[(artist, song_name)].append(ts)
    return index


def resolve_duplicates(events: Iterable[ListenEvent],
                       history_index: dict[TrackKey, list[datetime]]) -> set[ListenKey]:
    """
    Keys in the batch that must not be persisted.

    Exact repeats of a key are dropped by `iter_new_listens`, so the first copy in
    batch order wins. The window is then checked in time order: a play within the
    window of a stored play, or of an earlier kept play from this batch, is a
    duplicate, so the earlier of two close plays is the one kept.
    """
    duplicates = set()
    firsts = {}
    kept = defaultdict(list)

    for event in events:
        key = event.key()
        if key is not None and key not in firsts:
            firsts[key] = event

    for key, event in sorted(firsts.items(), key=lambda item: item[1].timestamp):
        if within_window(event.timestamp, history_index.get(event.track, ())) \
                or within_window(event.timestamp, kept[event.track]):
            duplicates.add(key)
            continue

        kept[event.track].append(event.timestamp)

    return duplicates


@pass_session_capable
async def find_duplicates(user_id: int, events: list[ListenEvent], session=None) -> set[ListenKey]:
    bounds = time_range(events)
    if bounds is None:
        return set()

    start, end = bounds
    rows = await fetch_history_window(user_id, start - DUPLICATE_WINDOW, end + DUPLICATE_WINDOW,
                                      session=session)
    duplicates = resolve_duplicates(events, index_history(rows))

    LOGGER.debug(f"{len(duplicates)} of {len(events)} listens are duplicates for user {user_id}.")
    return duplicates


def iter_new_listens(events: Iterable[ListenEvent], duplicates: set[ListenKey]) -> Iterator[ListenEvent]:
    """Lazily yield the listens left to insert, each key at most once."""
    emitted = set()
    for event in events:
        key = event.key()
        if key is None or key in duplicates or key in emitted:
            continue

        emitted.add(key)
        yield event
