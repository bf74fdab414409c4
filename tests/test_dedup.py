from datetime import datetime, timedelta, timezone

import pytest

from importer.dedup import (
    MIN_PLAYED_MS, filter_valid, index_history, iter_new_listens, resolve_duplicates, time_range
)
from importer.objects import ListenEvent, Platform

T0 = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def listen(offset_s=0.0, song="Reckoner", artist="Radiohead", ms=215000, platform=Platform.spotify, ts=None):
    return ListenEvent(user_id=1,
                       timestamp=ts if ts is not None else T0 + timedelta(seconds=offset_s),
                       song_name=song,
                       artist=artist,
                       played_ms=ms,
                       platform=platform)


def new_listens(events, history=()):
    duplicates = resolve_duplicates(events, index_history(history))
    return list(iter_new_listens(events, duplicates))


# Validity filter

def test_min_played_boundary():
    kept = filter_valid([listen(ms=MIN_PLAYED_MS - 1), listen(1, ms=MIN_PLAYED_MS)])
    assert [e.played_ms for e in kept] == [MIN_PLAYED_MS]


def test_missing_title_or_artist_dropped():
    assert filter_valid([listen(song=""), listen(artist="")]) == []


def test_lastfm_exempt_from_duration():
    scrobbles = [listen(ms=0, platform=Platform.lastfm)]
    assert filter_valid(scrobbles, min_played_ms=0) == scrobbles


def test_filter_keeps_order():
    events = [listen(i * 60, song=f"Song {i}") for i in range(5)]
    assert filter_valid(events) == events


# Keys

def test_key_normalizes_zone():
    utc = listen(ts=T0)
    shifted = listen(ts=T0.astimezone(timezone(timedelta(hours=2))))
    assert utc.key() == shifted.key()


def test_key_needs_aware_timestamp():
    assert listen(ts=T0.replace(tzinfo=None)).key() is None


def test_time_range():
    events = [listen(30), listen(-10), listen(5)]
    assert time_range(events) == (T0 - timedelta(seconds=10), T0 + timedelta(seconds=30))
    assert time_range([]) is None


# Duplicate window against stored history

@pytest.mark.parametrize("offset, duplicate", [(0, True),
                                               (19.999, True),
                                               (-19.999, True),
                                               (20, False),
                                               (20.001, False),
                                               (-20.001, False)])
def test_window_against_history(offset, duplicate):
    history = [("Radiohead", "Reckoner", T0)]
    kept = new_listens([listen(offset)], history)
    assert (kept == []) == duplicate


def test_window_only_applies_to_same_track():
    history = [("Radiohead", "Reckoner", T0),
               ("Radiohead", "Nude", T0 + timedelta(seconds=5))]
    events = [listen(3, song="Bodysnatchers"), listen(3, artist="Portishead")]

    assert new_listens(events, history) == events


# Duplicate window within a batch

def test_window_within_batch():
    first, close, far = listen(0), listen(19.999), listen(40)
    assert new_listens([first, close, far]) == [first, far]


def test_just_outside_window_within_batch():
    events = [listen(0), listen(20.001)]
    assert new_listens(events) == events


def test_exact_repeat_first_wins():
    first = listen(0)
    repeat = ListenEvent(user_id=1, timestamp=T0, song_name="Reckoner", artist="Radiohead",
                         album_name="In Rainbows", played_ms=30000)

    kept = new_listens([first, repeat])
    assert kept == [first]


def test_cross_source_skew():
    """The same play reported by two sources a few seconds apart is stored once."""
    spotify = listen(0, ms=215000)
    lastfm = listen(3, ms=0, platform=Platform.lastfm)

    assert new_listens([spotify, lastfm]) == [spotify]


def test_three_records_one_listen():
    """Exact repeat plus a short play: one row."""
    events = [listen(0, ms=215000), listen(0, ms=215000), listen(10, ms=5000)]

    assert new_listens(filter_valid(events)) == [events[0]]


def test_unusable_timestamps_never_emitted():
    naive = listen(ts=T0.replace(tzinfo=None))
    assert new_listens([naive]) == []


def test_iter_new_listens_is_lazy():
    events = iter([listen(0), listen(60)])
    emitted = iter_new_listens(events, set())

    assert next(emitted) is not None
    assert next(events, None) is not None  # second event not consumed yet


def test_newest_first_batch_keeps_earlier_play():
    """Last.fm pages come newest first, the earlier of two close plays still wins."""
    later, earlier = listen(19.999, platform=Platform.lastfm, ms=0), listen(0, platform=Platform.lastfm, ms=0)

    assert new_listens([later, earlier]) == [earlier]


def test_window_follows_time_not_batch_order():
    events = [listen(40), listen(25), listen(10)]
    assert new_listens(events) == [events[0], events[2]]
