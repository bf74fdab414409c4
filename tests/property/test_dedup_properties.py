from collections import defaultdict
from itertools import combinations

from hypothesis import given, settings
from hypothesis import strategies as st

from tests.strategies.listens import listen_strat, history_strat

from importer.dedup import filter_valid, index_history, iter_new_listens, resolve_duplicates
from importer.objects import DUPLICATE_WINDOW


def kept_listens(events, history):
    duplicates = resolve_duplicates(events, index_history(history))
    return duplicates, list(iter_new_listens(events, duplicates))


# Nothing emitted lies within the window of a stored play of the same track.
@given(events=st.lists(listen_strat(), max_size=40), history=history_strat())
@settings(max_examples=200)
def test_no_emitted_listen_near_history(events, history):
    _, kept = kept_listens(events, history)
    stored = index_history(history)

    for event in kept:
        assert all(abs(event.timestamp - ts) >= DUPLICATE_WINDOW for ts in stored.get(event.track, ()))


# Emitted listens of the same track are pairwise at least a window apart, keys unique.
@given(events=st.lists(listen_strat(), max_size=40), history=history_strat())
@settings(max_examples=200)
def test_emitted_listens_spread_out(events, history):
    _, kept = kept_listens(events, history)

    assert len({e.key() for e in kept}) == len(kept)

    by_track = defaultdict(list)
    for event in kept:
        by_track[event.track].append(event.timestamp)

    for stamps in by_track.values():
        for a, b in combinations(stamps, 2):
            assert abs(a - b) >= DUPLICATE_WINDOW


# Duplicates only ever name keys from the batch, and emitted order follows batch order.
@given(events=st.lists(listen_strat(), max_size=40), history=history_strat())
def test_duplicates_subset_and_order(events, history):
    duplicates, kept = kept_listens(events, history)

    assert duplicates <= {e.key() for e in events}

    positions = [events.index(e) for e in kept]
    assert positions == sorted(positions)


# Running the resolver over its own output changes nothing.
@given(events=st.lists(listen_strat(), max_size=40))
def test_resolution_is_stable(events):
    _, kept = kept_listens(events, [])
    _, again = kept_listens(kept, [])
    assert again == kept


# Whatever the order of validation and resolution, short plays never make it out.
@given(events=st.lists(listen_strat(), max_size=40))
def test_short_plays_never_emitted(events):
    _, kept = kept_listens(filter_valid(events), [])
    assert all(e.played_ms >= 20_000 for e in kept)


# Without stored plays, the earliest play of every track in the batch is kept.
@given(events=st.lists(listen_strat(), max_size=40))
def test_earliest_play_kept(events):
    _, kept = kept_listens(events, [])
    kept_keys = {e.key() for e in kept}

    earliest = {}
    for event in events:
        if event.track not in earliest or event.timestamp < earliest[event.track].timestamp:
            earliest[event.track] = event

    assert all(e.key() in kept_keys for e in earliest.values())
