import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st

from importer.progress import ProgressChannel, ProgressReporter


async def run_job(total_units, imported_per_unit, fail_at):
    reporter = ProgressReporter(ProgressChannel())
    await reporter.start(total_units)

    imported = 0
    for unit, n in enumerate(imported_per_unit[:total_units], start=1):
        if unit == fail_at:
            await reporter.fail("boom")
            return reporter.channel.updates

        imported += n
        await reporter.advance(unit, imported)

    await reporter.complete(imported)
    return reporter.channel.updates


jobs = st.tuples(st.integers(min_value=0, max_value=30),
                 st.lists(st.integers(min_value=0, max_value=1000), min_size=30, max_size=30),
                 st.one_of(st.none(), st.integers(min_value=1, max_value=30)))


# Counters never go backwards and stay within the total.
@given(job=jobs)
@settings(max_examples=100, deadline=None)
def test_progress_monotonic(job):
    updates = asyncio.run(run_job(*job))

    for before, after in zip(updates, updates[1:]):
        assert after.completed_units >= before.completed_units
        assert after.tracks_imported >= before.tracks_imported

    assert all(0 <= u.completed_units <= u.total_units for u in updates)


# Exactly one terminal update and it's the last one.
@given(job=jobs)
@settings(max_examples=100, deadline=None)
def test_single_terminal_update(job):
    updates = asyncio.run(run_job(*job))

    assert [u.terminal for u in updates].count(True) == 1
    assert updates[-1].terminal
    if updates[-1].status == "completed":
        assert updates[-1].completed_units == updates[-1].total_units
