import asyncio
from contextlib import aclosing

from requests.exceptions import RequestException

import logging
LOGGER = logging.getLogger(__name__)

from importer.dedup import filter_valid
from importer.errors import DecodeError
from importer.fetcher import LastFMClient, PageScheduler, fetch_first_page, WORKERS
from importer.objects import ListenEvent
from importer.progress import ProgressReporter
from importer.readers import decode_spotify_exports
from importer.writer import import_batch

SPOTIFY_BATCH_SIZE = 1000
LASTFM_FLUSH_SIZE = 500


async def import_spotify_events(user_id: int, events: list[ListenEvent], reporter: ProgressReporter) -> int:
    """Import decoded export plays in fixed-size batches, one progress unit per batch."""
    total_batches = (len(events) + SPOTIFY_BATCH_SIZE - 1) // SPOTIFY_BATCH_SIZE
    total_imported = 0

    await reporter.start(total_batches)
    LOGGER.info(f"Importing {len(events)} Spotify plays for user {user_id} in {total_batches} batches.")

    for batch_no, start in enumerate(range(0, len(events), SPOTIFY_BATCH_SIZE), start=1):
        valid = filter_valid(events[start:start + SPOTIFY_BATCH_SIZE])

        if valid:
            total_imported += await import_batch(user_id, valid)
        else:
            LOGGER.debug(f"Batch {batch_no}/{total_batches} has no valid plays.")

        await reporter.advance(current_unit=batch_no, tracks_imported=total_imported)

    await reporter.complete(total_imported)
    LOGGER.info(f"{total_imported} tracks imported from Spotify for user {user_id}.")
    return total_imported


async def import_spotify(user_id: int, buffers: dict[str, bytes], reporter: ProgressReporter) -> int:
    decoded = await asyncio.to_thread(decode_spotify_exports, buffers, user_id)
    return await import_spotify_events(user_id, decoded.events, reporter)


async def import_lastfm(user_id: int, username: str, api_key: str, reporter: ProgressReporter, *,
                        client: LastFMClient | None = None, workers: int = WORKERS) -> int:
    """
    Import a Last.fm account's scrobbles.

    Page 1 is fetched first to learn the page count (fatal if that fails), the rest
    come from the worker pool in arrival order. Valid scrobbles are buffered and
    flushed LASTFM_FLUSH_SIZE at a time. One progress unit per page.
    """
    if client is not None:
        return await _import_lastfm_pages(user_id, username, client, reporter, workers)

    client = LastFMClient(username, api_key)
    try:
        return await _import_lastfm_pages(user_id, username, client, reporter, workers)
    finally:
        client.close()


async def _import_lastfm_pages(user_id: int, username: str, client: LastFMClient,
                               reporter: ProgressReporter, workers: int) -> int:
    try:
        total_pages, first = await asyncio.to_thread(fetch_first_page, client, user_id)
    except (RequestException, DecodeError) as e:
        LOGGER.error(f"Can't discover Last.fm page count for '{username}': {e}")
        await reporter.fail(f"Could not fetch Last.fm history: {e}")
        return 0

    await reporter.start(total_pages)
    LOGGER.info(f"Last.fm user '{username}' has {total_pages} pages of scrobbles.")

    total_imported = 0
    pending: list[ListenEvent] = []

    async def flush(final=False):
        nonlocal total_imported, pending
        while len(pending) >= LASTFM_FLUSH_SIZE or (final and pending):
            batch, pending = pending[:LASTFM_FLUSH_SIZE], pending[LASTFM_FLUSH_SIZE:]
            total_imported += await import_batch(user_id, batch)

    if total_pages > 0:
        pending.extend(filter_valid(first.events, min_played_ms=0))
        await flush()
        await reporter.advance(current_unit=first.page, tracks_imported=total_imported)

    scheduler = PageScheduler(client, total_pages, user_id, workers=workers)
    async with aclosing(scheduler.results()) as results:
        async for result in results:
            if result.ok:
                pending.extend(filter_valid(result.events, min_played_ms=0))
                await flush()
            else:
                LOGGER.warning(f"Error on Last.fm page {result.page}: {result.error}")

            await reporter.advance(current_unit=result.page, tracks_imported=total_imported)
            LOGGER.debug(f"Processed page {result.page}/{total_pages}.")

    await flush(final=True)
    await reporter.complete(total_imported)

    LOGGER.info(f"{total_imported} tracks imported from Last.fm for user {user_id} ('{username}').")
    return total_imported
