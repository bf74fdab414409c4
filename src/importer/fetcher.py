import os
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterator

import requests
from requests.exceptions import RequestException

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from dotenv import load_dotenv
load_dotenv()

from importer.errors import DecodeError
from importer.objects import PageResult
from importer.readers import decode_recent_tracks, decode_total_pages

LASTFM_API_URL = os.getenv("LASTFM_API_URL", "https://ws.audioscrobbler.com/2.0/")
REQUEST_TIMEOUT_S = float(os.getenv("LASTFM_TIMEOUT_S", "30"))
PAGE_SIZE = 100

WORKERS = int(os.getenv("LASTFM_WORKERS", "10"))
RESULT_QUEUE_SIZE = 20


class LastFMClient:
    """Blocking client for `user.getrecenttracks`, one call per page."""

    def __init__(self, username: str, api_key: str, *,
                 api_url: str = LASTFM_API_URL,
                 timeout: float = REQUEST_TIMEOUT_S,
                 session: requests.Session | None = None):
        self.username = username
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_page(self, page: int) -> dict:
        LOGGER.debug(f"Requesting Last.fm page {page} for '{self.username}'.")
        response = self.session.get(self.api_url,
                                    params={"method": "user.getrecenttracks",
                                            "user": self.username,
                                            "api_key": self.api_key,
                                            "format": "json",
                                            "limit": PAGE_SIZE,
                                            "page": page},
                                    timeout=self.timeout)
        response.raise_for_status()

        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Page {page} is not valid JSON: {e}") from e

    def close(self):
        self.session.close()


def worker_pages(worker: int, workers: int, total_pages: int, first_page: int = 2) -> range:
    """Pages owned by one worker: first_page + worker, then every `workers`-th page."""
    return range(first_page + worker, total_pages + 1, workers)


def fetch_first_page(client: LastFMClient, user_id: int | None = None) -> tuple[int, PageResult]:
    """Discovery request. Errors propagate, without a page count nothing can be scheduled."""
    payload = client.fetch_page(1)
    total_pages = decode_total_pages(payload)
    return total_pages, PageResult(page=1, events=decode_recent_tracks(payload, user_id))


def _fetch_decode(client: LastFMClient, page: int, user_id: int | None) -> PageResult:
    try:
        payload = client.fetch_page(page)
        return PageResult(page=page, events=decode_recent_tracks(payload, user_id))
    except (RequestException, DecodeError) as e:
        return PageResult(page=page, error=e)


class PageScheduler:
    """
    Fetches pages 2..total_pages with a fixed pool of workers.

    Page ownership is static (see `worker_pages`), so workers only meet at the result
    queue. Results come out in arrival order; only each worker's own pages are ordered.
    """

    def __init__(self, client: LastFMClient, total_pages: int, user_id: int | None = None, *,
                 workers: int = WORKERS, queue_size: int = RESULT_QUEUE_SIZE):
        assert workers > 0, "Need at least one fetch worker."
        self.client = client
        self.total_pages = total_pages
        self.user_id = user_id
        self.workers = workers
        self.queue_size = queue_size

    @property
    def scheduled_pages(self) -> int:
        return max(self.total_pages - 1, 0)

    async def _worker(self, worker: int, queue: asyncio.Queue, executor: ThreadPoolExecutor):
        loop = asyncio.get_running_loop()
        pages = worker_pages(worker, self.workers, self.total_pages)
        LOGGER.debug(f"Fetch worker {worker} owns {len(pages)} pages.")

        for page in pages:
            try:
                result = await loop.run_in_executor(executor, _fetch_decode,
                                                    self.client, page, self.user_id)
            except Exception as e:
                LOGGER.error(f"Fetch worker {worker} crashed on page {page}: {traceback.format_exc()}")
                result = PageResult(page=page, error=e)

            await queue.put(result)

    async def _run(self, queue: asyncio.Queue, executor: ThreadPoolExecutor):
        try:
            await asyncio.gather(*[self._worker(i, queue, executor) for i in range(self.workers)])
        except Exception:
            LOGGER.error(f"Fetch workers stopped early: {traceback.format_exc()}")

        # End of stream, only after every worker is done. Not reached when cancelled.
        await queue.put(None)

    async def results(self) -> AsyncIterator[PageResult]:
        if self.scheduled_pages == 0:
            return

        queue = asyncio.Queue(maxsize=self.queue_size)
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="lastfm-fetch")
        runner = asyncio.create_task(self._run(queue, executor))

        LOGGER.info(f"Fetching {self.scheduled_pages} pages with {self.workers} workers.")
        try:
            while (result := await queue.get()) is not None:
                yield result
        finally:
            if not runner.done():
                runner.cancel()
                try:
                    await runner
                except asyncio.CancelledError:
                    pass
            # Queued pages are dropped. A request already in flight runs out on its
            # thread, at most REQUEST_TIMEOUT_S, and its result is discarded.
            executor.shutdown(wait=False, cancel_futures=True)

    def __aiter__(self):
        return self.results()
