import asyncio
import secrets
import threading
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from importer.errors import JobNotFound
from importer.fetcher import LastFMClient
from importer.pipeline import import_spotify, import_lastfm
from importer.progress import ProgressChannel, ProgressReporter, ProgressUpdate, sse_events
from importer.readers import accept_uploads

Runner = Callable[[ProgressReporter], Awaitable[int]]


@dataclass
class ImportJob:
    job_id: str
    kind: str
    user_id: int
    channel: ProgressChannel = field(default_factory=ProgressChannel)
    reporter: ProgressReporter = None
    task: asyncio.Task | None = None

    def __post_init__(self):
        if self.reporter is None:
            self.reporter = ProgressReporter(self.channel, self.job_id)


class JobManager:
    """
    Registry of in-flight imports.

    A job is registered when accepted and removed as soon as its background task
    ends; consumers already streaming keep their channel until the terminal update.
    The lock only ever guards the dict itself.
    """

    def __init__(self):
        self._jobs: dict[str, ImportJob] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self):
        with self._lock:
            return len(self._jobs)

    def get(self, job_id: str) -> ImportJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _remove(self, job_id: str):
        with self._lock:
            self._jobs.pop(job_id, None)

    def _start(self, kind: str, user_id: int, run: Runner) -> dict:
        job = ImportJob(job_id=secrets.token_hex(16), kind=kind, user_id=user_id)

        with self._lock:
            self._jobs[job.job_id] = job

        job.task = asyncio.create_task(self._run(job, run), name=f"import-{kind}-{job.job_id}")
        self._tasks.add(job.task)
        job.task.add_done_callback(self._tasks.discard)

        LOGGER.info(f"Started {kind} import job {job.job_id} for user {user_id}.")
        return {"job_id": job.job_id, "status": "started"}

    async def _run(self, job: ImportJob, run: Runner):
        try:
            await run(job.reporter)
        except Exception as e:
            LOGGER.error(f"Import job {job.job_id} crashed: {traceback.format_exc()}")
            if not job.reporter.state.terminal:
                await job.reporter.fail(f"Import failed: {e}")
        except asyncio.CancelledError:
            LOGGER.warning(f"Import job {job.job_id} cancelled.")
            if not job.reporter.state.terminal:
                await job.reporter.fail("Import cancelled")
            raise
        finally:
            self._remove(job.job_id)
            LOGGER.info(f"Import job {job.job_id} finished ({job.reporter.state.value}).")

    def start_spotify_import(self, user_id: int, uploads: dict[str, bytes]) -> dict:
        """Accept export files and import them in the background. Needs a running loop.

        Raises UploadRejected straight away when the upload as a whole is unacceptable.
        """
        files = accept_uploads(uploads)
        return self._start("spotify", user_id,
                           lambda reporter: import_spotify(user_id, files, reporter))

    def start_lastfm_import(self, user_id: int, username: str, api_key: str, *,
                            client: LastFMClient | None = None, workers: int | None = None) -> dict:
        if not username or not api_key:
            raise ValueError("Missing Last.fm username or API key.")

        kwargs = {"client": client}
        if workers is not None:
            kwargs["workers"] = workers

        return self._start("lastfm", user_id,
                           lambda reporter: import_lastfm(user_id, username, api_key, reporter, **kwargs))

    def stream(self, job_id: str) -> AsyncIterator[ProgressUpdate]:
        """Progress updates of a running job, from its first update to its terminal one."""
        return aiter(self.get(job_id).channel)

    def sse(self, job_id: str) -> AsyncIterator[str]:
        return sse_events(self.stream(job_id))

    async def wait(self, job_id: str) -> ProgressUpdate:
        """Follow a job to its terminal update and return it."""
        update = None
        async for update in self.stream(job_id):
            pass
        return update

    async def shutdown(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
