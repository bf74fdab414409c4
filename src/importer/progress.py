import asyncio
import json
from dataclasses import dataclass, asdict
from enum import Enum
from typing import AsyncIterator

import logging
LOGGER = logging.getLogger(__name__)

from importer.errors import InvalidTransition


class JobState(Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed)

TRANSITIONS = {JobState.pending: {JobState.running, JobState.failed},
               JobState.running: {JobState.running, JobState.completed, JobState.failed},
               JobState.completed: set(),
               JobState.failed: set()}

# Wire values of ProgressUpdate.status
STATUS_FOR_STATE = {JobState.running: "running",
                    JobState.completed: "completed",
                    JobState.failed: "error"}
TERMINAL_STATUSES = ("completed", "error")


@dataclass(frozen=True)
class ProgressUpdate:
    current_unit: int
    completed_units: int
    total_units: int
    tracks_imported: int
    status: str
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        data = asdict(self)
        if data["error"] is None:
            del data["error"]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class ProgressChannel:
    """
    Broadcast log of one job's updates.

    Publishing never blocks. Every consumer replays the log from the start and stops
    after the terminal update, so late or slow subscribers can't stall the import.
    """

    def __init__(self):
        self._updates: list[ProgressUpdate] = []
        self._changed = asyncio.Condition()

    @property
    def updates(self) -> list[ProgressUpdate]:
        return list(self._updates)

    @property
    def closed(self) -> bool:
        return bool(self._updates) and self._updates[-1].terminal

    async def publish(self, update: ProgressUpdate):
        if self.closed:
            raise InvalidTransition(f"Channel already closed, can't publish {update}.")

        async with self._changed:
            self._updates.append(update)
            self._changed.notify_all()

    async def __aiter__(self) -> AsyncIterator[ProgressUpdate]:
        i = 0
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: len(self._updates) > i)
                update = self._updates[i]
            i += 1

            yield update
            if update.terminal:
                return


class ProgressReporter:
    """Turns pipeline progress into updates while enforcing the job state machine."""

    def __init__(self, channel: ProgressChannel, job_id: str = ""):
        self.channel = channel
        self.job_id = job_id
        self.state = JobState.pending
        self.total_units = 0
        self.completed_units = 0
        self.tracks_imported = 0

    def _move(self, new_state: JobState):
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Job {self.job_id}: {self.state.value} -> {new_state.value} not allowed.")
        self.state = new_state

    async def _publish(self, current_unit: int, error: str | None = None):
        update = ProgressUpdate(current_unit=current_unit,
                                completed_units=self.completed_units,
                                total_units=self.total_units,
                                tracks_imported=self.tracks_imported,
                                status=STATUS_FOR_STATE[self.state],
                                error=error)
        LOGGER.debug(f"Job {self.job_id} progress: {update}")
        await self.channel.publish(update)

    async def start(self, total_units: int):
        self._move(JobState.running)
        self.total_units = total_units
        await self._publish(current_unit=0)

    async def advance(self, current_unit: int, tracks_imported: int | None = None):
        """One more unit done, whether or not it produced anything."""
        self._move(JobState.running)
        self.completed_units = min(self.completed_units + 1, self.total_units)
        if tracks_imported is not None:
            self.tracks_imported = max(self.tracks_imported, tracks_imported)
        await self._publish(current_unit=current_unit)

    async def complete(self, tracks_imported: int | None = None):
        self._move(JobState.completed)
        self.completed_units = self.total_units
        if tracks_imported is not None:
            self.tracks_imported = max(self.tracks_imported, tracks_imported)
        await self._publish(current_unit=self.total_units)

    async def fail(self, error: str):
        self._move(JobState.failed)
        LOGGER.warning(f"Job {self.job_id} failed: {error}")
        await self._publish(current_unit=self.completed_units, error=error)


CONNECTED_EVENT = "data: {\"status\":\"connected\"}\n\n"

def format_sse(update: ProgressUpdate) -> str:
    return f"data: {update.to_json()}\n\n"

async def sse_events(updates: AsyncIterator[ProgressUpdate]) -> AsyncIterator[str]:
    """Server-sent-events framing for a progress stream, ends after a terminal status."""
    yield CONNECTED_EVENT
    async for update in updates:
        yield format_sse(update)
        if update.terminal:
            return
