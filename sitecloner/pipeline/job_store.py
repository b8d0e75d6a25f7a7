"""Job store — durable job status plus an in-process progress channel per job.

Any number of observers can subscribe to a job's progress; the orchestrator
publishes each phase transition and closes the channel when a run ends.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from sitecloner.errors import CorruptStateError, ValidationError
from sitecloner.models.job import Job, ProgressEvent
from sitecloner.utils.files import atomic_write_json

from .checkpoint_store import JOB_ID_PATTERN

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, jobs_dir: Path):
        self.jobs_dir = Path(jobs_dir)
        self._subscribers: dict[str, list[asyncio.Queue]] = {}

    def _path(self, job_id: str) -> Path:
        if not job_id or not JOB_ID_PATTERN.match(job_id):
            raise ValidationError(f"Invalid job id: {job_id!r}")
        return self.jobs_dir / f"{job_id}.json"

    # --- status sink

    def save(self, job: Job) -> None:
        atomic_write_json(self._path(job.id), job.model_dump(mode="json"))

    def get(self, job_id: str) -> Job | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        try:
            return Job.model_validate_json(path.read_text())
        except (OSError, PydanticValidationError) as e:
            raise CorruptStateError(f"Job record {job_id} is unreadable: {e}") from e

    def list_jobs(self) -> list[Job]:
        if not self.jobs_dir.exists():
            return []
        jobs = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            try:
                jobs.append(Job.model_validate_json(path.read_text()))
            except (OSError, PydanticValidationError) as e:
                logger.warning("Skipping unreadable job record %s: %s", path.name, e)
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    # --- progress channel

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def publish(self, event: ProgressEvent) -> None:
        for queue in self._subscribers.get(event.job_id, []):
            queue.put_nowait(event)

    def close_channel(self, job_id: str) -> None:
        """Signal end-of-run to every current subscriber."""
        for queue in self._subscribers.pop(job_id, []):
            queue.put_nowait(None)

    def events(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Subscribe now; yield progress events until the job's current run ends."""
        return self._drain(job_id, self.subscribe(job_id))

    async def _drain(self, job_id: str, queue: asyncio.Queue) -> AsyncIterator[ProgressEvent]:
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.unsubscribe(job_id, queue)
