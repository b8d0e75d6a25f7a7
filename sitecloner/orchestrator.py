"""Pipeline orchestrator — drives a job through capture, generation, approval, and versioning.

Phases::

    queued → capturing → extracting → generating → awaiting_approval (pause)
           → scaffolding → versioning → complete        (any phase → failed)

The checkpoint is persisted before the pause is reported. Resuming re-enters
at the first phase the checkpoint has not committed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from calendar import timegm
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from sitecloner.errors import CorruptStateError, NotFoundError, SiteClonerError, ValidationError
from sitecloner.models.checkpoint import (
    ApprovalCheckpoint,
    CaptureArtifacts,
    Checkpoint,
    CheckpointInfo,
    DiscoveredComponent,
    ScaffoldedCheckpoint,
    VersionedCheckpoint,
)
from sitecloner.models.config import ClonerConfig
from sitecloner.models.job import (
    PHASE_PERCENT,
    Job,
    JobPhase,
    JobStatus,
    PipelineResult,
    ProgressEvent,
    utc_now,
)
from sitecloner.pipeline.checkpoint_store import JOB_ID_PATTERN, CheckpointStore
from sitecloner.pipeline.job_store import JobStore
from sitecloner.pipeline.phases import PhaseHandlers
from sitecloner.versioning.version_store import VersionStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[Awaitable[None], None]]

_PHASE_STATUS = {
    JobPhase.QUEUED: JobStatus.PENDING,
    JobPhase.AWAITING_APPROVAL: JobStatus.AWAITING_APPROVAL,
    JobPhase.COMPLETE: JobStatus.COMPLETED,
    JobPhase.FAILED: JobStatus.FAILED,
}


def _parse_utc(timestamp: str) -> float:
    return timegm(time.strptime(timestamp, "%Y-%m-%dT%H:%M:%SZ"))


class PipelineOrchestrator:
    """Runs clone jobs and owns their checkpoints."""

    def __init__(
        self,
        config: ClonerConfig,
        phases: Optional[PhaseHandlers] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        job_store: Optional[JobStore] = None,
        version_store: Optional[VersionStore] = None,
    ):
        self.config = config
        self.checkpoint_store = checkpoint_store or CheckpointStore(config.data_path / "checkpoints")
        self.job_store = job_store or JobStore(config.data_path / "jobs")
        self.version_store = version_store or VersionStore(
            config.websites_path, link_current=config.link_current
        )
        self.phases = phases or PhaseHandlers(config, self.version_store)
        self._inflight: dict[str, asyncio.Future] = {}
        self._cleanup_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ progress

    async def _emit(
        self,
        job: Job,
        phase: JobPhase,
        message: str,
        on_progress: Optional[ProgressCallback],
        strict: bool = True,
    ) -> None:
        job.phase = phase
        job.percent = max(job.percent, PHASE_PERCENT.get(phase, job.percent))
        job.status = _PHASE_STATUS.get(phase, JobStatus.IN_PROGRESS)
        job.message = message
        job.updated_at = utc_now()
        try:
            self.job_store.save(job)
        except (SiteClonerError, OSError) as e:
            if strict:
                raise
            logger.error("Could not record %s for job %s: %s", phase.value, job.id, e)

        event = ProgressEvent(job_id=job.id, phase=phase, percent=job.percent, message=message)
        self.job_store.publish(event)
        logger.info("[%s] %s (%d%%) %s", job.id, phase.value, job.percent, message)
        if on_progress is not None:
            try:
                result = on_progress(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Progress callback failed for %s", job.id)

    async def _fail(self, job: Job, error: Exception, on_progress: Optional[ProgressCallback]) -> PipelineResult:
        failed_in = job.phase.value
        job.error = str(error)
        logger.error("Job %s failed during %s: %s", job.id, failed_in, error)
        await self._emit(job, JobPhase.FAILED, f"Failed during {failed_in}: {error}", on_progress,
                         strict=False)
        return PipelineResult(success=False, job=job, error=str(error), error_type=type(error).__name__)

    # ------------------------------------------------------------------ start

    async def start(self, job: Job, on_progress: Optional[ProgressCallback] = None) -> PipelineResult:
        """Run a job up to the approval gate, or to completion when approval is off.

        Phase failures are reported in the result, never raised.
        """
        if not JOB_ID_PATTERN.match(job.id):
            error = ValidationError(f"Invalid job id: {job.id!r}")
            logger.error("Rejected job: %s", error)
            job.status = JobStatus.FAILED
            job.phase = JobPhase.FAILED
            job.error = str(error)
            return PipelineResult(success=False, job=job, error=str(error), error_type="ValidationError")

        try:
            self.purge_expired()
            await self._emit(job, JobPhase.QUEUED, "Job queued", on_progress)

            await self._emit(job, JobPhase.CAPTURING, f"Capturing {job.url}", on_progress)
            capture = await self.phases.capture(job)

            await self._emit(job, JobPhase.EXTRACTING,
                             f"Extracting components from {capture.section_count} sections", on_progress)
            components, tokens = await self.phases.extract(job, capture)

            await self._emit(job, JobPhase.GENERATING,
                             f"Generating {len(components)} components", on_progress)
            await self.phases.generate(job, components, tokens)

            if job.require_approval:
                checkpoint = ApprovalCheckpoint(
                    job_id=job.id,
                    website_id=job.website_id,
                    url=job.url,
                    capture=capture,
                    components=components,
                    design_tokens=tokens,
                )
                self.checkpoint_store.save(checkpoint)
                await self._emit(job, JobPhase.AWAITING_APPROVAL,
                                 f"Awaiting approval of {len(components)} components", on_progress)
                return PipelineResult(success=True, job=job, paused=True)

            await self._run_tail(job, None, capture, components, tokens, on_progress)
            return PipelineResult(success=True, job=job)
        except Exception as e:
            return await self._fail(job, e, on_progress)
        finally:
            self.job_store.close_channel(job.id)

    async def start_many(
        self, jobs: list[Job], on_progress: Optional[ProgressCallback] = None
    ) -> list[PipelineResult]:
        """Start several jobs concurrently, at most max_parallel_jobs at a time."""
        semaphore = asyncio.Semaphore(self.config.max_parallel_jobs)

        async def run_one(job: Job) -> PipelineResult:
            async with semaphore:
                return await self.start(job, on_progress)

        return list(await asyncio.gather(*(run_one(j) for j in jobs)))

    # ------------------------------------------------------------------ shared tail

    async def _run_tail(
        self,
        job: Job,
        checkpoint: Optional[Checkpoint],
        capture: CaptureArtifacts,
        components: list[DiscoveredComponent],
        tokens: dict[str, Any],
        on_progress: Optional[ProgressCallback],
    ) -> Optional[Checkpoint]:
        """Scaffolding, versioning, complete. Checkpoint is None for jobs without approval."""
        resume_at = checkpoint.resume_phase if checkpoint is not None else JobPhase.SCAFFOLDING
        common = {}
        if checkpoint is not None:
            common = checkpoint.model_dump(
                include={"job_id", "website_id", "url", "capture", "components", "design_tokens"}
            )

        scaffold_paths: list[str] = list(getattr(checkpoint, "scaffold_paths", []))
        if resume_at == JobPhase.SCAFFOLDING:
            await self._emit(job, JobPhase.SCAFFOLDING, "Scaffolding generated site", on_progress)
            scaffold_paths = await self.phases.scaffold(job, components, tokens)
            if checkpoint is not None:
                checkpoint = ScaffoldedCheckpoint(**common, scaffold_paths=scaffold_paths)
                self.checkpoint_store.save(checkpoint)
        else:
            logger.info("[%s] scaffolding already committed, skipping", job.id)

        version_id: Optional[str] = getattr(checkpoint, "version_id", None)
        if resume_at in (JobPhase.SCAFFOLDING, JobPhase.VERSIONING):
            await self._emit(job, JobPhase.VERSIONING, "Creating version snapshot", on_progress)
            version_id = await self.phases.version(job, tokens)
            if checkpoint is not None:
                checkpoint = VersionedCheckpoint(**common, scaffold_paths=scaffold_paths,
                                                 version_id=version_id)
                self.checkpoint_store.save(checkpoint)
        else:
            logger.info("[%s] version %s already created, skipping", job.id, version_id)

        await self._emit(job, JobPhase.COMPLETE, f"Complete (version {version_id})", on_progress)
        return checkpoint

    # ------------------------------------------------------------------ checkpoints

    def has_checkpoint(self, job_id: str) -> bool:
        """True when a resumable checkpoint exists. Never modifies anything."""
        try:
            checkpoint = self.checkpoint_store.load(job_id)
        except CorruptStateError:
            return True
        return checkpoint is not None and checkpoint.is_live

    def get_checkpoint_info(self, job_id: str) -> CheckpointInfo | None:
        checkpoint = self.checkpoint_store.load(job_id)
        if checkpoint is None or not checkpoint.is_live:
            return None
        return CheckpointInfo(
            exists=True,
            phase=checkpoint.phase,
            saved_at=checkpoint.saved_at,
            component_count=checkpoint.component_count,
        )

    # ------------------------------------------------------------------ resume

    async def resume(self, job_id: str, on_progress: Optional[ProgressCallback] = None) -> PipelineResult:
        """Continue a paused job after approval.

        Raises NotFoundError, CorruptStateError or ValidationError (malformed
        job id) before any progress is emitted, when there is nothing valid to
        resume. Everything after that is reported in the result.
        """
        inflight = self._inflight.get(job_id)
        if inflight is not None:
            logger.info("Resume of %s already running, joining it", job_id)
            result = await asyncio.shield(inflight)
            return result.model_copy(update={"duplicate": True})

        checkpoint = self.checkpoint_store.load(job_id)
        if checkpoint is None:
            raise NotFoundError(f"No checkpoint found for job {job_id}")

        try:
            stored = self.job_store.get(job_id)
        except CorruptStateError as e:
            logger.warning("Rebuilding job %s from its checkpoint: %s", job_id, e)
            stored = None
        job = stored or Job(
            id=job_id,
            website_id=checkpoint.website_id,
            url=checkpoint.url,
            phase=JobPhase.AWAITING_APPROVAL,
            percent=PHASE_PERCENT[JobPhase.AWAITING_APPROVAL],
            status=JobStatus.AWAITING_APPROVAL,
        )

        if not checkpoint.is_live:
            logger.info("Job %s already resumed at %s", job_id, checkpoint.completed_at)
            return PipelineResult(success=True, job=job, duplicate=True)

        task = asyncio.ensure_future(self._resume(job, checkpoint, on_progress))
        self._inflight[job_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(job_id, None))
        return await asyncio.shield(task)

    async def _resume(
        self, job: Job, checkpoint: Checkpoint, on_progress: Optional[ProgressCallback]
    ) -> PipelineResult:
        job.error = None
        try:
            self.purge_expired()
            checkpoint = await self._run_tail(
                job, checkpoint, checkpoint.capture, checkpoint.components,
                checkpoint.design_tokens, on_progress,
            )
            self.checkpoint_store.save(checkpoint.model_copy(update={"completed_at": utc_now()}))
            self._schedule_expiry(job.id)
            return PipelineResult(success=True, job=job)
        except Exception as e:
            # checkpoint stays live so the resume can be retried
            return await self._fail(job, e, on_progress)
        finally:
            self.job_store.close_channel(job.id)

    # ------------------------------------------------------------------ grace window

    def _schedule_expiry(self, job_id: str) -> None:
        grace = self.config.checkpoint_grace_seconds
        if grace <= 0:
            self.checkpoint_store.delete(job_id)
            return
        task = asyncio.create_task(self._expire_after(job_id, grace))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _expire_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        checkpoint = self.checkpoint_store.load(job_id)
        if checkpoint is not None and not checkpoint.is_live:
            self.checkpoint_store.delete(job_id)
            logger.debug("Expired checkpoint for %s", job_id)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Delete completed checkpoints whose grace window has passed."""
        now = time.time() if now is None else now
        removed = 0
        for job_id in self.checkpoint_store.list_job_ids():
            try:
                checkpoint = self.checkpoint_store.load(job_id)
            except CorruptStateError as e:
                logger.warning("Leaving unreadable checkpoint %s in place: %s", job_id, e)
                continue
            if checkpoint is None or checkpoint.completed_at is None:
                continue
            if now - _parse_utc(checkpoint.completed_at) >= self.config.checkpoint_grace_seconds:
                removed += self.checkpoint_store.delete(job_id)
        return removed

    async def aclose(self) -> None:
        """Cancel pending expiry timers. Completed checkpoints are purged on a later run."""
        for task in list(self._cleanup_tasks):
            task.cancel()
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    # ------------------------------------------------------------------ observers

    def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Progress events for a job's next (or current) run."""
        return self.job_store.events(job_id)

    def get_job(self, job_id: str) -> Job | None:
        return self.job_store.get(job_id)
