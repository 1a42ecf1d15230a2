"""
Planning worker pool.

Runs planning jobs on a fixed number of asyncio worker tasks fed from a
queue. Each job runs the whole pipeline independently; the CPU-bound
packing step runs off the event loop. Job state lives in an in-memory
JobStore that the API polls.

Run standalone with: python -m polyplan.worker request.json [...]
Each request file holds a PlanningRequest; the result is written next to
it as <name>.result.json.
"""
import asyncio
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

from polyplan.config import get_settings
from polyplan.schemas.planning import (
    JobStatus,
    JobStatusResponse,
    PlanningRequest,
    PlanningResponse,
    PlanningStage,
)
from polyplan.services.packing_optimizer import PackingProgress
from polyplan.services.planning_service import PolyhousePlanningService, get_planning_service

logger = logging.getLogger(__name__)

# Progress percentage reserved for terrain analysis; packing fills the rest
TERRAIN_PROGRESS_PCT = 10
PACKING_PROGRESS_PCT = 85

FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlanningJob:
    """A queued planning request and its progress."""
    job_id: UUID
    request: PlanningRequest
    status: JobStatus = JobStatus.QUEUED
    stage: PlanningStage = PlanningStage.QUEUED
    progress_pct: int = 0
    stage_message: Optional[str] = None
    structures_placed: int = 0
    error_message: Optional[str] = None
    result: Optional[PlanningResponse] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_response(self) -> JobStatusResponse:
        return JobStatusResponse(
            job_id=self.job_id,
            status=self.status,
            error_message=self.error_message,
            stage=self.stage,
            progress_pct=self.progress_pct,
            stage_message=self.stage_message,
            structures_placed=self.structures_placed,
            created_at=self.created_at,
            updated_at=self.updated_at,
            result=self.result,
        )


class JobStore:
    """
    In-memory job registry.

    Updates arrive from worker tasks and from optimizer threads (progress
    callbacks), so access is guarded by a lock. Completed and failed jobs
    are dropped once older than the retention period, and the oldest of
    them beyond ``max_finished``; queued and running jobs are always kept.
    """

    def __init__(self, retention_s: Optional[float] = None, max_finished: Optional[int] = None):
        settings = get_settings()
        self.retention_s = settings.job_retention_s if retention_s is None else retention_s
        self.max_finished = settings.max_finished_jobs if max_finished is None else max_finished
        self._jobs: dict[UUID, PlanningJob] = {}
        self._lock = threading.Lock()

    def create(self, request: PlanningRequest) -> PlanningJob:
        job = PlanningJob(job_id=uuid4(), request=request)
        with self._lock:
            self._prune()
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: UUID) -> Optional[PlanningJob]:
        with self._lock:
            self._prune()
            return self._jobs.get(job_id)

    def prune(self) -> int:
        """Evict expired finished jobs. Returns the number removed."""
        with self._lock:
            return self._prune()

    def _prune(self) -> int:
        now = _now()
        finished = sorted(
            (job for job in self._jobs.values() if job.status in FINISHED_STATUSES),
            key=lambda job: job.updated_at,
        )
        expired = [job for job in finished if (now - job.updated_at).total_seconds() > self.retention_s]
        kept = finished[len(expired):]
        if len(kept) > self.max_finished:
            expired.extend(kept[:len(kept) - self.max_finished])

        for job in expired:
            del self._jobs[job.job_id]
        if expired:
            logger.info(f"Evicted {len(expired)} finished jobs, {len(self._jobs)} retained")
        return len(expired)

    def update(self, job_id: UUID, **changes) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = _now()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class PlanningWorkerPool:
    """
    Fixed pool of asyncio workers processing planning jobs.

    Usage:
        pool = PlanningWorkerPool(workers=2)
        await pool.start()
        job = pool.submit(request)
        ...
        await pool.stop()
    """

    def __init__(
        self,
        service: Optional[PolyhousePlanningService] = None,
        store: Optional[JobStore] = None,
        workers: Optional[int] = None,
    ):
        self.service = service
        self.store = store or JobStore()
        self.workers = workers or get_settings().planning_workers
        self._queue: asyncio.Queue[UUID] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        if self.service is None:
            self.service = get_planning_service()
        self._tasks = [
            asyncio.create_task(self._run(index), name=f"planning-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info(f"Planning worker pool started with {self.workers} workers")

    async def stop(self) -> None:
        """Cancel idle workers; a job in progress is abandoned."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Planning worker pool stopped")

    def submit(self, request: PlanningRequest) -> PlanningJob:
        job = self.store.create(request)
        self._queue.put_nowait(job.job_id)
        logger.info(f"Queued planning job {job.job_id}")
        return job

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _run(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self.process(job_id)
            except Exception as e:
                logger.exception(f"Worker {index} failed on job {job_id}: {e}")
            finally:
                self._queue.task_done()

    async def process(self, job_id: UUID) -> None:
        """
        Run one job to completion.

        Jobs already completed or failed are skipped so a duplicate queue
        entry does no work.
        """
        job = self.store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found, skipping")
            return
        if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            logger.info(f"Job {job_id} already {job.status.value}, skipping duplicate")
            return

        self.store.update(
            job_id,
            status=JobStatus.PROCESSING,
            stage=PlanningStage.ANALYZING_TERRAIN,
            progress_pct=0,
            stage_message="Analyzing terrain",
            error_message=None,
        )
        logger.info(f"Processing planning job {job_id}")

        def on_progress(event: PackingProgress) -> None:
            pct = TERRAIN_PROGRESS_PCT + int(event.fraction_complete * PACKING_PROGRESS_PCT)
            self.store.update(
                job_id,
                stage=PlanningStage.PLACING_STRUCTURES,
                progress_pct=min(pct, 99),
                stage_message=event.message,
                structures_placed=event.structures_placed,
            )

        request = job.request
        try:
            boundary = request.boundary_points()
            result = await self.service.plan(boundary, request.configuration.to_config(), on_progress)
            response = PlanningResponse.from_result(
                result,
                boundary,
                include_blocks=request.include_blocks,
                include_geojson=request.include_geojson,
            )
        except Exception as e:
            logger.exception(f"Error planning job {job_id}: {e}")
            self.store.update(
                job_id,
                status=JobStatus.FAILED,
                stage=PlanningStage.FAILED,
                error_message=str(e),
            )
            return

        self.store.update(
            job_id,
            status=JobStatus.COMPLETED,
            stage=PlanningStage.COMPLETED,
            progress_pct=100,
            stage_message=f"Placed {len(response.structures)} structures",
            structures_placed=len(response.structures),
            result=response,
        )
        logger.info(f"Planning job {job_id} completed")


# =============================================================================
# Standalone runner
# =============================================================================


class FileJobRunner:
    """Processes request files through a worker pool."""

    def __init__(self, paths: list[Path], workers: Optional[int] = None):
        self.paths = paths
        self.pool = PlanningWorkerPool(workers=workers)
        self.should_shutdown = False
        self._setup_signal_handlers()

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, gracefully shutting down...")
            self.should_shutdown = True

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    async def run(self) -> int:
        """Returns the number of failed jobs."""
        await self.pool.start()
        jobs = {}
        try:
            for path in self.paths:
                if self.should_shutdown:
                    break
                try:
                    request = PlanningRequest.model_validate_json(path.read_text())
                except (OSError, ValueError) as e:
                    logger.error(f"Skipping {path}: {e}")
                    continue
                jobs[path] = self.pool.submit(request).job_id

            drained = asyncio.create_task(self.pool.join())
            while not drained.done() and not self.should_shutdown:
                await asyncio.wait({drained}, timeout=0.5)
            if not drained.done():
                drained.cancel()
        finally:
            await self.pool.stop()

        failed = len(self.paths) - len(jobs)
        for path, job_id in jobs.items():
            job = self.pool.store.get(job_id)
            if job.status == JobStatus.COMPLETED:
                out = path.with_suffix(".result.json")
                out.write_text(job.result.model_dump_json(indent=2))
                logger.info(f"{path.name}: {len(job.result.structures)} structures -> {out.name}")
            else:
                failed += 1
                logger.error(f"{path.name}: {job.status.value} {job.error_message or ''}")
        return failed


async def main(argv: list[str]) -> int:
    if not argv:
        print("usage: python -m polyplan.worker request.json [...]", file=sys.stderr)
        return 2
    runner = FileJobRunner([Path(a) for a in argv])
    failed = await runner.run()
    return 1 if failed else 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    sys.exit(asyncio.run(main(sys.argv[1:])))
