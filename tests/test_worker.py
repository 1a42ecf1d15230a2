"""
Tests for the planning worker pool and the standalone file runner.
"""
import json
import signal
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from polyplan.schemas.planning import (
    Coordinate,
    JobStatus,
    PlanningConfiguration,
    PlanningRequest,
    PlanningStage,
)
from polyplan.services import planning_service
from polyplan.services.planning_service import PolyhousePlanningService
from polyplan.services.terrain_sources import FlatTerrainSource
from polyplan.worker import FileJobRunner, JobStore, PlanningWorkerPool, main
from tests.helpers import geo_ring


def make_request(points, **configuration) -> PlanningRequest:
    return PlanningRequest(
        boundary=[Coordinate.from_geo_point(p) for p in points],
        configuration=PlanningConfiguration(**configuration),
    )


@pytest.fixture
def flat_service():
    return PolyhousePlanningService(terrain_source=FlatTerrainSource())


@pytest.fixture
def planning_singleton(monkeypatch, flat_service):
    monkeypatch.setattr(planning_service, "_planning_service", flat_service)
    return flat_service


@pytest.fixture
def restore_signals():
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


class TestJobStore:

    def test_create_and_update(self, equatorial_parcel):
        store = JobStore()
        job = store.create(make_request(equatorial_parcel))
        assert len(store) == 1
        assert store.get(job.job_id).status == JobStatus.QUEUED

        before = job.updated_at
        store.update(job.job_id, progress_pct=40, stage=PlanningStage.PLACING_STRUCTURES)
        updated = store.get(job.job_id)
        assert updated.progress_pct == 40
        assert updated.updated_at >= before

    def test_update_unknown_job_is_ignored(self):
        JobStore().update(uuid4(), progress_pct=10)

    def test_expired_finished_jobs_are_evicted(self, equatorial_parcel):
        store = JobStore(retention_s=60, max_finished=10)
        done = store.create(make_request(equatorial_parcel))
        running = store.create(make_request(equatorial_parcel))
        store.update(done.job_id, status=JobStatus.COMPLETED)
        store.update(running.job_id, status=JobStatus.PROCESSING)
        an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        done.updated_at = an_hour_ago
        running.updated_at = an_hour_ago

        assert store.prune() == 1
        assert store.get(done.job_id) is None
        assert store.get(running.job_id) is running

    def test_oldest_finished_jobs_pruned_beyond_cap(self, equatorial_parcel):
        store = JobStore(retention_s=3600, max_finished=2)
        jobs = [store.create(make_request(equatorial_parcel)) for _ in range(4)]
        start = datetime.now(timezone.utc) - timedelta(minutes=10)
        for minute, job in enumerate(jobs):
            store.update(job.job_id, status=JobStatus.FAILED)
            job.updated_at = start + timedelta(minutes=minute)

        queued = store.create(make_request(equatorial_parcel))

        assert len(store) == 3
        assert store.get(jobs[0].job_id) is None
        assert store.get(jobs[1].job_id) is None
        assert store.get(jobs[3].job_id) is jobs[3]
        assert store.get(queued.job_id) is queued

    def test_retention_from_settings(self):
        store = JobStore()
        assert store.retention_s == 3600.0
        assert store.max_finished == 500


class TestPlanningWorkerPool:

    @pytest.mark.asyncio
    async def test_job_completes(self, flat_service, equatorial_parcel):
        pool = PlanningWorkerPool(service=flat_service, workers=1)
        await pool.start()
        try:
            job = pool.submit(make_request(equatorial_parcel))
            await pool.join()
        finally:
            await pool.stop()

        done = pool.store.get(job.job_id)
        assert done.status == JobStatus.COMPLETED
        assert done.stage == PlanningStage.COMPLETED
        assert done.progress_pct == 100
        assert done.result is not None
        assert done.structures_placed == len(done.result.structures) >= 1
        assert not pool.running

    @pytest.mark.asyncio
    async def test_invalid_boundary_fails_job(self, flat_service, equator):
        bowtie = geo_ring(equator, [(-100, -100), (100, 100), (100, -100), (-100, 50)])
        pool = PlanningWorkerPool(service=flat_service, workers=1)
        await pool.start()
        try:
            job = pool.submit(make_request(bowtie))
            await pool.join()
        finally:
            await pool.stop()

        failed = pool.store.get(job.job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.stage == PlanningStage.FAILED
        assert "intersects itself" in failed.error_message

    @pytest.mark.asyncio
    async def test_finished_job_is_not_reprocessed(self, flat_service, equatorial_parcel):
        pool = PlanningWorkerPool(service=flat_service, workers=1)
        job = pool.store.create(make_request(equatorial_parcel))
        await pool.process(job.job_id)
        first = pool.store.get(job.job_id)
        finished_at = first.updated_at

        await pool.process(job.job_id)
        assert pool.store.get(job.job_id).updated_at == finished_at

    @pytest.mark.asyncio
    async def test_several_workers(self, flat_service, equatorial_parcel):
        pool = PlanningWorkerPool(service=flat_service, workers=3)
        await pool.start()
        try:
            jobs = [pool.submit(make_request(equatorial_parcel)) for _ in range(4)]
            await pool.join()
        finally:
            await pool.stop()

        assert all(pool.store.get(j.job_id).status == JobStatus.COMPLETED for j in jobs)

    @pytest.mark.asyncio
    async def test_default_service(self, planning_singleton):
        pool = PlanningWorkerPool(workers=1)
        await pool.start()
        await pool.stop()
        assert pool.service is planning_singleton


class TestFileJobRunner:

    @pytest.mark.asyncio
    async def test_writes_results(self, tmp_path, planning_singleton, restore_signals, equatorial_parcel):
        good = tmp_path / "parcel.json"
        good.write_text(make_request(equatorial_parcel).model_dump_json())
        bad = tmp_path / "broken.json"
        bad.write_text("{not json")

        failed = await FileJobRunner([good, bad], workers=1).run()

        assert failed == 1
        output = json.loads((tmp_path / "parcel.result.json").read_text())
        assert output["structures"]
        assert not (tmp_path / "broken.result.json").exists()

    @pytest.mark.asyncio
    async def test_usage(self):
        assert await main([]) == 2
