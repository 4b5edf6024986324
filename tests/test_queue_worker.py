"""
Queue worker tests: one dispatch cycle at a time through run_once(),
plus a short end-to-end run of the dispatch loops.
"""

import asyncio
import dataclasses

import pytest

from api import database, job_service
from api.retry_supervisor import force_fail
from core.exceptions import AutomationFailure
from core.models import ScrapeResult


async def _wait_for_counts(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        counts = await database.count_jobs_by_status()
        if predicate(counts):
            return counts
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Timed out waiting for job counts, last seen {counts}")
        await asyncio.sleep(0.02)


class TestDispatchCycle:

    @pytest.mark.asyncio
    async def test_empty_queue(self, db, make_worker, make_strategy):
        worker = make_worker(make_strategy())
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_success_writes_result_and_service_request(self, db, pool, make_worker, make_strategy, jamb_payload):
        result = ScrapeResult.success({"candidate_name": "ADA OBI", "total_score": 254, "verification_status": "verified"})
        strategy = make_strategy(result)
        worker = make_worker(strategy)
        queued = await job_service.submit_education("user_1", "jamb", jamb_payload)

        assert await worker.run_once() is True

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "completed"
        assert job["result"]["total_score"] == 254
        request = await database.get_service_request_by_job(queued["job_id"])
        assert request["status"] == "completed"
        assert request["result"]["candidate_name"] == "ADA OBI"
        assert strategy.calls == [queued["job_id"]]
        assert worker.stats["completed"] == 1
        # healthy session goes back to the pool
        assert pool.idle_count == 1
        assert pool.leased_count == 0

    @pytest.mark.asyncio
    async def test_failed_result_requeues(self, db, pool, session_factory, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(ScrapeResult.failure("layout mismatch")))
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 1
        assert worker.stats["failed_attempts"] == 1
        assert len(session_factory.closed) == 1

    @pytest.mark.asyncio
    async def test_permanent_result_fails_job(self, db, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(ScrapeResult.failure("portal not configured", permanent=True)))
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "failed"
        assert job["retry_count"] == 0
        assert job["error_message"] == "portal not configured"

    @pytest.mark.asyncio
    async def test_automation_failure_requeues(self, db, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(AutomationFailure("net::ERR_CONNECTION_RESET")))
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_failure(self, db, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(KeyError("registration_number")))
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        assert (await database.get_job(queued["job_id"]))["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_timeout_requeues_and_discards_session(
        self, db, session_factory, worker_config, make_worker, make_strategy, jamb_payload
    ):
        config = dataclasses.replace(worker_config, job_timeout_seconds=0.05)
        worker = make_worker(make_strategy(delay=1.0), config=config)
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 1
        assert session_factory.closed == ["fake_1"]

    @pytest.mark.asyncio
    async def test_unknown_service_fails_permanently(self, db, make_worker, jamb_payload):
        worker = make_worker(strategies={})
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "failed"
        assert job["retry_count"] == 0
        assert "No automation available" in job["error_message"]


class TestPoolPressure:

    @pytest.mark.asyncio
    async def test_exhausted_pool_defers_without_retry(self, db, pool, worker_config, make_worker, make_strategy, jamb_payload):
        held = [await pool.acquire(), await pool.acquire()]
        config = dataclasses.replace(worker_config, acquire_timeout_seconds=0.05)
        strategy = make_strategy()
        worker = make_worker(strategy, config=config)
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        assert await worker.run_once() is True

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 0
        assert worker.stats["deferred"] == 1
        assert strategy.calls == []

        for pooled in held:
            await pool.release(pooled)
        await worker.run_once()
        assert (await database.get_job(queued["job_id"]))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_session_creation_failure_counts_as_attempt(self, db, session_factory, make_worker, make_strategy, jamb_payload):
        session_factory.fail_create = True
        worker = make_worker(make_strategy())
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        await worker.run_once()

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "pending"
        assert job["retry_count"] == 1


class TestCancellation:

    @pytest.mark.asyncio
    async def test_force_failed_job_discards_late_result(self, db, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(delay=0.2))
        queued = await job_service.submit_education("user_1", "jamb", jamb_payload)

        running = asyncio.create_task(worker.run_once())
        await asyncio.sleep(0.05)
        await force_fail(queued["job_id"], "duplicate request")
        await running

        job = await database.get_job(queued["job_id"])
        assert job["status"] == "failed"
        assert job["result"] is None
        assert job["error_message"] == "duplicate request"
        assert worker.stats["discarded_results"] == 1
        request = await database.get_service_request_by_job(queued["job_id"])
        assert request["status"] == "failed"


class TestDispatchLoops:

    @pytest.mark.asyncio
    async def test_loops_drain_queue_within_concurrency(self, db, make_worker, make_strategy, jamb_payload):
        strategy = make_strategy(delay=0.02)
        worker = make_worker(strategy)
        for _ in range(6):
            await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        worker.start()
        try:
            await _wait_for_counts(lambda c: c["completed"] == 6)
        finally:
            await worker.stop()

        assert strategy.max_concurrent <= 2
        assert len(set(strategy.calls)) == 6
        assert not worker.running

    @pytest.mark.asyncio
    async def test_status_snapshot_lists_in_flight(self, db, make_worker, make_strategy, jamb_payload):
        worker = make_worker(make_strategy(delay=0.3))
        queued = await job_service.enqueue("user_1", "jamb_score", jamb_payload)

        running = asyncio.create_task(worker.run_once())
        await asyncio.sleep(0.1)
        snapshot = worker.status_snapshot()
        await running

        assert [item["job_id"] for item in snapshot["in_flight"]] == [queued["job_id"]]
        assert snapshot["pool"]["leased"] == 1
        assert worker.status_snapshot()["in_flight"] == []
